"""
Infrastructure Package.

Browser identity, fingerprint spoofing and request timing for one
crawl session.
"""

from .anti_detection import (
    AntiDetectionEngine,
    BlockingCheck,
    SessionHealth,
    detect_blocking,
    is_anti_bot_page,
)
from .stealth import (
    STEALTH_SCRIPTS,
    build_stealth_script,
    stealth_values,
    verify_stealth,
)
from .timing_evasion import (
    CooldownDecision,
    RequestCooldown,
    get_mouse_movement_points,
    random_delay,
)

__all__ = [
    "AntiDetectionEngine",
    "BlockingCheck",
    "SessionHealth",
    "detect_blocking",
    "is_anti_bot_page",
    "STEALTH_SCRIPTS",
    "build_stealth_script",
    "stealth_values",
    "verify_stealth",
    "CooldownDecision",
    "RequestCooldown",
    "get_mouse_movement_points",
    "random_delay",
]
