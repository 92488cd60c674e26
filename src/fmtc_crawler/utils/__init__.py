"""
Utilities Package.

CAPTCHA resolution, session persistence, human-like interaction and
small page helpers shared by the crawl components.
"""

from .captcha_solver import (
    CaptchaResolutionService,
    CaptchaSolverError,
    ChallengeState,
    SolveResult,
    SolverStatus,
    TwoCaptchaClient,
)
from .human_simulator import HumanSimulator

# Session persistence
from .session_store import (
    SessionStore,
    sanitize_identity,
)

__all__ = [
    "CaptchaResolutionService",
    "CaptchaSolverError",
    "ChallengeState",
    "SolveResult",
    "SolverStatus",
    "TwoCaptchaClient",
    "HumanSimulator",
    "SessionStore",
    "sanitize_identity",
]
