"""
Browser identity profiles.

A profile is one coherent identity: the user agent, viewport, platform,
locale and timezone must agree with each other or fingerprinting scripts
notice the mismatch. One profile is chosen per browser session.
"""
import random
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class IdentityProfile:
    """A consistent browser identity."""

    user_agent: str
    viewport_width: int
    viewport_height: int
    platform: str
    locale: str = "en-US"
    accept_language: str = "en-US,en;q=0.9"
    timezone: str = "America/New_York"
    hardware_concurrency: int = 8
    device_memory: int = 8
    webgl_vendor: str = "Intel Inc."
    webgl_renderer: str = "Intel Iris Pro OpenGL Engine"

    @property
    def viewport(self) -> Dict[str, int]:
        return {"width": self.viewport_width, "height": self.viewport_height}

    def headers(self) -> Dict[str, str]:
        """Extra HTTP headers matching this identity."""
        return {
            "User-Agent": self.user_agent,
            "Accept-Language": self.accept_language,
            "Accept": (
                "text/html,application/xhtml+xml,application/xml;q=0.9,"
                "image/avif,image/webp,image/apng,*/*;q=0.8"
            ),
            "DNT": "1",
        }

    def context_options(self) -> Dict[str, Any]:
        """Keyword arguments for ``browser.new_context``."""
        return {
            "user_agent": self.user_agent,
            "viewport": self.viewport,
            "locale": self.locale,
            "timezone_id": self.timezone,
            "extra_http_headers": {
                k: v for k, v in self.headers().items() if k != "User-Agent"
            },
        }


IDENTITY_PROFILES: List[IdentityProfile] = [
    IdentityProfile(
        user_agent="Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        viewport_width=1920,
        viewport_height=1080,
        platform="MacIntel",
        timezone="America/New_York",
    ),
    IdentityProfile(
        user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        viewport_width=1920,
        viewport_height=1080,
        platform="Win32",
        timezone="America/Los_Angeles",
        webgl_vendor="Google Inc. (Intel)",
        webgl_renderer="ANGLE (Intel, Intel(R) UHD Graphics 630 Direct3D11 vs_5_0 ps_5_0, D3D11)",
    ),
    IdentityProfile(
        user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
        viewport_width=1366,
        viewport_height=768,
        platform="Win32",
        timezone="America/Chicago",
        hardware_concurrency=4,
        webgl_vendor="Google Inc. (Intel)",
        webgl_renderer="ANGLE (Intel, Intel(R) HD Graphics 620 Direct3D11 vs_5_0 ps_5_0, D3D11)",
    ),
    IdentityProfile(
        user_agent="Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
        viewport_width=1440,
        viewport_height=900,
        platform="MacIntel",
        timezone="America/Denver",
    ),
]

# Launch flags that drop the most obvious automation signals
LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-infobars",
    "--no-first-run",
    "--no-default-browser-check",
]


def choose_identity(rng: Optional[random.Random] = None) -> IdentityProfile:
    """Pick a profile from the pool."""
    return (rng or random).choice(IDENTITY_PROFILES)
