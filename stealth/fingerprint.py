"""
CRAWL — Browser Context Profiles
Picks a realistic desktop browser profile for each crawl session.
"""

import random


USER_AGENTS = [
    # Chrome on macOS
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4_1) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
    # Chrome on Windows
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    # Edge on Windows
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36 Edg/124.0.0.0",
]

VIEWPORTS = [
    {"width": 1920, "height": 1080},
    {"width": 1440, "height": 900},
    {"width": 1536, "height": 864},
    {"width": 1366, "height": 768},
]


class ContextProfiles:
    """Hands out Playwright new_context() kwargs, one profile per session."""

    def __init__(self, locale: str = "en-US", timezone_id: str = "UTC"):
        self.locale = locale
        self.timezone_id = timezone_id
        self.issued = 0

    def generate(self) -> dict:
        self.issued += 1
        return {
            "user_agent": random.choice(USER_AGENTS),
            "viewport": random.choice(VIEWPORTS),
            "locale": self.locale,
            "timezone_id": self.timezone_id,
            "has_touch": False,
            "is_mobile": False,
        }

    async def apply_js_overrides(self, page):
        """Hide the automation flag the source's bot check looks at."""
        await page.add_init_script("""
            Object.defineProperty(navigator, 'webdriver', {
                get: () => undefined
            });
        """)
