"""Shared scraping utilities: resource blocking and anti-bot request headers."""

import random

from playwright.async_api import Page, Route

from src.timetable.logging import get_logger

log = get_logger(__name__)

BLOCKED_RESOURCE_TYPES: frozenset[str] = frozenset(
    {"image", "stylesheet", "font", "media"}
)

SCHEDULE_REFERER = "https://coworking.tyuiu.ru/shs/all_t/"

# Recent desktop browsers; rotated per request
USER_AGENTS: tuple[str, ...] = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/129.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/128.0.0.0 Safari/537.36 Edg/128.0.0.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/129.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_6) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.6 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:131.0) Gecko/20100101 Firefox/131.0",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/129.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Ubuntu; Linux x86_64; rv:130.0) Gecko/20100101 Firefox/130.0",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/129.0.0.0 YaBrowser/24.10.0.0 Safari/537.36",
)

# Optional headers a real browser would send; each is added independently
STEALTH_HEADERS: dict[str, tuple[str, ...]] = {
    "Accept-Language": (
        "ru-RU,ru;q=0.9,en-US;q=0.8,en;q=0.7",
        "ru,en;q=0.9",
        "ru-RU,ru;q=0.9",
    ),
    "DNT": ("1",),
    "Upgrade-Insecure-Requests": ("1",),
    "Sec-Fetch-Dest": ("document",),
    "Sec-Fetch-Mode": ("navigate",),
    "Sec-Fetch-Site": ("same-origin", "none"),
}


def generate_headers(
    rng: random.Random | None = None, stealth_probability: float = 0.5
) -> dict[str, str]:
    """Build a plausible set of browser request headers.

    Args:
        rng: Random source (module-level random if omitted).
        stealth_probability: Chance to include each optional stealth header.

    Returns:
        Header dict with a rotated User-Agent and the schedule Referer.
    """
    rng = rng or random.Random()
    headers = {
        "User-Agent": rng.choice(USER_AGENTS),
        "Referer": SCHEDULE_REFERER,
    }
    for name, values in STEALTH_HEADERS.items():
        if rng.random() < stealth_probability:
            headers[name] = rng.choice(values)
    return headers


def settle_delay(rng: random.Random | None, low: float, high: float) -> float:
    """Randomized pause after navigation, in seconds."""
    rng = rng or random.Random()
    if high <= low:
        return max(low, 0.0)
    return rng.uniform(low, high)


async def configure_page_for_scraping(page: Page, *, timeout_ms: float = 30000) -> None:
    """Set up a Playwright page for efficient scraping.

    Blocks images, stylesheets, fonts and media; the schedule table and the
    groups iframe only need documents and scripts.
    """

    async def _block_resources(route: Route) -> None:
        if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
            await route.abort()
        else:
            await route.continue_()

    await page.route("**/*", _block_resources)
    page.set_default_timeout(timeout_ms)
    page.set_default_navigation_timeout(timeout_ms)
