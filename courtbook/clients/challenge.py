"""Challenge-token acquisition for the booking form's reCAPTCHA v3 check.

The token is only accepted for a few seconds after it is minted, so
acquisition is always the last preparatory step before submission.
"""

import asyncio
import logging
from typing import Protocol

from courtbook.clients.resilience import ChallengeTokenRejected, TransientTransportError
from courtbook.models.portal import BookingForm, ChallengeToken

logger = logging.getLogger(__name__)

_EXECUTE_SCRIPT = """
async ([siteKey, action]) => {
  return await window.grecaptcha.execute(siteKey, {action: action});
}
"""


class ChallengeSolver(Protocol):
    async def acquire(self, form: BookingForm, cookies: list[dict[str, str]]) -> ChallengeToken:
        """Mint a fresh token for *form* inside the session identified by *cookies*."""
        ...


class BrowserChallengeSolver:
    """Mint tokens by running the portal's own reCAPTCHA script in Chromium.

    A new browser context is created per call and seeded with the
    execution's session cookies, so tokens are bound to that session only.

    Args:
        site_key: The portal's reCAPTCHA site key.
        action: reCAPTCHA action name the portal expects.
        ttl_seconds: Validity budget attached to each minted token.
        timeout: Upper bound for the whole acquisition, in seconds.
        headless: Run Chromium headless.
    """

    def __init__(
        self,
        site_key: str,
        action: str = "homepage",
        ttl_seconds: float = 3.0,
        timeout: float = 20.0,
        headless: bool = True,
    ) -> None:
        self.site_key = site_key
        self.action = action
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout
        self.headless = headless

    async def acquire(self, form: BookingForm, cookies: list[dict[str, str]]) -> ChallengeToken:
        """Return a freshly minted token.

        Raises:
            ChallengeTokenRejected: If the page never produced a token.
            TransientTransportError: If acquisition exceeded ``timeout``.
        """
        try:
            value = await asyncio.wait_for(self._mint(form, cookies), timeout=self.timeout)
        except TimeoutError as exc:
            raise TransientTransportError(
                f"Challenge token acquisition timed out after {self.timeout:.0f}s"
            ) from exc
        if not value:
            raise ChallengeTokenRejected("Failed to generate reCAPTCHA token")
        token = ChallengeToken(value=value, ttl_seconds=self.ttl_seconds)
        logger.info("Challenge token acquired (%d chars)", len(value))
        return token

    async def _mint(self, form: BookingForm, cookies: list[dict[str, str]]) -> str | None:
        try:
            from playwright.async_api import Error as PlaywrightError
            from playwright.async_api import async_playwright
        except ImportError as exc:
            raise ChallengeTokenRejected(
                "Playwright is not installed. Run: pip install playwright && "
                "playwright install chromium"
            ) from exc

        async with async_playwright() as pw:
            browser = await pw.chromium.launch(
                headless=self.headless,
                args=["--disable-blink-features=AutomationControlled"],
            )
            try:
                context = await browser.new_context()
                if cookies:
                    await context.add_cookies(cookies)  # type: ignore[arg-type]
                page = await context.new_page()
                await page.goto(form.url, wait_until="domcontentloaded")
                await page.wait_for_function("typeof window.grecaptcha !== 'undefined'")
                return await page.evaluate(_EXECUTE_SCRIPT, [self.site_key, self.action])
            except PlaywrightError as exc:
                raise ChallengeTokenRejected(f"reCAPTCHA execution failed: {exc}") from exc
            finally:
                await browser.close()
