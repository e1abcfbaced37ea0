"""
Headless-browser extraction path.

Renders the portal view page in Playwright Chromium so client-side
JavaScript can populate the balance, then reads it back through
selectors, script probes and the rendered HTML. As a last resort the
structured API is tried again from the same attempt.
"""

import logging
import time
from typing import Any, Callable, Optional

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from .parsing import coerce_balance, extract_number_from_text, run_strategies
from .patterns import DEFAULT_PATTERNS, PatternTable
from .portal_api import USER_AGENT, PortalApiClient, redact_token
from ..core.errors import AuthError, ExtractionError

log = logging.getLogger(__name__)

DEFAULT_POLL_ATTEMPTS = 10
DEFAULT_POLL_INTERVAL = 3.0
VIEWPORT = {"width": 1920, "height": 1080}

# Runs before any page script; hides the usual headless fingerprints.
STEALTH_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
Object.defineProperty(navigator, 'plugins', {
    get: () => [
        { name: 'Chrome PDF Plugin', filename: 'internal-pdf-viewer' },
        { name: 'Chrome PDF Viewer', filename: 'mhjfbmdgcfjbbpaeojofohoefgiehjai' },
        { name: 'Native Client', filename: 'internal-nacl-plugin' }
    ],
});
Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
window.chrome = { runtime: {}, loadTimes: function() { return {}; }, csi: function() { return {}; } };
const originalQuery = window.navigator.permissions.query;
window.navigator.permissions.query = (parameters) => (
    parameters.name === 'notifications'
        ? Promise.resolve({ state: Notification.permission })
        : originalQuery(parameters)
);
"""


class BrowserExtractor:
    """Extracts the balance from the rendered portal page."""

    def __init__(
        self,
        api_client: PortalApiClient,
        patterns: PatternTable = DEFAULT_PATTERNS,
        poll_attempts: int = DEFAULT_POLL_ATTEMPTS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_client = api_client
        self.patterns = patterns
        self.poll_attempts = poll_attempts
        self.poll_interval = poll_interval
        self._sleep = sleep

    def fetch_balance(self, token: str) -> int:
        """Render the view page and read the balance from it.

        Raises:
            AuthError: If the structured API retry rejects the token
            ExtractionError: If the browser fails or nothing is found
        """
        url = self.api_client.view_url(token)
        log.info("Rendering %s in headless browser", redact_token(url))

        try:
            with sync_playwright() as p:
                browser = p.chromium.launch(headless=True, args=["--no-sandbox"])
                try:
                    context = browser.new_context(viewport=VIEWPORT, user_agent=USER_AGENT)
                    context.add_init_script(STEALTH_SCRIPT)
                    page = context.new_page()
                    page.goto(url, timeout=self.api_client.timeout * 1000)
                    balance = self.extract_from_page(page)
                finally:
                    browser.close()
        except PlaywrightError as e:
            raise ExtractionError(f"Browser session failed: {e}") from e

        if balance is not None:
            return balance

        log.info("Rendered page had no balance; retrying structured API")
        try:
            return self.api_client.fetch_balance(token)
        except AuthError:
            raise
        except ExtractionError as e:
            raise ExtractionError(f"No balance found in rendered page or API: {e}") from e

    def wait_for_content(self, page: Any) -> bool:
        """Poll the page until a marker substring shows up.

        Returns:
            True if a marker appeared within the allotted polls
        """
        for attempt in range(1, self.poll_attempts + 1):
            content = page.content()
            log.debug("Poll %d: content length %d", attempt, len(content))
            if any(marker in content for marker in self.patterns.marker_substrings):
                log.info("Balance content detected after %d poll(s)", attempt)
                return True
            if attempt < self.poll_attempts:
                self._sleep(self.poll_interval)
        log.warning("Balance content not detected after %d polls, proceeding anyway",
                    self.poll_attempts)
        return False

    def extract_from_page(self, page: Any) -> Optional[int]:
        """Selectors, then script probes, then the rendered HTML."""
        self.wait_for_content(page)

        balance = self._from_selectors(page)
        if balance is not None:
            return balance

        balance = self._from_probes(page)
        if balance is not None:
            return balance

        result = run_strategies(page.content(), self.patterns)
        return result.value

    def _from_selectors(self, page: Any) -> Optional[int]:
        for selector in self.patterns.selectors:
            try:
                elements = page.query_selector_all(selector)
            except PlaywrightError as e:
                log.debug("Selector %r failed: %s", selector, e)
                continue
            for element in elements:
                try:
                    text = element.inner_text()
                except PlaywrightError:
                    continue
                balance = extract_number_from_text(text, self.patterns)
                if balance is not None:
                    log.info("Balance %d found via selector %r", balance, selector)
                    return balance
        return None

    def _from_probes(self, page: Any) -> Optional[int]:
        for probe in self.patterns.js_probes:
            try:
                value = page.evaluate(probe)
            except PlaywrightError as e:
                log.debug("Probe %r failed: %s", probe, e)
                continue
            balance = coerce_balance(value, self.patterns)
            if balance is not None:
                log.info("Balance %d found via script probe", balance)
                return balance
        return None
