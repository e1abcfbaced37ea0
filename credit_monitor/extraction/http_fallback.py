"""
Plain-HTTP extraction path.

Used when browser rendering is disabled. Fetches pages and candidate
API endpoints without running any JavaScript and feeds every body to
the shared parsing heuristics.
"""

import logging
import time
from typing import Callable, List, Optional

import httpx

from .parsing import run_strategies, search_json_for_balance
from .patterns import DEFAULT_PATTERNS, PatternTable
from .portal_api import PortalApiClient, browser_headers, check_auth, redact_token
from ..core.errors import ExtractionError

log = logging.getLogger(__name__)

STRATEGY_PAUSE_SECONDS = 1.0

ALTERNATE_PATHS = (
    "/api/customer/balance",
    "/api/v1/balance",
    "/api/balance",
    "/customer/data",
)


class HttpFallbackExtractor:
    """Heuristic extraction from raw HTTP responses.

    Strategies, in order:

    1. bare GET of the view page
    2. GET of the view page with browser-like headers
    3. candidate API URLs, then the view page with a cache buster
    """

    def __init__(
        self,
        api_client: PortalApiClient,
        patterns: PatternTable = DEFAULT_PATTERNS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.api_client = api_client
        self.patterns = patterns
        self._sleep = sleep
        self._clock = clock

    def candidate_urls(self, token: str) -> List[str]:
        base = self.api_client.base_url
        urls = [f"{base}{path}?token={token}" for path in ALTERNATE_PATHS]
        urls.append(f"{self.api_client.view_url(token)}&_cb={int(self._clock())}")
        return urls

    def fetch_balance(self, token: str) -> int:
        """Try each strategy in turn until one yields a balance.

        Raises:
            AuthError: If any response rejects the token
            ExtractionError: If every strategy comes up empty
        """
        view_url = self.api_client.view_url(token)
        strategies = [
            ("bare_request", lambda http: self._try_url(http, view_url, None)),
            ("browser_headers", lambda http: self._try_url(
                http, view_url, browser_headers(self.api_client.base_url, token, accept="text/html,*/*"))),
            ("alternate_urls", lambda http: self._try_alternates(http, token)),
        ]

        with self.api_client.client() as http:
            for i, (name, strategy) in enumerate(strategies):
                if i > 0:
                    self._sleep(STRATEGY_PAUSE_SECONDS)
                balance = strategy(http)
                if balance is not None:
                    log.info("Balance %d found by HTTP strategy %s", balance, name)
                    return balance
                log.debug("HTTP strategy %s found nothing", name)

        raise ExtractionError("No balance found by any HTTP strategy")

    def _try_alternates(self, http: httpx.Client, token: str) -> Optional[int]:
        headers = browser_headers(self.api_client.base_url, token, accept="application/json, text/html")
        for url in self.candidate_urls(token):
            balance = self._try_url(http, url, headers)
            if balance is not None:
                return balance
        return None

    def _try_url(self, http: httpx.Client, url: str, headers: Optional[dict]) -> Optional[int]:
        try:
            response = http.get(url, headers=headers)
        except httpx.HTTPError as e:
            log.debug("Request to %s failed: %s", redact_token(url), e)
            return None

        check_auth(response)
        if not response.is_success:
            log.debug("HTTP %d from %s", response.status_code, redact_token(url))
            return None

        if "json" in response.headers.get("content-type", ""):
            try:
                balance = search_json_for_balance(response.json(), self.patterns)
            except ValueError:
                balance = None
            if balance is not None:
                return balance
        return run_strategies(response.text, self.patterns).value
