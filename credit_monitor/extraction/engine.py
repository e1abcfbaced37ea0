"""
Balance extraction engine.

Runs the extraction cascade with an outer retry loop:

1. Structured portal API
2. Headless browser rendering (or plain-HTTP heuristics when disabled)

Attempts are spaced by exponential backoff (1s, 2s, 4s, ...). A rejected
credential aborts immediately since retrying cannot fix it.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import httpx

from .browser import DEFAULT_POLL_ATTEMPTS, DEFAULT_POLL_INTERVAL, BrowserExtractor
from .http_fallback import HttpFallbackExtractor
from .patterns import DEFAULT_PATTERNS, PatternTable
from .portal_api import DEFAULT_BASE_URL, DEFAULT_TIMEOUT, PortalApiClient, check_auth, redact_token
from .session_api import SessionApiClient
from ..core.errors import AuthError, ExtractionError

log = logging.getLogger(__name__)

PORTAL_TOKEN = "portal_token"
SESSION_COOKIE = "session_cookie"
CREDENTIAL_KINDS = (PORTAL_TOKEN, SESSION_COOKIE)

DEFAULT_RETRY_ATTEMPTS = 3
VALIDATE_TIMEOUT = 10.0


@dataclass(frozen=True)
class ExtractionResult:
    """A balance plus the label of the path that produced it."""
    balance: int
    source: str


class BalanceExtractor:
    """Obtains the current balance for a credential."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        credential_kind: str = PORTAL_TOKEN,
        use_browser: bool = True,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        timeout: float = DEFAULT_TIMEOUT,
        poll_attempts: int = DEFAULT_POLL_ATTEMPTS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        patterns: PatternTable = DEFAULT_PATTERNS,
        session_base_url: Optional[str] = None,
        customer_id: Optional[str] = None,
        pricing_unit_id: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if credential_kind not in CREDENTIAL_KINDS:
            raise ValueError(f"credential_kind must be one of {CREDENTIAL_KINDS}")
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be >= 1")

        self.credential_kind = credential_kind
        self.use_browser = use_browser
        self.retry_attempts = retry_attempts
        self.timeout = timeout
        self.patterns = patterns
        self.session_base_url = session_base_url
        self.customer_id = customer_id
        self.pricing_unit_id = pricing_unit_id
        self._transport = transport
        self._sleep = sleep

        self.api_client = PortalApiClient(base_url, timeout=timeout, transport=transport)
        self.browser = BrowserExtractor(
            self.api_client,
            patterns=patterns,
            poll_attempts=poll_attempts,
            poll_interval=poll_interval,
            sleep=sleep,
        )
        self.http_fallback = HttpFallbackExtractor(self.api_client, patterns=patterns, sleep=sleep)

    @classmethod
    def from_config(cls, config, sleep: Callable[[float], None] = time.sleep) -> "BalanceExtractor":
        """Build an extractor from a MonitorConfig."""
        extraction = config.extraction
        return cls(
            base_url=extraction.base_url,
            credential_kind=config.credential_kind,
            use_browser=extraction.use_browser,
            retry_attempts=extraction.retry_attempts,
            timeout=extraction.timeout_seconds,
            poll_attempts=extraction.poll_attempts,
            poll_interval=extraction.poll_interval_seconds,
            patterns=extraction.patterns,
            session_base_url=extraction.session_base_url,
            customer_id=config.customer_id,
            pricing_unit_id=config.pricing_unit_id,
            sleep=sleep,
        )

    def session_client(self, cookie: str) -> SessionApiClient:
        kwargs = {"timeout": self.timeout, "transport": self._transport}
        if self.session_base_url:
            kwargs["base_url"] = self.session_base_url
        return SessionApiClient(cookie, **kwargs)

    def fetch_balance(self, credential: str) -> int:
        """Current balance.

        Raises:
            AuthError: If the credential is rejected
            ExtractionError: If every attempt fails
        """
        return self.fetch_balance_result(credential).balance

    def fetch_balance_result(self, credential: str) -> ExtractionResult:
        """Current balance with the label of the path that found it."""
        if not credential:
            raise AuthError("No credential configured")

        last_error: Optional[ExtractionError] = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                result = self._run_cascade(credential)
                log.info("Fetched balance %d via %s (attempt %d)", result.balance, result.source, attempt)
                return result
            except AuthError:
                raise
            except ExtractionError as e:
                last_error = e
                log.warning("Attempt %d/%d failed: %s", attempt, self.retry_attempts, e)

            if attempt < self.retry_attempts:
                self._sleep(2 ** (attempt - 1))

        raise ExtractionError(f"All {self.retry_attempts} attempts failed: {last_error}")

    def _steps(self, credential: str) -> List[Tuple[str, Callable[[], int]]]:
        if self.credential_kind == SESSION_COOKIE:
            return [("session_api", self.session_client(credential).fetch_balance)]

        fallback = (
            ("browser", lambda: self.browser.fetch_balance(credential))
            if self.use_browser
            else ("http_fallback", lambda: self.http_fallback.fetch_balance(credential))
        )
        portal = (
            "portal_api",
            lambda: self.api_client.fetch_balance(credential, self.customer_id, self.pricing_unit_id),
        )
        return [portal, fallback]

    def _run_cascade(self, credential: str) -> ExtractionResult:
        for source, step in self._steps(credential):
            try:
                return ExtractionResult(balance=step(), source=source)
            except AuthError:
                raise
            except ExtractionError as e:
                log.info("Extraction step %s failed: %s", source, e)
        raise ExtractionError("All extraction strategies exhausted")

    def validate_token(self, credential: str) -> bool:
        """Cheap check that the credential reaches a billing page.

        Network failures count as invalid. A 401/403 raises AuthError.
        """
        if self.credential_kind == SESSION_COOKIE:
            try:
                return self.session_client(credential).validate_session()
            except ExtractionError as e:
                log.warning("Session validation failed: %s", e)
                return False

        url = self.api_client.view_url(credential)
        try:
            with httpx.Client(timeout=VALIDATE_TIMEOUT, transport=self._transport,
                              follow_redirects=True) as http:
                response = http.get(url)
        except httpx.HTTPError as e:
            log.warning("Token validation request to %s failed: %s", redact_token(url), e)
            return False

        check_auth(response)
        if not response.is_success:
            return False
        body = response.text.lower()
        return any(indicator in body for indicator in self.patterns.portal_indicators)
