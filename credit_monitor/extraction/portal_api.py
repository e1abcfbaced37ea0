"""Client for the billing portal's structured JSON API."""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from .parsing import api_balance
from ..core.errors import AuthError, ExtractionError

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://portal.withorb.com"
DEFAULT_TIMEOUT = 30.0

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

_TOKEN_PARAM_RE = re.compile(r"(token=)[^&\s]+")


def redact_token(url: str) -> str:
    """Hide the value of any token query parameter in a URL."""
    return _TOKEN_PARAM_RE.sub(r"\1***", url)


@dataclass(frozen=True)
class LedgerLink:
    """The pieces of a pasted ledger summary URL."""
    customer_id: str
    pricing_unit_id: str
    token: str


def parse_ledger_url(url: str, base_url: str = DEFAULT_BASE_URL) -> LedgerLink:
    """Split a ledger summary URL into customer id, pricing unit and token.

    The URL must be on the portal host and shaped like
    `/api/v1/customers/{customer_id}/ledger_summary?pricing_unit_id=...&token=...`.

    Raises:
        ValueError: If the URL does not have that shape
    """
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError) as e:
        raise ValueError(f"Invalid URL format: {e}") from e

    expected_host = httpx.URL(base_url).host
    if parsed.scheme not in ("http", "https") or parsed.host != expected_host:
        raise ValueError(f"URL must be from {expected_host}")

    segments = [s for s in parsed.path.split("/") if s]
    if len(segments) != 5 or segments[:3] != ["api", "v1", "customers"] or segments[4] != "ledger_summary":
        raise ValueError("URL must be in format: /api/v1/customers/{customer_id}/ledger_summary")

    pricing_unit_id = parsed.params.get("pricing_unit_id")
    token = parsed.params.get("token")
    if not pricing_unit_id:
        raise ValueError("URL must contain a pricing_unit_id parameter")
    if not token:
        raise ValueError("URL must contain a token parameter")
    return LedgerLink(customer_id=segments[3], pricing_unit_id=pricing_unit_id, token=token)


def browser_headers(base_url: str, token: str, accept: str = "application/json") -> Dict[str, str]:
    """Headers that make a request look like it came from the portal page."""
    return {
        "Accept": accept,
        "Accept-Language": "en-US,en;q=0.9",
        "User-Agent": USER_AGENT,
        "Referer": f"{base_url}/view?token={token}",
        "Origin": base_url,
    }


def check_auth(response: httpx.Response) -> None:
    """Raise AuthError if the server rejected the credential."""
    if response.status_code in (401, 403):
        raise AuthError(
            f"Credential rejected with HTTP {response.status_code} "
            f"for {redact_token(str(response.request.url))}"
        )


class PortalApiClient:
    """Reads the credit balance through the portal's customer endpoints.

    Two requests: resolve the customer and its pricing unit from the
    link token, then read the ledger summary for that pricing unit.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def client(self) -> httpx.Client:
        """New HTTP client sharing this instance's timeout and transport."""
        return httpx.Client(
            timeout=self.timeout,
            transport=self._transport,
            follow_redirects=True,
        )

    def view_url(self, token: str) -> str:
        return f"{self.base_url}/view?token={token}"

    def fetch_balance(
        self,
        token: str,
        customer_id: Optional[str] = None,
        pricing_unit_id: Optional[str] = None,
    ) -> int:
        """Current balance from the ledger summary.

        When both ids are known (parsed from a ledger URL) the customer
        lookup is skipped.

        Raises:
            AuthError: If the token is rejected
            ExtractionError: On any other failure or a missing field
        """
        headers = browser_headers(self.base_url, token)
        with self.client() as http:
            if not (customer_id and pricing_unit_id):
                customer = self._get_json(
                    http,
                    f"{self.base_url}/api/v1/customer_from_link",
                    {"token": token},
                    headers,
                )
                customer_id, pricing_unit_id = self._customer_ids(customer)
            log.debug("Resolved customer %s, pricing unit %s", customer_id, pricing_unit_id)

            summary = self._get_json(
                http,
                f"{self.base_url}/api/v1/customers/{customer_id}/ledger_summary",
                {"pricing_unit_id": pricing_unit_id, "token": token},
                headers,
            )

        raw = summary.get("credits_balance") if isinstance(summary, dict) else None
        balance = api_balance(raw, "credits_balance")
        log.info("Balance from portal API: %d", balance)
        return balance

    @staticmethod
    def _customer_ids(payload: Any):
        customer = payload.get("customer") if isinstance(payload, dict) else None
        if not isinstance(customer, dict) or not customer.get("id"):
            raise ExtractionError("Customer lookup returned no customer id")
        units = customer.get("ledger_pricing_units") or []
        if not units or not isinstance(units[0], dict) or not units[0].get("id"):
            raise ExtractionError("Customer has no ledger pricing unit")
        return customer["id"], units[0]["id"]

    @staticmethod
    def _get_json(http: httpx.Client, url: str, params: Dict[str, str], headers: Dict[str, str]) -> Any:
        try:
            response = http.get(url, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise ExtractionError(f"Request to {redact_token(url)} failed: {e}") from e

        check_auth(response)
        if not response.is_success:
            raise ExtractionError(f"HTTP {response.status_code} from {redact_token(url)}")
        try:
            return response.json()
        except ValueError as e:
            raise ExtractionError(f"Invalid JSON from {redact_token(url)}") from e
