"""
Client for the account dashboard API authenticated by a session cookie.

The credits endpoint gives the balance directly. The consumption
reports are independent read-only queries, so they are fetched in
parallel on an async client; a failing report degrades to an empty
list rather than failing the whole call.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from .parsing import api_balance
from ..core.errors import AuthError, ExtractionError

log = logging.getLogger(__name__)

DEFAULT_SESSION_BASE_URL = "https://app.augmentcode.com"
DEFAULT_TIMEOUT = 30.0
DEFAULT_REPORT_DAYS = 30

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@dataclass(frozen=True)
class CreditsInfo:
    remaining: int
    available: int = 0
    used_this_billing_cycle: int = 0
    consumed_this_billing_cycle: int = 0


@dataclass(frozen=True)
class DailyUsage:
    date: str
    total_credits: int


@dataclass(frozen=True)
class ModelUsage:
    model_name: str
    credits: int


@dataclass(frozen=True)
class ActivityUsage:
    activity_type: str
    credits: int


@dataclass(frozen=True)
class UsageReport:
    """Consumption breakdowns for a reporting window."""
    total_credits_consumed: Optional[int] = None
    daily: List[DailyUsage] = field(default_factory=list)
    by_model: List[ModelUsage] = field(default_factory=list)
    by_activity: List[ActivityUsage] = field(default_factory=list)

    @property
    def days_with_data(self) -> int:
        return len(self.daily)

    @property
    def average_daily_usage(self) -> float:
        if not self.daily:
            return 0.0
        return sum(d.total_credits for d in self.daily) / len(self.daily)


def _credits(value: Any) -> int:
    """Report credits from the API's string-encoded integers; unparseable is 0."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def to_daily_usage(data_points: List[Dict[str, Any]]) -> List[DailyUsage]:
    daily = []
    for point in data_points:
        credits = _credits(point.get("creditsConsumed"))
        if credits <= 0:
            continue
        start = (point.get("dateRange") or {}).get("startDateIso", "")
        daily.append(DailyUsage(date=start.split("T")[0], total_credits=credits))
    return daily


def to_model_usage(data_points: List[Dict[str, Any]]) -> List[ModelUsage]:
    return [
        ModelUsage(model_name=p["groupKey"], credits=_credits(p.get("creditsConsumed")))
        for p in data_points
        if p.get("groupKey") and _credits(p.get("creditsConsumed")) > 0
    ]


def to_activity_usage(data_points: List[Dict[str, Any]]) -> List[ActivityUsage]:
    return [
        ActivityUsage(activity_type=p["groupKey"], credits=_credits(p.get("creditsConsumed")))
        for p in data_points
        if p.get("groupKey") and _credits(p.get("creditsConsumed")) > 0
    ]


class SessionApiClient:
    """Balance and usage reports for a session-cookie credential."""

    def __init__(
        self,
        session_cookie: str,
        base_url: str = DEFAULT_SESSION_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[Any] = None,
    ):
        """Initialize the client.

        Args:
            session_cookie: Value of the `_session` cookie
            base_url: Dashboard origin
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests pass a MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._headers = {
            "User-Agent": USER_AGENT,
            "Accept": "application/json",
            "Cookie": f"_session={session_cookie}",
        }

    def _get(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        with httpx.Client(timeout=self.timeout, transport=self._transport) as http:
            try:
                response = http.get(f"{self.base_url}{path}", params=params, headers=self._headers)
            except httpx.HTTPError as e:
                raise ExtractionError(f"Request to {path} failed: {e}") from e
        return self._decode(path, response)

    @staticmethod
    def _decode(path: str, response: httpx.Response) -> Any:
        if not response.is_success:
            raise AuthError(f"{path} returned HTTP {response.status_code}; session may have expired")
        try:
            return response.json()
        except ValueError as e:
            raise ExtractionError(f"Invalid JSON from {path}") from e

    def fetch_credits(self) -> CreditsInfo:
        data = self._get("/api/credits")
        if not isinstance(data, dict) or "usageUnitsRemaining" not in data:
            raise ExtractionError("Credits response has no usageUnitsRemaining")
        credits = CreditsInfo(
            remaining=api_balance(data["usageUnitsRemaining"], "usageUnitsRemaining"),
            available=_credits(data.get("usageUnitsAvailable")),
            used_this_billing_cycle=_credits(data.get("usageUnitsUsedThisBillingCycle")),
            consumed_this_billing_cycle=_credits(data.get("usageUnitsConsumedThisBillingCycle")),
        )
        log.info("Credits fetched: %d remaining", credits.remaining)
        return credits

    def fetch_balance(self) -> int:
        """Remaining credits for the session's account."""
        return self.fetch_credits().remaining

    def fetch_subscription(self) -> Dict[str, Any]:
        return self._get("/api/subscription")

    def fetch_user(self) -> Dict[str, Any]:
        return self._get("/api/user")

    def validate_session(self) -> bool:
        """True if the cookie is accepted by the user endpoint."""
        try:
            self.fetch_user()
        except AuthError:
            return False
        return True

    def fetch_usage_report(self, days: int = DEFAULT_REPORT_DAYS) -> UsageReport:
        """Consumption breakdowns over the last `days`, fetched in parallel."""
        return asyncio.run(self._gather_reports(days))

    async def _gather_reports(self, days: int) -> UsageReport:
        end = datetime.now(timezone.utc)
        start = end - timedelta(days=days)
        window = {
            "startDateIso": start.strftime("%Y-%m-%dT00:00:00.000Z"),
            "endDateIso": end.strftime("%Y-%m-%dT00:00:00.000Z"),
        }

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as http:
            info, daily, by_model, by_activity = await asyncio.gather(
                self._report(http, "/api/credit-analytics-info", window),
                self._report(http, "/api/credit-consumption",
                             {"groupBy": "NONE", "granularity": "DAY", **window}),
                self._report(http, "/api/credit-consumption",
                             {"groupBy": "MODEL_NAME", "granularity": "TOTAL", **window}),
                self._report(http, "/api/credit-consumption",
                             {"groupBy": "ACTIVITY_TYPE", "granularity": "TOTAL", **window}),
            )

        total = info.get("totalCreditsConsumed") if isinstance(info, dict) else None
        return UsageReport(
            total_credits_consumed=_credits(total) if total is not None else None,
            daily=to_daily_usage(self._points(daily)),
            by_model=to_model_usage(self._points(by_model)),
            by_activity=to_activity_usage(self._points(by_activity)),
        )

    async def _report(self, http: httpx.AsyncClient, path: str, params: Dict[str, str]) -> Any:
        try:
            response = await http.get(f"{self.base_url}{path}", params=params, headers=self._headers)
            return self._decode(path, response)
        except (httpx.HTTPError, ExtractionError) as e:
            log.warning("Report %s unavailable: %s", path, e)
            return None

    @staticmethod
    def _points(payload: Any) -> List[Dict[str, Any]]:
        if not isinstance(payload, dict):
            return []
        return [p for p in payload.get("dataPoints") or [] if isinstance(p, dict)]
