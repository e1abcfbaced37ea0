"""
Tests for the extraction cascade.

HTTP is served by httpx.MockTransport; the browser is replaced by a
fake page object so no Chromium is needed.
"""

from unittest.mock import MagicMock

import httpx
import pytest

from credit_monitor.core.errors import AuthError, ExtractionError
from credit_monitor.extraction.browser import BrowserExtractor
from credit_monitor.extraction.engine import BalanceExtractor, ExtractionResult
from credit_monitor.extraction.http_fallback import HttpFallbackExtractor
from credit_monitor.extraction.portal_api import PortalApiClient, parse_ledger_url, redact_token

BASE = "https://portal.example.com"


def _portal_handler(balance="1523.75", status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        if status != 200:
            return httpx.Response(status)
        if request.url.path == "/api/v1/customer_from_link":
            return httpx.Response(200, json={
                "customer": {"id": "cus_1", "ledger_pricing_units": [{"id": "pu_1"}]}
            })
        if request.url.path == "/api/v1/customers/cus_1/ledger_summary":
            assert request.url.params["pricing_unit_id"] == "pu_1"
            return httpx.Response(200, json={"credits_balance": balance})
        return httpx.Response(404)
    return handler


class FakePage:
    """Stands in for a Playwright page."""

    def __init__(self, contents, elements=None, probes=None):
        self._contents = list(contents)
        self._elements = elements or {}
        self._probes = probes or {}

    def content(self):
        if len(self._contents) > 1:
            return self._contents.pop(0)
        return self._contents[0]

    def query_selector_all(self, selector):
        return [MagicMock(inner_text=MagicMock(return_value=text))
                for text in self._elements.get(selector, [])]

    def evaluate(self, expression):
        return self._probes.get(expression)


class TestPortalApi:
    """Test the structured API client."""

    def test_balance_is_truncated_float(self):
        client = PortalApiClient(BASE, transport=httpx.MockTransport(_portal_handler()))
        assert client.fetch_balance("tok") == 1523

    def test_numeric_balance(self):
        client = PortalApiClient(BASE, transport=httpx.MockTransport(_portal_handler(balance=88)))
        assert client.fetch_balance("tok") == 88

    def test_rejected_token_raises_auth_error(self):
        client = PortalApiClient(BASE, transport=httpx.MockTransport(_portal_handler(status=401)))
        with pytest.raises(AuthError):
            client.fetch_balance("tok")

    def test_server_error_raises_extraction_error(self):
        client = PortalApiClient(BASE, transport=httpx.MockTransport(_portal_handler(status=500)))
        with pytest.raises(ExtractionError) as exc:
            client.fetch_balance("tok")
        assert not isinstance(exc.value, AuthError)

    def test_missing_pricing_unit(self):
        def handler(request):
            return httpx.Response(200, json={"customer": {"id": "cus_1", "ledger_pricing_units": []}})

        client = PortalApiClient(BASE, transport=httpx.MockTransport(handler))
        with pytest.raises(ExtractionError, match="pricing unit"):
            client.fetch_balance("tok")

    @pytest.mark.parametrize("balance", ["-250.0", "Infinity", "NaN", 5_000_000])
    def test_unusable_balance_raises_extraction_error(self, balance):
        client = PortalApiClient(BASE, transport=httpx.MockTransport(_portal_handler(balance=balance)))
        with pytest.raises(ExtractionError):
            client.fetch_balance("tok")

    def test_non_finite_json_balance(self):
        def handler(request):
            if request.url.path == "/api/v1/customer_from_link":
                return httpx.Response(200, json={
                    "customer": {"id": "cus_1", "ledger_pricing_units": [{"id": "pu_1"}]}
                })
            return httpx.Response(200, content=b'{"credits_balance": Infinity}',
                                  headers={"content-type": "application/json"})

        client = PortalApiClient(BASE, transport=httpx.MockTransport(handler))
        with pytest.raises(ExtractionError):
            client.fetch_balance("tok")

    def test_known_ids_skip_customer_lookup(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return _portal_handler(balance=640)(request)

        client = PortalApiClient(BASE, transport=httpx.MockTransport(handler))

        assert client.fetch_balance("tok", "cus_1", "pu_1") == 640
        assert paths == ["/api/v1/customers/cus_1/ledger_summary"]

    def test_redact_token(self):
        assert redact_token(f"{BASE}/view?token=secret&x=1") == f"{BASE}/view?token=***&x=1"


class TestEngine:
    """Test retry, backoff and cascade ordering."""

    def setup_method(self):
        self.sleep = MagicMock()
        self.extractor = BalanceExtractor(base_url=BASE, sleep=self.sleep)
        self.extractor.api_client.fetch_balance = MagicMock()
        self.extractor.browser.fetch_balance = MagicMock()
        self.extractor.http_fallback.fetch_balance = MagicMock()

    def test_api_success_skips_browser(self):
        self.extractor.api_client.fetch_balance.return_value = 1200

        result = self.extractor.fetch_balance_result("tok")

        assert result == ExtractionResult(balance=1200, source="portal_api")
        self.extractor.browser.fetch_balance.assert_not_called()

    def test_browser_used_when_api_fails(self):
        self.extractor.api_client.fetch_balance.side_effect = ExtractionError("down")
        self.extractor.browser.fetch_balance.return_value = 900

        assert self.extractor.fetch_balance_result("tok").source == "browser"

    def test_http_fallback_when_browser_disabled(self):
        self.extractor.use_browser = False
        self.extractor.api_client.fetch_balance.side_effect = ExtractionError("down")
        self.extractor.http_fallback.fetch_balance.return_value = 700

        assert self.extractor.fetch_balance("tok") == 700
        self.extractor.browser.fetch_balance.assert_not_called()

    def test_exponential_backoff_between_attempts(self):
        self.extractor.api_client.fetch_balance.side_effect = ExtractionError("down")
        self.extractor.browser.fetch_balance.side_effect = ExtractionError("down")

        with pytest.raises(ExtractionError, match="All 3 attempts failed"):
            self.extractor.fetch_balance("tok")

        assert [c.args[0] for c in self.sleep.call_args_list] == [1, 2]

    def test_recovers_on_later_attempt(self):
        self.extractor.api_client.fetch_balance.side_effect = [ExtractionError("x"), 450]
        self.extractor.browser.fetch_balance.side_effect = ExtractionError("y")

        assert self.extractor.fetch_balance("tok") == 450
        self.sleep.assert_called_once_with(1)

    def test_auth_error_aborts_immediately(self):
        self.extractor.api_client.fetch_balance.side_effect = AuthError("rejected")

        with pytest.raises(AuthError):
            self.extractor.fetch_balance("tok")

        self.extractor.browser.fetch_balance.assert_not_called()
        self.sleep.assert_not_called()

    def test_missing_credential(self):
        with pytest.raises(AuthError):
            self.extractor.fetch_balance("")

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            BalanceExtractor(retry_attempts=0)
        with pytest.raises(ValueError):
            BalanceExtractor(credential_kind="password")


class TestLedgerUrl:
    """Test splitting a pasted ledger summary URL."""

    def test_parse(self):
        link = parse_ledger_url(
            f"{BASE}/api/v1/customers/cus_1/ledger_summary?pricing_unit_id=pu_1&token=secret",
            base_url=BASE,
        )

        assert link.customer_id == "cus_1"
        assert link.pricing_unit_id == "pu_1"
        assert link.token == "secret"

    @pytest.mark.parametrize("url", [
        "not a url",
        "https://elsewhere.example.com/api/v1/customers/cus_1/ledger_summary?pricing_unit_id=pu_1&token=t",
        f"{BASE}/api/v1/customers/cus_1/invoices?pricing_unit_id=pu_1&token=t",
        f"{BASE}/api/v1/customers/cus_1/ledger_summary?token=t",
        f"{BASE}/api/v1/customers/cus_1/ledger_summary?pricing_unit_id=pu_1",
    ])
    def test_rejects_malformed(self, url):
        with pytest.raises(ValueError):
            parse_ledger_url(url, base_url=BASE)

    def test_engine_passes_known_ids(self):
        extractor = BalanceExtractor(base_url=BASE, customer_id="cus_1", pricing_unit_id="pu_1",
                                     transport=httpx.MockTransport(_portal_handler(balance=77)))

        assert extractor.fetch_balance("tok") == 77


class TestValidateToken:
    """Test the cheap credential check."""

    def _extractor(self, handler):
        return BalanceExtractor(base_url=BASE, transport=httpx.MockTransport(handler))

    def test_portal_page_is_valid(self):
        extractor = self._extractor(lambda r: httpx.Response(200, text="<title>Orb Portal</title>"))
        assert extractor.validate_token("tok") is True

    def test_unrelated_page_is_invalid(self):
        extractor = self._extractor(lambda r: httpx.Response(200, text="<p>Hello</p>"))
        assert extractor.validate_token("tok") is False

    def test_network_error_is_invalid(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        assert self._extractor(handler).validate_token("tok") is False

    def test_forbidden_raises_auth_error(self):
        extractor = self._extractor(lambda r: httpx.Response(403))
        with pytest.raises(AuthError):
            extractor.validate_token("tok")


class TestHttpFallback:
    """Test the plain-HTTP strategies."""

    def _fallback(self, handler):
        api = PortalApiClient(BASE, transport=httpx.MockTransport(handler))
        return HttpFallbackExtractor(api, sleep=MagicMock(), clock=lambda: 1700000000)

    def test_bare_request_parses_page(self):
        fallback = self._fallback(
            lambda r: httpx.Response(200, text="<div>Credit balance: 2,666 User Messages</div>"))
        assert fallback.fetch_balance("tok") == 2666

    def test_alternate_json_endpoint(self):
        def handler(request):
            if request.url.path == "/api/v1/balance":
                return httpx.Response(200, json={"data": {"balance": 321}})
            return httpx.Response(200, text="<div>Loading...</div>")

        assert self._fallback(handler).fetch_balance("tok") == 321

    def test_cache_busted_view_url_is_last_candidate(self):
        urls = self._fallback(lambda r: httpx.Response(404)).candidate_urls("tok")

        assert urls[0] == f"{BASE}/api/customer/balance?token=tok"
        assert urls[-1] == f"{BASE}/view?token=tok&_cb=1700000000"

    def test_nothing_found(self):
        fallback = self._fallback(lambda r: httpx.Response(200, text="<div>Loading...</div>"))
        with pytest.raises(ExtractionError):
            fallback.fetch_balance("tok")

    def test_rejected_token(self):
        with pytest.raises(AuthError):
            self._fallback(lambda r: httpx.Response(401)).fetch_balance("tok")


class TestBrowserPage:
    """Test rendered-page extraction with a fake page."""

    def setup_method(self):
        self.sleep = MagicMock()
        self.browser = BrowserExtractor(PortalApiClient(BASE), poll_attempts=3,
                                        poll_interval=3.0, sleep=self.sleep)

    def test_polls_until_marker_appears(self):
        page = FakePage(["<div>Loading</div>", "<div>Credit balance</div>"])

        assert self.browser.wait_for_content(page) is True
        self.sleep.assert_called_once_with(3.0)

    def test_gives_up_after_poll_attempts(self):
        page = FakePage(["<div>Loading</div>"])

        assert self.browser.wait_for_content(page) is False
        assert self.sleep.call_count == 2

    def test_selector_text(self):
        page = FakePage(["<div>Credit balance</div>"],
                        elements={".credit-balance": ["Credit balance: 1,234 User Messages"]})
        assert self.browser.extract_from_page(page) == 1234

    def test_script_probe(self):
        page = FakePage(["<div>Credit balance</div>"],
                        probes={"() => window.customerBalance": 640})
        assert self.browser.extract_from_page(page) == 640

    def test_rendered_html_last(self):
        page = FakePage(["<div>Credit balance: 2,666 User Messages</div>"])
        assert self.browser.extract_from_page(page) == 2666
