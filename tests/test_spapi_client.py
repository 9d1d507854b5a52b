from __future__ import annotations

import json
import threading
import time

import pytest
import requests

from auth.spapi_auth import SpApiAuth, SpApiAuthError
from services import perf
from services.spapi_client import (
    Endpoint,
    RatePacer,
    SpApiClient,
    SpApiError,
    SpApiPayloadError,
    SpApiQuotaError,
    build_pacers,
    resolve_spapi_host,
)


class FakeResponse:
    def __init__(self, status_code: int, payload=None, text: str | None = None):
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text
        self.content = text.encode("utf-8")

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        step = self.responses.pop(0)
        if isinstance(step, Exception):
            raise step
        return step

    def post(self, url, **kwargs):
        self.calls.append(("POST", url, kwargs))
        step = self.responses.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


class StaticAuth:
    def __init__(self):
        self.invalidated = 0

    def get_lwa_access_token(self):
        return "token-123"

    def invalidate(self):
        self.invalidated += 1


def _client(session, fake_clock=None):
    pacers = build_pacers(clock=fake_clock, sleep=fake_clock.sleep) if fake_clock else None
    return SpApiClient(
        StaticAuth(),
        marketplace_id="A1VC38T7YXB528",
        base_url="https://spapi.test",
        session=session,
        pacers=pacers,
        use_mock=False,
    )


def test_pacer_spaces_solicitation_calls(fake_clock):
    pacer = RatePacer(1.0, clock=fake_clock, sleep=fake_clock.sleep)
    start = fake_clock.now
    for _ in range(3):
        pacer.wait()
    assert fake_clock.now - start >= 2.0
    assert fake_clock.sleeps == [1.0, 1.0]


def test_pacer_does_not_sleep_when_interval_already_elapsed(fake_clock):
    pacer = RatePacer(2.0, clock=fake_clock, sleep=fake_clock.sleep)
    pacer.wait()
    fake_clock.now += 5
    assert pacer.wait() == 0.0
    assert fake_clock.sleeps == []


def test_client_paces_solicitations_endpoint(fake_clock):
    actions = {"_links": {"actions": [{"href": "/solicitations/v1/orders/1/solicitations/productReviewAndSellerFeedback"}]}}
    session = FakeSession([FakeResponse(200, actions) for _ in range(3)])
    client = _client(session, fake_clock)
    start = fake_clock.now

    results = [client.is_solicitation_allowed(f"ORDER-{i}") for i in range(3)]

    assert results == [True, True, True]
    assert fake_clock.now - start >= 2.0
    assert len(session.calls) == 3


def test_orders_endpoint_is_not_paced(fake_clock):
    page = {"payload": {"Orders": [], "NextToken": None}}
    session = FakeSession([FakeResponse(200, page), FakeResponse(200, page)])
    client = _client(session, fake_clock)

    client.get_orders(created_after="2025-01-01T00:00:00Z")
    client.get_orders(created_after="2025-01-01T00:00:00Z")

    assert fake_clock.sleeps == []
    params = session.calls[0][2]["params"]
    assert params["MarketplaceIds"] == "A1VC38T7YXB528"
    assert params["MaxResultsPerPage"] == 100


def test_429_raises_quota_error():
    session = FakeSession([FakeResponse(429, {"errors": [{"code": "QuotaExceeded"}]})])
    client = _client(session)
    with pytest.raises(SpApiQuotaError) as excinfo:
        client.get_order_items("ORDER-1")
    assert excinfo.value.status_code == 429


def test_server_error_raises_without_retry():
    session = FakeSession([FakeResponse(503, text="unavailable"), FakeResponse(200, {"payload": {}})])
    client = _client(session)
    with pytest.raises(SpApiError) as excinfo:
        client.get_orders()
    assert excinfo.value.status_code == 503
    assert excinfo.value.is_transient
    assert len(session.calls) == 1


def test_timeout_is_wrapped_as_spapi_error():
    session = FakeSession([requests.exceptions.Timeout("read timed out")])
    client = _client(session)
    with pytest.raises(SpApiError):
        client.get_orders()


def test_forbidden_invalidates_token():
    session = FakeSession([FakeResponse(403, text="denied")])
    client = _client(session)
    with pytest.raises(SpApiError):
        client.get_catalog_item("B0TEST0001")
    assert client.auth.invalidated == 1


def test_orders_page_without_payload_is_rejected():
    session = FakeSession([FakeResponse(200, {"unexpected": True})])
    client = _client(session)
    with pytest.raises(SpApiPayloadError):
        client.get_orders()


def test_send_review_solicitation_returns_status():
    session = FakeSession([FakeResponse(201, text="")])
    client = _client(session)
    assert client.send_review_solicitation("ORDER-1") == 201
    method, url, kwargs = session.calls[0]
    assert method == "POST"
    assert url.endswith("/solicitations/v1/orders/ORDER-1/solicitations/productReviewAndSellerFeedback")


def test_calls_are_timed():
    perf.reset_timings()
    session = FakeSession([FakeResponse(200, {"payload": {"Orders": []}})])
    _client(session).get_orders()
    assert perf.get_timing_summary()["spapi.orders"]["count"] == 1


def test_mock_mode_makes_no_http_calls():
    session = FakeSession([])
    client = SpApiClient(StaticAuth(), session=session, use_mock=True)
    page = client.get_orders()
    assert page.orders
    assert session.calls == []


@pytest.mark.parametrize(
    "marketplace_id,expected",
    [
        ("A1VC38T7YXB528", "https://sellingpartnerapi-fe.amazon.com"),
        ("A1PA6795UKMFR9", "https://sellingpartnerapi-eu.amazon.com"),
        ("ATVPDKIKX0DER", "https://sellingpartnerapi-na.amazon.com"),
    ],
)
def test_resolve_spapi_host(marketplace_id, expected):
    assert resolve_spapi_host(marketplace_id) == expected


# ----------------------------
# LWA token cache
# ----------------------------
def _token_response(token="tok", expires_in=3600):
    return FakeResponse(200, {"access_token": token, "expires_in": expires_in})


def test_token_is_reused_until_expiry_margin(fake_clock):
    session = FakeSession([_token_response("first"), _token_response("second")])
    auth = SpApiAuth("id", "secret", "refresh", session=session, clock=fake_clock)

    assert auth.get_lwa_access_token() == "first"
    fake_clock.now += 3000
    assert auth.get_lwa_access_token() == "first"
    assert len(session.calls) == 1

    # Inside the 60s margin the token is refreshed.
    fake_clock.now += 560
    assert auth.get_lwa_access_token() == "second"
    assert len(session.calls) == 2


class SlowTokenSession(FakeSession):
    def post(self, url, **kwargs):
        time.sleep(0.05)
        return super().post(url, **kwargs)


def test_concurrent_callers_share_one_refresh(fake_clock):
    session = SlowTokenSession([_token_response("shared"), _token_response("extra")])
    auth = SpApiAuth("id", "secret", "refresh", session=session, clock=fake_clock)
    tokens = []

    threads = [threading.Thread(target=lambda: tokens.append(auth.get_lwa_access_token())) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert tokens == ["shared"] * 4
    assert len(session.calls) == 1


def test_rejected_refresh_raises_without_retry(fake_clock):
    session = FakeSession([FakeResponse(400, {"error": "invalid_grant"}), _token_response()])
    auth = SpApiAuth("id", "secret", "refresh", session=session, clock=fake_clock)
    with pytest.raises(SpApiAuthError) as excinfo:
        auth.get_lwa_access_token()
    assert excinfo.value.status_code == 400
    assert len(session.calls) == 1


def test_missing_credentials_raise_auth_error():
    auth = SpApiAuth("", "", "", session=FakeSession([]))
    with pytest.raises(SpApiAuthError):
        auth.get_lwa_access_token()
    assert auth.missing_credentials() == ["LWA_CLIENT_ID", "LWA_CLIENT_SECRET", "LWA_REFRESH_TOKEN"]


def test_endpoint_pacers_use_configured_intervals():
    pacers = build_pacers()
    assert pacers[Endpoint.ORDER_ITEMS].min_interval == 2.0
    assert pacers[Endpoint.CATALOG].min_interval == 0.3
    assert pacers[Endpoint.SOLICITATIONS].min_interval == 1.0
    assert pacers[Endpoint.ORDERS].min_interval == 0.0
