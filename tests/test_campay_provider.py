from __future__ import annotations

import pytest
import requests

import app.providers.campay as campay
from app.providers.campay import CampayCredential, CampayProvider, parse_credentials
from app.providers.factory import get_rail, reset_rail_cache
from app.providers.mock import MockRail
from settings import settings


class FakeResponse:
    def __init__(self, status_code, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeHttp:
    """Routes requests.post/get by URL suffix; records every call."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def _answer(self, method, url, kwargs):
        self.calls.append((method, url, kwargs))
        for suffix, answer in self.routes.items():
            if url.endswith(suffix):
                result = answer(kwargs) if callable(answer) else answer
                if isinstance(result, Exception):
                    raise result
                return result
        raise AssertionError(f"unexpected {method} {url}")

    def post(self, url, **kwargs):
        return self._answer("POST", url, kwargs)

    def get(self, url, **kwargs):
        return self._answer("GET", url, kwargs)

    def count(self, suffix):
        return sum(1 for _, url, _ in self.calls if url.endswith(suffix))


@pytest.fixture
def http(monkeypatch):
    def install(routes):
        fake = FakeHttp(routes)
        monkeypatch.setattr(campay.requests, "post", fake.post)
        monkeypatch.setattr(campay.requests, "get", fake.get)
        return fake

    return install


def _provider(*usernames):
    creds = [CampayCredential(u, "pw") for u in (usernames or ("primary",))]
    return CampayProvider(base_url="https://rail.test/api", credentials=creds, currency="XAF", timeout_s=3)


def test_parse_credentials_keeps_order_and_skips_junk():
    creds = parse_credentials("a:1, b:2,broken,:x,c:pass:with:colons")
    assert [c.username for c in creds] == ["a", "b", "c"]
    assert creds[2].password == "pass:with:colons"


def test_withdraw_success(http):
    fake = http(
        {
            "token/": FakeResponse(200, {"token": "tok-1", "expires_in": 3600}),
            "withdraw/": FakeResponse(200, {"reference": "R-1", "status": "SUCCESSFUL"}),
        }
    )
    result = _provider().withdraw(amount=49000, phone="237670000001", description="d", external_reference="INV-1")

    assert result.ok
    assert result.status == "SUCCESSFUL"
    assert result.reference == "R-1"
    _, url, kwargs = fake.calls[-1]
    assert url == "https://rail.test/api/withdraw/"
    assert kwargs["json"]["amount"] == "49000"
    assert kwargs["json"]["to"] == "237670000001"
    assert kwargs["headers"]["Authorization"] == "Token tok-1"


def test_token_is_cached_between_calls(http):
    fake = http(
        {
            "token/": FakeResponse(200, {"token": "tok-1"}),
            "collect/": FakeResponse(200, {"reference": "C-1"}),
        }
    )
    rail = _provider()
    first = rail.collect(amount=100, phone="237670000001", description="d", external_reference="p1")
    rail.collect(amount=100, phone="237670000001", description="d", external_reference="p2")

    assert first.status == "PENDING"
    assert fake.count("token/") == 1
    assert fake.count("collect/") == 2


def test_refused_credential_falls_through_to_next(http):
    def token(kwargs):
        if kwargs["json"]["username"] == "primary":
            return FakeResponse(401, {"detail": "bad credentials"})
        return FakeResponse(200, {"token": "tok-backup"})

    fake = http({"token/": token, "withdraw/": FakeResponse(200, {"reference": "R-2", "status": "SUCCESSFUL"})})
    result = _provider("primary", "backup").withdraw(
        amount=1000, phone="237670000001", description="d", external_reference="INV-2"
    )

    assert result.reference == "R-2"
    assert fake.calls[-1][2]["headers"]["Authorization"] == "Token tok-backup"


def test_business_rejection_does_not_fall_through(http):
    fake = http(
        {
            "token/": FakeResponse(200, {"token": "tok"}),
            "withdraw/": FakeResponse(400, {"message": "Insufficient balance"}),
        }
    )
    result = _provider("primary", "backup").withdraw(
        amount=1000, phone="237670000001", description="d", external_reference="INV-3"
    )

    assert result.status == "FAILED"
    assert result.definitive is True
    assert result.error == "Insufficient balance"
    assert fake.count("withdraw/") == 1


@pytest.mark.parametrize(
    "answer",
    [requests.Timeout("slow"), FakeResponse(502, None)],
)
def test_timeout_or_server_error_is_indeterminate(http, answer):
    http({"token/": FakeResponse(200, {"token": "tok"}), "withdraw/": answer})
    result = _provider().withdraw(amount=1000, phone="237670000001", description="d", external_reference="INV-4")
    assert result.status == "FAILED"
    assert result.definitive is False


def test_no_credentials_configured():
    result = CampayProvider(base_url="https://rail.test/api/", credentials=[]).withdraw(
        amount=1, phone="237670000001", description="d", external_reference="x"
    )
    assert result.error == "RAIL_NOT_CONFIGURED"


@pytest.mark.parametrize(
    "raw,mapped",
    [("SUCCESSFUL", "SUCCESSFUL"), ("success", "SUCCESSFUL"), ("FAILED", "FAILED"), ("PENDING", "PENDING"), ("weird", "PENDING")],
)
def test_transaction_status_mapping(http, raw, mapped):
    http({"token/": FakeResponse(200, {"token": "tok"}), "transaction/R-9/": FakeResponse(200, {"status": raw})})
    assert _provider().transaction_status("R-9").status == mapped


def test_factory_caches_rail_per_mode(monkeypatch):
    monkeypatch.setattr(settings, "RAIL_MODE", "mock")
    reset_rail_cache()
    rail = get_rail()
    assert isinstance(rail, MockRail)
    assert get_rail() is rail

    monkeypatch.setattr(settings, "RAIL_MODE", "campay")
    assert isinstance(get_rail(), CampayProvider)
