import pytest
import requests

from tradewatch.broker.client import FyersClient
from tradewatch.core.errors import BrokerError
from tradewatch.credentials.classify import is_auth_failure

SIGS = ["token expired", "invalid token", "unauthorized"]


class _Resp:
    def __init__(self, status_code, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


@pytest.fixture
def no_sleep(monkeypatch):
    sleeps = []
    monkeypatch.setattr("tradewatch.broker.client.time.sleep", sleeps.append)
    return sleeps


def _client():
    return FyersClient(app_id="APP-100", base_url="http://fyers.invalid/api/v3/", max_retries=2)


def test_profile_sends_app_scoped_token(monkeypatch, no_sleep):
    seen = {}

    def fake_request(method, url, params=None, headers=None, timeout=None):
        seen.update(method=method, url=url, headers=headers)
        return _Resp(200, {"s": "ok", "data": {"fy_id": "XY123"}})

    monkeypatch.setattr(requests, "request", fake_request)

    out = _client().get_profile("tok")
    assert out["s"] == "ok"
    assert seen["method"] == "GET"
    assert seen["url"] == "http://fyers.invalid/api/v3/profile"
    assert seen["headers"] == {"Authorization": "APP-100:tok"}
    assert no_sleep == []


def test_retries_server_errors_then_succeeds(monkeypatch, no_sleep):
    responses = [_Resp(503), _Resp(429), _Resp(200, {"s": "ok"})]
    monkeypatch.setattr(requests, "request", lambda *a, **k: responses.pop(0))

    assert _client().get_profile("tok") == {"s": "ok"}
    assert len(no_sleep) == 2
    assert all(s <= 2.0 for s in no_sleep)


def test_client_error_raises_with_envelope(monkeypatch, no_sleep):
    monkeypatch.setattr(
        requests,
        "request",
        lambda *a, **k: _Resp(401, {"s": "error", "code": -16, "message": "Could not authenticate"}),
    )
    with pytest.raises(BrokerError) as ei:
        _client().get_profile("tok")
    assert ei.value.status_code == 401
    assert ei.value.code == -16
    assert ei.value.message == "Could not authenticate"
    assert no_sleep == []


def test_network_failure_exhausts_retries(monkeypatch, no_sleep):
    def boom(*a, **k):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(requests, "request", boom)
    with pytest.raises(BrokerError) as ei:
        _client().get_profile("tok")
    assert ei.value.status_code is None
    assert len(no_sleep) == 3


def test_server_errors_exhaust_retries_with_status(monkeypatch, no_sleep):
    monkeypatch.setattr(requests, "request", lambda *a, **k: _Resp(502, text="bad gateway"))
    with pytest.raises(BrokerError) as ei:
        _client().get_profile("tok")
    assert ei.value.status_code == 502


# ---------- classification ----------
@pytest.mark.parametrize(
    "message,code,status",
    [
        ("anything", None, 401),
        ("anything", None, 403),
        ("Could not authenticate", -16, 400),
        ("Could not authenticate", "-16", None),
        ("Your Token Expired, login again", None, None),
        ("UNAUTHORIZED request", None, 200),
    ],
)
def test_auth_failures(message, code, status):
    assert is_auth_failure(message, code, status, SIGS)


@pytest.mark.parametrize(
    "message,code,status",
    [
        ("read timed out", None, None),
        ("Fyers HTTP 503", None, 503),
        ("insufficient funds", -50, 400),
        ("", "not-a-number", None),
        (None, None, None),
    ],
)
def test_not_auth_failures(message, code, status):
    assert not is_auth_failure(message, code, status, SIGS)


def test_no_signatures_only_codes_count():
    assert not is_auth_failure("token expired", signatures=())
    assert is_auth_failure("token expired", code=-16, signatures=())
