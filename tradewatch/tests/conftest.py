import pytest

from tradewatch.persistence.db import DB


@pytest.fixture(autouse=True)
def _test_env(monkeypatch):
    """
    Ensure tests never hit the real broker.
    """
    monkeypatch.setenv("FYERS_APP_ID", "TEST-100")
    monkeypatch.setenv("FYERS_API_BASE_URL", "http://fyers.invalid/api/v3")
    monkeypatch.setenv("LEDGER_POLICY", "dual_source")
    monkeypatch.setenv("CREDENTIAL_CHECK_TIMEOUT_SECONDS", "1")


@pytest.fixture
def db(tmp_path):
    return DB(str(tmp_path / "tradewatch.db"))


class RecordingNotifier:
    """Synchronous stand-in for Notifier.dispatch."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    def dispatch(self, entry, notification):
        self.calls.append((entry, notification))
        if self.fail:
            raise RuntimeError("sink down")


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def failing_notifier():
    return RecordingNotifier(fail=True)
