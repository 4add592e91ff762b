import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from tradewatch.broker.client import FyersClient
from tradewatch.core.config import settings
from tradewatch.core.errors import (
    IllegalTransition,
    LedgerValidationError,
    NotFound,
    StateValidationError,
)
from tradewatch.credentials.monitor import CredentialHealthMonitor
from tradewatch.ledger.service import EventLedger
from tradewatch.monitoring.service import MonitoringService
from tradewatch.notify.sink import DBNotificationSink, LoggingPush, Notifier
from tradewatch.persistence.credential_store import BrokerCredential, CredentialStore
from tradewatch.persistence.db import DB

log = logging.getLogger("tradewatch.api")

app = FastAPI(title="Tradewatch")


# =========================
# Wiring
# =========================
@dataclass
class Services:
    db: DB
    credentials: CredentialStore
    notifications: DBNotificationSink
    notifier: Notifier
    ledger: EventLedger
    monitoring: MonitoringService
    monitor: CredentialHealthMonitor


def build_services(db: DB, broker=None) -> Services:
    credentials = CredentialStore(db)
    sink = DBNotificationSink(db)
    notifier = Notifier(sink, LoggingPush(), workers=settings.NOTIFY_WORKERS)
    ledger = EventLedger(db, notifier)
    broker = broker or FyersClient(
        app_id=settings.FYERS_APP_ID,
        base_url=settings.FYERS_API_BASE_URL,
        timeout=settings.BROKER_HTTP_TIMEOUT_SECONDS,
    )
    return Services(
        db=db,
        credentials=credentials,
        notifications=sink,
        notifier=notifier,
        ledger=ledger,
        monitoring=MonitoringService(db, ledger=ledger),
        monitor=CredentialHealthMonitor(credentials, broker),
    )


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services(DB(settings.DB_PATH))
    return _services


# =========================
# Lifecycle
# =========================
@app.on_event("startup")
async def _startup_validate_config():
    """Fail-fast config validation at startup."""
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        for w in settings.validate_runtime():
            log.warning("[CONFIG WARNING] %s", w)
    except ValueError:
        log.exception("refusing to start with invalid configuration")
        raise


@app.on_event("startup")
async def _startup_credential_monitor():
    get_services().monitor.start()


@app.on_event("shutdown")
async def _shutdown():
    svc = get_services()
    await svc.monitor.stop()
    svc.notifier.close()


# =========================
# Error mapping
# =========================
@app.exception_handler(LedgerValidationError)
async def _ledger_validation(_: Request, exc: LedgerValidationError):
    return JSONResponse(status_code=422, content={"error": str(exc)})


@app.exception_handler(NotFound)
async def _not_found(_: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(StateValidationError)
async def _state_validation(_: Request, exc: StateValidationError):
    body: Dict[str, Any] = {"error": str(exc)}
    if isinstance(exc, IllegalTransition):
        body.update({"current": exc.current, "target": exc.target})
    return JSONResponse(status_code=409, content=body)


# =========================
# Health
# =========================
@app.get("/")
def root():
    return {
        "service": "tradewatch",
        "ledger_policy": settings.LEDGER_POLICY,
        "credential_monitor_running": get_services().monitor.running,
    }


@app.get("/health")
def health():
    return {"status": "ok"}


# =========================
# Trade logs
# =========================
class EventIn(BaseModel):
    action: str
    order_id: Optional[str] = None
    source: str = "APP"
    payload: Dict[str, Any] = Field(default_factory=dict)


def _entries(entries) -> Dict[str, Any]:
    data = [e.to_dict() for e in entries]
    return {"count": len(data), "logs": data}


@app.get("/trade-logs/{user_id}")
def trade_logs(
    user_id: str,
    day: Optional[date] = Query(default=None),
    days: Optional[int] = Query(default=None, ge=1),
    include_all: bool = Query(default=False, alias="all"),
):
    ledger = get_services().ledger
    if include_all:
        return _entries(ledger.list_all(user_id))
    if day is not None:
        return _entries(ledger.list_for_day(user_id, day))
    return _entries(ledger.list_recent(user_id, days))


@app.post("/trade-logs/{user_id}/events")
def trade_log_event(user_id: str, body: EventIn):
    entry = get_services().ledger.record_event(
        user_id, body.action, body.order_id, body.source, body.payload
    )
    return {"recorded": entry is not None, "log": entry.to_dict() if entry else None}


@app.post("/trade-logs/{user_id}/cleanup")
def trade_logs_cleanup(user_id: str):
    res = get_services().ledger.cleanup_duplicate_logs(user_id)
    return {"processed": res.processed, "deleted": res.deleted}


@app.post("/webhooks/broker/{user_id}")
def broker_webhook(user_id: str, body: EventIn):
    """Order updates pushed by the broker. Always tagged BROKER."""
    entry = get_services().ledger.record_event(
        user_id, body.action, body.order_id, "BROKER", body.payload
    )
    return {"recorded": entry is not None, "log": entry.to_dict() if entry else None}


@app.get("/notifications/{user_id}")
def notifications(user_id: str, limit: int = Query(default=50, ge=1, le=500)):
    rows = get_services().notifications.list_for_user(user_id, limit)
    return {"count": len(rows), "notifications": rows}


# =========================
# Monitoring
# =========================
@app.get("/monitoring/{user_id}")
def monitoring_state(user_id: str):
    return get_services().monitoring.get_state(user_id).to_dict()


@app.post("/monitoring/{user_id}/start")
def monitoring_start(user_id: str):
    return get_services().monitoring.start_monitoring(user_id).to_dict()


@app.post("/monitoring/{user_id}/stop")
def monitoring_stop(user_id: str):
    return get_services().monitoring.stop_monitoring(user_id).to_dict()


# =========================
# Credentials
# =========================
def _credential_status(cred: BrokerCredential) -> Dict[str, Any]:
    return {
        "user_id": cred.user_id,
        "connected": cred.connected,
        "has_token": bool(cred.access_token),
        "last_connect_at": cred.last_connect_at.isoformat() if cred.last_connect_at else None,
        "last_disconnect_at": (
            cred.last_disconnect_at.isoformat() if cred.last_disconnect_at else None
        ),
    }


@app.post("/credentials/validate-all")
async def credentials_validate_all():
    summary = await get_services().monitor.validate_all_connected()
    return summary.as_dict()


@app.post("/credentials/{user_id}")
def credentials_save(user_id: str, access_token: str = Body(..., embed=True)):
    svc = get_services()
    cred = svc.credentials.save_credentials(user_id, access_token)
    svc.monitor.clear_user_cache(user_id)
    return _credential_status(cred)


@app.get("/credentials/cache/stats")
def credentials_cache_stats():
    return get_services().monitor.cache_stats()


@app.delete("/credentials/cache")
def credentials_cache_clear(user_id: Optional[str] = None):
    monitor = get_services().monitor
    removed = monitor.clear_user_cache(user_id) if user_id else monitor.clear_all_cache()
    return {"removed": removed}


@app.get("/credentials/{user_id}/status")
async def credentials_status(user_id: str):
    svc = get_services()
    cred = svc.credentials.get(user_id)
    if cred is None:
        raise NotFound(f"no broker credentials for user {user_id}")
    if not cred.connected:
        return {**_credential_status(cred), "valid": False}

    res = await svc.monitor.check(cred)
    cred = svc.credentials.get(user_id) or cred
    return {
        **_credential_status(cred),
        "valid": res.valid,
        "cached": res.cached,
        "error": res.error,
    }
