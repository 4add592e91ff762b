# tradewatch/credentials/monitor.py
from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from tradewatch.core.config import settings
from tradewatch.core.errors import BrokerError, CredentialCheckTimeout
from tradewatch.credentials.classify import is_auth_failure
from tradewatch.persistence.credential_store import BrokerCredential, CredentialStore

log = logging.getLogger("tradewatch.credentials")


class ProfileClient(Protocol):
    def get_profile(self, access_token: str) -> Dict[str, Any]: ...


@dataclass
class CredentialValidationRecord:
    valid: bool
    checked_at: float
    auth_failure: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class CheckResult:
    user_id: str
    valid: bool
    cached: bool = False
    auth_failure: bool = False
    disconnected: bool = False
    errored: bool = False
    error: Optional[str] = None


@dataclass
class ValidationSummary:
    """
    valid + invalid + errored == total. `invalid` counts sessions the broker
    refused (or that have no token); `errored` counts checks that could not
    reach a verdict. Only errored users are listed in `errors`.
    """

    total: int = 0
    valid: int = 0
    invalid: int = 0
    errored: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "valid": self.valid,
            "invalid": self.invalid,
            "errored": self.errored,
            "errors": list(self.errors),
        }


def fingerprint(access_token: str) -> str:
    return hashlib.sha256(access_token.encode("utf-8")).hexdigest()


CacheKey = Tuple[str, str]


class CredentialHealthMonitor:
    """
    Validates broker sessions with one profile round-trip, caches the verdict
    for a TTL and marks the user disconnected on classified auth failures.
    Owns the cache, the per-key locks and the periodic task.
    """

    def __init__(
        self,
        store: CredentialStore,
        broker: ProfileClient,
        ttl_seconds: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
        interval_minutes: Optional[float] = None,
        signatures: Optional[List[str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.broker = broker
        self.ttl_seconds = float(ttl_seconds or settings.CREDENTIAL_CACHE_TTL_SECONDS)
        self.timeout_seconds = float(
            timeout_seconds or settings.CREDENTIAL_CHECK_TIMEOUT_SECONDS
        )
        self.interval_minutes = float(
            interval_minutes or settings.CREDENTIAL_CHECK_INTERVAL_MINUTES
        )
        self.signatures = list(
            settings.AUTH_ERROR_SIGNATURES if signatures is None else signatures
        )
        self.clock = clock

        self._cache: Dict[CacheKey, CredentialValidationRecord] = {}

        # asyncio primitives bind to a loop on first contention
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._key_locks: Dict[CacheKey, asyncio.Lock] = {}
        self._batch_lock: Optional[asyncio.Lock] = None

        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._retired: List[asyncio.Task] = []

    # =========================
    # Cache
    # =========================
    def _fresh(self, key: CacheKey) -> Optional[CredentialValidationRecord]:
        rec = self._cache.get(key)
        if rec is None:
            return None
        if self.clock() - rec.checked_at >= self.ttl_seconds:
            return None
        return rec

    def clear_user_cache(self, user_id: str) -> int:
        keys = [k for k in self._cache if k[0] == user_id]
        for k in keys:
            self._cache.pop(k, None)
        return len(keys)

    def clear_all_cache(self) -> int:
        n = len(self._cache)
        self._cache.clear()
        return n

    def cache_stats(self) -> Dict[str, Any]:
        now = self.clock()
        live = [r for r in self._cache.values() if now - r.checked_at < self.ttl_seconds]
        return {
            "entries": len(self._cache),
            "live": len(live),
            "expired": len(self._cache) - len(live),
            "valid": sum(1 for r in live if r.valid),
            "invalid": sum(1 for r in live if not r.valid),
            "ttl_seconds": self.ttl_seconds,
        }

    # =========================
    # Locks
    # =========================
    def _bind_loop(self) -> asyncio.Lock:
        """Rebinds the locks to the running loop; returns the batch lock."""
        loop = asyncio.get_running_loop()
        if self._loop is not loop or self._batch_lock is None:
            self._loop = loop
            self._key_locks = {}
            self._batch_lock = asyncio.Lock()
        return self._batch_lock

    def _lock_for(self, key: CacheKey) -> asyncio.Lock:
        self._bind_loop()
        lock = self._key_locks.get(key)
        if lock is None:
            lock = self._key_locks[key] = asyncio.Lock()
        return lock

    # =========================
    # Single check
    # =========================
    async def is_valid(self, credential: BrokerCredential) -> bool:
        return (await self.check(credential)).valid

    async def check(self, credential: BrokerCredential) -> CheckResult:
        token = credential.access_token
        if not token:
            return CheckResult(
                user_id=credential.user_id, valid=False, error="no access token"
            )

        key = (credential.user_id, fingerprint(token))
        rec = self._fresh(key)
        if rec is not None:
            return self._result(credential.user_id, rec, cached=True)

        async with self._lock_for(key):
            # another task may have validated while we waited
            rec = self._fresh(key)
            if rec is not None:
                return self._result(credential.user_id, rec, cached=True)

            rec = await self._validate(credential)
            self._cache[key] = rec

        return self._result(
            credential.user_id, rec, cached=False, disconnected=rec.auth_failure
        )

    @staticmethod
    def _result(
        user_id: str,
        rec: CredentialValidationRecord,
        cached: bool,
        disconnected: bool = False,
    ) -> CheckResult:
        return CheckResult(
            user_id=user_id,
            valid=rec.valid,
            cached=cached,
            auth_failure=rec.auth_failure,
            disconnected=disconnected,
            errored=not rec.valid and not rec.auth_failure,
            error=rec.error,
        )

    async def _round_trip(self, access_token: str) -> Dict[str, Any]:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.broker.get_profile, access_token),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise CredentialCheckTimeout(
                f"profile check timed out after {self.timeout_seconds:g}s"
            ) from None

    async def _validate(self, credential: BrokerCredential) -> CredentialValidationRecord:
        user_id = credential.user_id
        auth = False
        error: Optional[str] = None

        try:
            envelope = await self._round_trip(credential.access_token or "")
        except CredentialCheckTimeout as e:
            error = str(e)
        except BrokerError as e:
            auth = is_auth_failure(e.message, e.code, e.status_code, self.signatures)
            error = e.message
        except Exception as e:
            auth = is_auth_failure(str(e), signatures=self.signatures)
            error = f"{type(e).__name__}: {e}"
        else:
            if str(envelope.get("s", "")).lower() == "ok":
                return CredentialValidationRecord(valid=True, checked_at=self.clock())
            error = str(envelope.get("message") or "profile check rejected")
            auth = is_auth_failure(error, envelope.get("code"), None, self.signatures)

        if auth:
            await asyncio.to_thread(self.store.mark_disconnected, user_id)
            log.warning("session expired for user %s: %s", user_id, error)
        else:
            log.warning("session check failed for user %s (kept connected): %s", user_id, error)

        return CredentialValidationRecord(
            valid=False, checked_at=self.clock(), auth_failure=auth, error=error
        )

    # =========================
    # Batch
    # =========================
    async def validate_all_connected(self) -> ValidationSummary:
        async with self._bind_loop():
            creds = await asyncio.to_thread(self.store.list_connected)
            summary = ValidationSummary(total=len(creds))
            results = await asyncio.gather(
                *(self.check(c) for c in creds), return_exceptions=True
            )
            for cred, res in zip(creds, results):
                if isinstance(res, BaseException):
                    summary.errored += 1
                    summary.errors.append(
                        {"user_id": cred.user_id, "error": f"{type(res).__name__}: {res}"}
                    )
                elif res.valid:
                    summary.valid += 1
                elif res.errored:
                    summary.errored += 1
                    summary.errors.append(
                        {"user_id": cred.user_id, "error": res.error or "check failed"}
                    )
                else:
                    summary.invalid += 1

        log.info(
            "credential sweep: total=%s valid=%s invalid=%s errored=%s",
            summary.total,
            summary.valid,
            summary.invalid,
            summary.errored,
        )
        return summary

    # =========================
    # Periodic driver
    # =========================
    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, interval_minutes: Optional[float] = None) -> None:
        """
        Must be called from a running event loop. A loop that is already running
        is told to stop; its in-flight sweep still completes.
        """
        if interval_minutes is not None:
            self.interval_minutes = float(interval_minutes)

        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None and not self._task.done():
            self._retired.append(self._task)

        stop_event = asyncio.Event()
        self._stop_event = stop_event
        self._task = asyncio.create_task(
            self._run(self.interval_minutes * 60.0, stop_event)
        )
        log.info("credential monitor started (every %g min)", self.interval_minutes)

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        tasks = [t for t in self._retired + [self._task] if t is not None]
        self._task = None
        self._stop_event = None
        self._retired = []
        for t in tasks:
            await t
        log.info("credential monitor stopped")

    async def _run(self, interval_s: float, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.validate_all_connected()
            except Exception:
                log.exception("credential sweep failed")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_s)
            except asyncio.TimeoutError:
                pass
