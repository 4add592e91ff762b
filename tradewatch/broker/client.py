# tradewatch/broker/client.py
from __future__ import annotations

import logging
import random
import time
from typing import Any, Dict, Optional

import requests

from tradewatch.core.errors import BrokerError

log = logging.getLogger("tradewatch.broker")


def _envelope(r: requests.Response) -> Dict[str, Any]:
    try:
        data = r.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class FyersClient:
    """
    Minimal Fyers REST client. Only what the session health check needs.
    Successful calls return the broker envelope: {"s": "ok"|"error", "code", "message", ...}
    """

    def __init__(
        self,
        app_id: str,
        base_url: str,
        timeout: float = 8.0,
        max_retries: int = 2,
    ):
        self.app_id = app_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries

    def _auth_header(self, access_token: str) -> Dict[str, str]:
        return {"Authorization": f"{self.app_id}:{access_token}"}

    # ------------------------------------------------------------------
    # request helper
    # ------------------------------------------------------------------
    def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        params: Optional[dict] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = self._auth_header(access_token)

        last_err: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            try:
                r = requests.request(
                    method, url, params=params or {}, headers=headers, timeout=self.timeout
                )
            except (requests.Timeout, requests.ConnectionError) as e:
                last_err = e
                time.sleep(min(0.4 * (2**attempt), 2.0))
                continue

            # rate limit / server errors are retried
            if r.status_code == 429 or r.status_code >= 500:
                last_err = BrokerError(
                    f"Fyers HTTP {r.status_code}", status_code=r.status_code
                )
                sleep_s = 0.4 * (2**attempt) + random.uniform(0, 0.2)
                time.sleep(min(sleep_s, 2.0))
                continue

            body = _envelope(r)
            if r.status_code >= 400:
                raise BrokerError(
                    str(body.get("message") or r.text or f"HTTP {r.status_code}"),
                    code=body.get("code"),
                    status_code=r.status_code,
                )
            return body

        if isinstance(last_err, BrokerError):
            raise last_err
        raise BrokerError(f"Fyers request failed after retries: {method} {path} ({last_err})")

    # ------------------------------------------------------------------
    # public
    # ------------------------------------------------------------------
    def get_profile(self, access_token: str) -> Dict[str, Any]:
        return self._request("GET", "/profile", access_token)
