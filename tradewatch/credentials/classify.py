# tradewatch/credentials/classify.py
from __future__ import annotations

from typing import Any, Iterable, Optional

AUTH_STATUS_CODES = frozenset({401, 403})
AUTH_BROKER_CODES = frozenset({-16})


def is_auth_failure(
    message: Optional[str],
    code: Any = None,
    status_code: Optional[int] = None,
    signatures: Iterable[str] = (),
) -> bool:
    """
    True only for failures that prove the session itself is dead.
    Timeouts, network errors and unrecognised rejections are not auth failures.
    """
    if status_code is not None and int(status_code) in AUTH_STATUS_CODES:
        return True

    if code is not None:
        try:
            if int(code) in AUTH_BROKER_CODES:
                return True
        except (TypeError, ValueError):
            pass

    text = (message or "").lower()
    if not text:
        return False
    return any(sig and sig.lower() in text for sig in signatures)
