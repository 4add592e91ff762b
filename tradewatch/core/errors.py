from __future__ import annotations

from typing import Optional


class TradewatchError(Exception):
    pass


class NotFound(TradewatchError):
    pass


class LedgerValidationError(TradewatchError):
    """Malformed input to the ledger. Raised before anything is written."""


class StateValidationError(TradewatchError):
    """A state mutation that would break a monitoring invariant."""


class IllegalTransition(StateValidationError):
    def __init__(self, symbol_id: str, current: str, target: str):
        self.symbol_id = symbol_id
        self.current = current
        self.target = target
        super().__init__(f"{symbol_id}: illegal transition {current} -> {target}")


class BrokerError(TradewatchError):
    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(message)


class CredentialCheckTimeout(TradewatchError):
    pass
