"""
Error taxonomy shared by the cycle loop and the API.

ChainReadError   : RPC/node failure on a query. Recovered by skipping dependent work.
ChainWriteError  : submission rejected or reverted. Recorded as a failed action.
ValidationError  : malformed advisory response or request input.
LedgerWriteError : the ledger could not durably record a row. Escalated.
ConfigError      : missing/invalid configuration. Fatal at startup.
"""

import re

from .constitution import TREASURY_LAWS


class TreasuryError(Exception):
    """Base class for all agent errors."""


class ChainReadError(TreasuryError):
    pass


class ChainWriteError(TreasuryError):
    """Carries a sanitized, truncated reason safe to store in the ledger."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class ValidationError(TreasuryError):
    pass


class LedgerWriteError(TreasuryError):
    pass


class ConfigError(TreasuryError):
    pass


_URL_PATTERN = re.compile(r"https?://\S+")
_HEX_BLOB_PATTERN = re.compile(r"0x[0-9a-fA-F]{64,}")
_DETAILS_PATTERN = re.compile(r"Details:\s*(.+)")


def sanitize_error(e: BaseException) -> str:
    """
    Reduce an exception to a short reason string for the action log.

    Node errors can embed RPC URLs (with API keys), raw calldata and
    multi-line request dumps. Keep the first meaningful line only.
    """
    if isinstance(e, ChainWriteError):
        return e.reason[:TREASURY_LAWS.MAX_ERROR_REASON_CHARS]

    msg = str(e) or type(e).__name__
    details = _DETAILS_PATTERN.search(msg)
    if details:
        msg = details.group(1)
    msg = msg.strip().splitlines()[0] if msg.strip() else type(e).__name__
    msg = _URL_PATTERN.sub("[rpc]", msg)
    msg = _HEX_BLOB_PATTERN.sub("0x…", msg)
    return f"{type(e).__name__}: {msg}"[:TREASURY_LAWS.MAX_ERROR_REASON_CHARS]
