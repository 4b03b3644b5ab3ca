"""Error taxonomy shared by every subsystem.

  - TransientError:     timeouts, rate limits, RPC hiccups; retried
  - DataInvalidError:   malformed chain/provider payloads; never retried,
                        never cached or persisted
  - ConfigurationError: missing endpoint, bad rule parameters; surfaced
  - ExhaustedError:     every tier failed; callers degrade gracefully
"""

from __future__ import annotations


class WalletRiskError(Exception):
    """Base class for all walletrisk errors."""


class TransientError(WalletRiskError):
    """Temporary failure; safe to retry with backoff."""


class DataInvalidError(WalletRiskError):
    """A response or record failed validation."""


class DuplicateRecordError(DataInvalidError):
    """A write would violate a uniqueness constraint."""


class ConfigurationError(WalletRiskError):
    """Missing or invalid configuration; retrying will not help."""


class ExhaustedError(WalletRiskError):
    """No source could satisfy the request."""


class PriceUnavailableError(ExhaustedError):
    def __init__(self, symbol: str):
        super().__init__(f"no price obtainable for {symbol}")
        self.symbol = symbol


class RoleUnavailableError(ExhaustedError):
    def __init__(self, wallet_id: str, cause: Exception | None = None):
        msg = f"role lookup failed for wallet {wallet_id} and no cached role exists"
        if cause is not None:
            msg = f"{msg}: {cause}"
        super().__init__(msg)
        self.wallet_id = wallet_id


class NotFoundError(WalletRiskError):
    """Referenced record does not exist."""
