"""
Error taxonomy for ccost.

Fatal conditions abort a run with a specific ``kind`` so callers can report
them distinctly from an empty ("no data") result. Recoverable problems such as
malformed lines never raise; they are counted in statistics instead.
"""


class CcostError(Exception):
    """Base class for all errors raised by ccost."""
    kind = "general"


class ConfigError(CcostError, ValueError):
    """Raised when configuration is missing, malformed, or invalid."""
    kind = "config"


class InputNotFoundError(CcostError):
    """Raised when an input path does not exist or cannot be read."""
    kind = "io"


class NoUsableRecordsError(CcostError):
    """Raised when input lines were present but none could be parsed."""
    kind = "input"

    def __init__(self, total_lines: int, malformed: int):
        super().__init__(
            f"No usable records: all {malformed} of {total_lines} input lines were malformed"
        )
        self.total_lines = total_lines
        self.malformed = malformed


class LedgerWriteError(CcostError):
    """Raised when a canonical key cannot be persisted to the dedup ledger."""
    kind = "ledger"

    def __init__(self, key: str, cause: Exception):
        super().__init__(f"Failed to persist dedup ledger key {key!r}: {cause}")
        self.key = key
        self.cause = cause


class PricingUnavailableError(CcostError):
    """Raised in calculate mode when a model has no rate and no default tier exists."""
    kind = "pricing"

    def __init__(self, model: str):
        super().__init__(f"No pricing for model {model!r} and no default tier configured")
        self.model = model


class RateSourceError(CcostError):
    """Base class for exchange-rate source failures."""
    kind = "exchange_rate"


class RateNetworkError(RateSourceError):
    """The rate source could not be reached or returned an error status."""


class RateParseError(RateSourceError):
    """The rate source responded but the payload could not be interpreted."""


class RateUnavailableError(RateSourceError):
    """No rate could be obtained and no cached value exists to fall back on."""

    def __init__(self, base: str, target: str, cause: Exception = None):
        message = f"Exchange rate {base}->{target} unavailable"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)
        self.base = base
        self.target = target
        self.cause = cause
