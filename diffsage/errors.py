"""
Error taxonomy for the analysis engine.

Only AggregationFailure escapes to callers of the public entry points; the
other errors are recovered at stage boundaries and surface as markers on
the result.
"""


class DiffsageError(Exception):
    """Base class for engine errors."""


class ParseDefect(DiffsageError, ValueError):
    """Model output could not be parsed into the stage's schema."""

    def __init__(self, stage: str, message: str, raw: str = ""):
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.raw = raw


class CapabilityUnavailable(DiffsageError, RuntimeError):
    """A model backend failed, timed out or is not configured."""

    def __init__(self, backend: str, message: str):
        super().__init__(f"{backend}: {message}")
        self.backend = backend
        self.reason = message


class BudgetExceeded(DiffsageError):
    """Token or cost ceiling reached; the run stops launching work."""

    def __init__(self, tokens: int, cost: float):
        super().__init__(f"budget exhausted after {tokens} tokens (${cost:.4f})")
        self.tokens = tokens
        self.cost = cost


class AggregationFailure(DiffsageError, RuntimeError):
    """No consensus backend produced a usable result."""

    def __init__(self, failures: dict[str, str]):
        detail = "; ".join(f"{k}: {v}" for k, v in failures.items()) or "no backends ran"
        super().__init__(f"All consensus backends failed ({detail})")
        self.failures = dict(failures)
