# hedgearb/errors.py
from typing import Any, Dict


class HedgeArbError(Exception):
    """
    Base error carrying a machine-readable reason code plus the numeric
    context (spread, balance shortfall, leg) needed to act on it without
    cross-referencing logs.
    """
    default_code = "ERROR"

    def __init__(self, message: str, code: str = None, **context: Any):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"error": type(self).__name__, "code": self.code, "message": self.message, **self.context}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ValidationError(HedgeArbError):
    """Opportunity or position data is missing or malformed."""
    default_code = "INVALID_OPPORTUNITY"


class RiskRejected(HedgeArbError):
    """A named preflight rule failed."""
    default_code = "RISK_REJECTED"


class VenueTimeout(HedgeArbError):
    default_code = "VENUE_TIMEOUT"


class VenueError(HedgeArbError):
    default_code = "VENUE_ERROR"


class PartialFillError(HedgeArbError):
    """
    One leg filled, the other did not. Always escalated for manual
    intervention and never retried automatically.
    """
    default_code = "PARTIAL_FILL"


# Errors that count against the consecutive failure ceiling.
EXECUTION_FAILURES = (VenueTimeout, VenueError, PartialFillError)
