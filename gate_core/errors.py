"""
Error taxonomy for the light gate core.

Faults never terminate a node: they are raised at component boundaries and
mapped by the state machines to a Fault state with bounded recovery.
"""

from typing import Optional


class GateError(Exception):
    """Base class for all light gate errors."""


class CalibrationError(GateError):
    """Too few valid readings to establish a reference distance."""

    def __init__(self, valid_samples: int, required_samples: int, sample_count: int):
        self.valid_samples = valid_samples
        self.required_samples = required_samples
        self.sample_count = sample_count
        super().__init__(
            f"Calibration failed: {valid_samples}/{sample_count} valid samples "
            f"(need {required_samples})"
        )


class ProtocolError(GateError):
    """Malformed or unexpected protocol line."""

    def __init__(self, raw: str, reason: str):
        self.raw = raw
        self.reason = reason
        super().__init__(f"Protocol error ({reason}): {raw!r}")


class LinkError(GateError):
    """Transport could not be opened or failed mid-operation."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)
