"""
Typed errors for the projection engine.

The taxonomy separates what the caller must fix from what the engine
recovers locally:
- ConfigurationError: malformed or out-of-range calibration/cap input,
  raised before any computation starts
- InvariantViolationError: an absolute rail was breached
- ProjectionInputError: non-finite or impossible numeric input to a projection
- NumericalDegeneracyError: a non-finite intermediate value appeared
- EmptyCandidateSetError: the optimizer was handed nothing to rank

Feasibility degradations are not errors; they are carried in the result.
"""

from typing import List, Optional


class ProjectionEngineError(Exception):
    """Base class for every error raised by the engine."""


class ConfigurationError(ProjectionEngineError, ValueError):
    """Raised when calibration, caps or solve overrides are invalid."""


class ProjectionInputError(ProjectionEngineError, ValueError):
    """Raised when a projection is asked to propagate NaN/Inf or a negative horizon."""


class NumericalDegeneracyError(ProjectionEngineError, ArithmeticError):
    """Raised when a transition produces a non-finite intermediate value."""


class EmptyCandidateSetError(ProjectionEngineError, RuntimeError):
    """Raised when an optimizer step has no candidate left to rank."""


class InvariantViolationError(ProjectionEngineError, RuntimeError):
    """Raised when a trajectory breaches an absolute engine rail.

    Attributes:
        code: Error code (e.g., "NEGATIVE_CTL", "TSS_RAMP_RAIL", "NON_FINITE_STATE")
        details: List of error detail strings
        violations: Structured violations, when available
    """

    def __init__(self, code: str, details: List[str], violations: Optional[list] = None):
        self.code = code
        self.details = details
        self.violations = violations or []
        super().__init__(f"{code}: {details}")
