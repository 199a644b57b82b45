"""
Exception hierarchy for ccmatch.

Every error raised on purpose by the package derives from CCMatchError, and
also from the builtin exception a caller would naturally catch for that kind
of failure (ValueError for bad configuration, RuntimeError for bad data or a
failing collaborator, TypeError for calling a statistic against the wrong
kind of variable).
"""

from typing import Optional


class CCMatchError(Exception):
    """Base class for all ccmatch errors."""


class ConfigurationError(CCMatchError, ValueError):
    """Invalid factor loading, keyword value, parameter count or output target."""


class DataIntegrityError(CCMatchError, RuntimeError):
    """Input data violates an invariant (duplicate id, missing column, ...)."""


class OrphanedControlError(DataIntegrityError):
    """A control's paired case has no recorded row."""

    def __init__(self, control_id: str, case_id: str):
        self.control_id = control_id
        self.case_id = case_id
        super().__init__(
            f"No data was recorded for case {case_id!r}, "
            f"which is the paired case of control {control_id!r}"
        )


class CollaboratorFailure(CCMatchError, RuntimeError):
    """A nearest-neighbor, optimizer or regression call failed."""

    def __init__(self, message: str, phase: str, stratum: Optional[str] = None):
        self.phase = phase
        self.stratum = stratum
        context = f"[{phase}]" if stratum is None else f"[{phase}, stratum {stratum!r}]"
        super().__init__(f"{context} {message}")


class TypeMisuseError(CCMatchError, TypeError):
    """A binary-only or continuous-only operation was used on the wrong variable."""
