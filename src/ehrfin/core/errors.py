"""Exception and warning types raised by EHRFin engines."""

from typing import Any, Optional


class EHRFinError(Exception):
    """Base class for all EHRFin errors."""


class ConfigurationError(EHRFinError):
    """Invalid rollup, view or engine configuration."""


class UnknownRollup(ConfigurationError):
    """A rollup name that was never defined."""

    def __init__(self, name: str):
        super().__init__(f"Unknown rollup: {name}")
        self.name = name


class UnknownView(ConfigurationError):
    """A view name that was never defined."""

    def __init__(self, name: str):
        super().__init__(f"Unknown view: {name}")
        self.name = name


class ValidationError(EHRFinError):
    """A row failed a required-field or value check."""

    def __init__(self, reason: str, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.reason = reason
        self.field = field


class StorageUnavailable(EHRFinError):
    """The record store could not complete an operation."""


class InconsistentRollupState(EHRFinError):
    """A delta would drive a rollup aggregate below zero members."""


class TraversalLimitExceeded(EHRFinError):
    """History expansion grew past the configured ceiling."""

    def __init__(self, patient_id: Any, limit_name: str, limit: int):
        super().__init__(
            f"Traversal from patient {patient_id} exceeded {limit_name}={limit}"
        )
        self.patient_id = patient_id
        self.limit_name = limit_name
        self.limit = limit


class CycleDetected(UserWarning):
    """A patient link led back to a patient already expanded."""

    def __init__(self, root_id: Any, patient_id: Any, via: Any):
        super().__init__(
            f"Cycle in history of patient {root_id}: "
            f"{via} links back to already expanded patient {patient_id}"
        )
        self.root_id = root_id
        self.patient_id = patient_id
        self.via = via
