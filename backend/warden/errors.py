"""Error taxonomy shared by the facility managers."""

from __future__ import annotations

# purpose: give callers one precise error kind per rejected operation
# status: active


class FacilityError(RuntimeError):
    """Base error for every engine operation."""

    kind = "FacilityError"


class ValidationError(FacilityError):
    """Raised when an identifier or value object is malformed."""

    kind = "ValidationError"


class NotFound(FacilityError):
    """Raised when a referenced entity is absent from the store."""

    kind = "NotFound"


class ResourceBusy(FacilityError):
    """Raised when a resource lock cannot be acquired in time."""

    kind = "ResourceBusy"
