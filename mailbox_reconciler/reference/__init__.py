"""Reference data package — bulk-loaded lookup tables for a run."""

from .cache import FetchError, PermissionGroup, ReferenceData, ReferenceDataLoader

__all__ = ["FetchError", "PermissionGroup", "ReferenceData", "ReferenceDataLoader"]
