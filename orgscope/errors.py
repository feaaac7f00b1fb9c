from __future__ import annotations


class OrgScopeError(Exception):
    """Base class for errors raised by the visibility core."""


class StoreFailure(OrgScopeError):
    """
    A storage transaction failed.

    The transaction has been rolled back and no cache entry was touched.
    """


class CacheUnavailable(OrgScopeError):
    """Raised by a cache handle when its backend cannot be reached."""


class DescriptorConfigError(OrgScopeError, ValueError):
    """Raised when an entity descriptor registry is invalid."""


class TenantImmutableError(OrgScopeError):
    """Raised when a flush would change the tenant of an existing scoped row."""


class UnitMoveError(OrgScopeError, ValueError):
    """Raised when an org unit cannot be created or moved as requested."""
