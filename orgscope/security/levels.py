from __future__ import annotations

from enum import IntEnum


class VisibilityTier(IntEnum):
    """Coarse row visibility carried by a role. Higher value sees more."""

    SELF = 1
    UNIT = 2
    UNIT_SUBTREE = 3
    ALL = 4


class GrantScope(IntEnum):
    """Level of an ad hoc grant. Higher value implies the lower ones."""

    VIEW = 1
    EDIT = 2
    OWNER = 3
