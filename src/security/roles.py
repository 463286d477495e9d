from enum import Enum
from typing import Optional


class Role(str, Enum):
    """Project roles, totally ordered by :attr:`rank`."""

    ADMIN = "admin"
    EDITOR = "editor"
    VIEWER = "viewer"

    @property
    def rank(self) -> int:
        """Return the numeric rank (admin 3 > editor 2 > viewer 1)."""
        return _RANKS[self]

    def satisfies(self, minimum: "Role") -> bool:
        """Return True when this role is at least ``minimum``."""
        return self.rank >= minimum.rank


_RANKS = {Role.ADMIN: 3, Role.EDITOR: 2, Role.VIEWER: 1}


def parse_role(value: Optional[str]) -> Optional[Role]:
    """Parse a role name case-insensitively; None when unknown."""
    if not value:
        return None
    try:
        return Role(value.strip().lower())
    except ValueError:
        return None
