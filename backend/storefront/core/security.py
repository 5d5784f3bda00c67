"""
Acting identity.

Authentication happens upstream; the identity collaborator forwards the
authenticated owner and role as request headers.
"""

from dataclasses import dataclass
from enum import Enum as PyEnum

from fastapi import Header, HTTPException


class Role(str, PyEnum):
    """Actor role."""

    STANDARD = "standard"
    PRIVILEGED = "privileged"


@dataclass(frozen=True)
class Actor:
    """Authenticated owner identity plus role, attached to every call."""

    owner_id: str
    role: Role = Role.STANDARD

    @property
    def is_privileged(self) -> bool:
        return self.role is Role.PRIVILEGED

    def can_access(self, owner_id: str) -> bool:
        """Owners see their own records, privileged actors see everything."""
        return self.is_privileged or self.owner_id == owner_id


async def get_current_actor(
    x_user_id: str | None = Header(None),
    x_user_role: str = Header(Role.STANDARD.value),
) -> Actor:
    """Build the acting identity from forwarded headers."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing authenticated identity")

    try:
        role = Role(x_user_role.strip().lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown role: {x_user_role}")

    return Actor(owner_id=x_user_id, role=role)
