from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from checkout_portal.models.user import User


@dataclass(frozen=True, slots=True)
class Identity:
    """Authenticated caller, passed explicitly into every core operation."""

    user_id: str
    email: str
    full_name: str = ""
    is_operator: bool = False

    @classmethod
    def from_user(cls, user: "User") -> "Identity":
        return cls(user_id=user.id, email=user.email, full_name=user.full_name, is_operator=user.is_operator)


SYSTEM_ACTOR = "system"
