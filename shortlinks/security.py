"""Password hashing and ownership checks.

Authentication itself happens upstream; this service only receives the
caller's identity as a typed ``Principal`` and decides whether that
principal may manage or inspect a given link.
"""

from dataclasses import dataclass

import bcrypt

from shortlinks.enums import Role
from shortlinks.exceptions import ForbiddenError

__all__ = [
    "Principal",
    "ANONYMOUS",
    "hash_password",
    "verify_password",
    "principal_from_headers",
    "ensure_can_manage",
]


@dataclass(frozen=True)
class Principal:
    id: str | None
    role: Role = Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    @property
    def is_anonymous(self) -> bool:
        return self.id is None


ANONYMOUS = Principal(id=None)


def hash_password(password: str, rounds: int = 10) -> str:
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds))
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Constant-time bcrypt comparison; a corrupt hash never matches."""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def principal_from_headers(user_id: str | None, role: str | None) -> Principal:
    if not user_id:
        return ANONYMOUS
    return Principal(id=user_id, role=Role.from_str(role or Role.USER))


def ensure_can_manage(principal: Principal, owner_id: str | None, short_code: str | None = None) -> None:
    """Admins manage everything, owners manage their links, ownerless links are open."""
    if principal.is_admin or owner_id is None:
        return
    if principal.id is not None and principal.id == owner_id:
        return
    raise ForbiddenError("Not allowed to access this link", short_code=short_code)
