import re
import secrets
from dataclasses import dataclass
from enum import Enum

_GUEST_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")


class IdentityKind(str, Enum):
    GUEST = "guest"
    USER = "user"


@dataclass(frozen=True)
class Identity:
    kind: IdentityKind
    value: str

    @classmethod
    def guest(cls, guest_id: str) -> "Identity":
        if not is_valid_guest_id(guest_id):
            raise ValueError("guest id must be 32 lowercase hex characters")
        return cls(IdentityKind.GUEST, guest_id)

    @classmethod
    def user(cls, user_id: str) -> "Identity":
        if not user_id or not user_id.strip():
            raise ValueError("user id must not be empty")
        return cls(IdentityKind.USER, user_id.strip())

    @property
    def is_authenticated(self) -> bool:
        return self.kind is IdentityKind.USER

    @property
    def key(self) -> tuple[str, str]:
        return self.kind.value, self.value


def new_guest_id() -> str:
    return secrets.token_hex(16)


def is_valid_guest_id(value: str | None) -> bool:
    return isinstance(value, str) and bool(_GUEST_ID_PATTERN.match(value))
