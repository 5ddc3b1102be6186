from dataclasses import dataclass

from homeservice.models.user import ROLE_ADMIN, ROLE_CLIENT, ROLE_PROVIDER

# Payment confirmations and scheduled callbacks act as the system.
ROLE_SYSTEM = "system"

ROLES = (ROLE_CLIENT, ROLE_PROVIDER, ROLE_ADMIN, ROLE_SYSTEM)


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: str

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"unknown role: {self.role}")


SYSTEM = Actor(user_id="system", role=ROLE_SYSTEM)
