"""Read-only user profile lookup for partner summaries and contact details."""
from dataclasses import dataclass
from typing import Any, Protocol

from carpool.models.user import User

DEFAULT_NAME = "User"


@dataclass(frozen=True)
class UserProfile:
    id: int
    name: str = DEFAULT_NAME
    email: str | None = None
    phone: str | None = None

    def contact(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "contactInfo": {"phone": self.phone, "email": self.email},
        }


class UserDirectory(Protocol):
    async def get_profile(self, user_id: int) -> UserProfile: ...


class MemoryUserDirectory:
    def __init__(self, profiles: dict[int, UserProfile] | None = None) -> None:
        self._profiles = dict(profiles or {})

    def add(self, profile: UserProfile) -> None:
        self._profiles[profile.id] = profile

    async def get_profile(self, user_id: int) -> UserProfile:
        return self._profiles.get(int(user_id)) or UserProfile(id=int(user_id))


class SqlUserDirectory:
    def __init__(self, session_factory: Any) -> None:
        self.session_factory = session_factory

    async def get_profile(self, user_id: int) -> UserProfile:
        async with self.session_factory() as db:
            user = await db.get(User, int(user_id))
        if user is None:
            return UserProfile(id=int(user_id))
        return UserProfile(
            id=user.id,
            name=(user.name or "").strip() or DEFAULT_NAME,
            email=user.email,
            phone=user.phone,
        )
