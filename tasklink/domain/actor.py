"""Acting-user context passed into every core operation."""

from dataclasses import dataclass

from tasklink.domain.profile import UserRole


@dataclass(frozen=True)
class ActorContext:
    """Who is performing an operation."""

    user_id: str
    role: UserRole

    @property
    def is_client(self) -> bool:
        return self.role == UserRole.CLIENT

    @property
    def is_provider(self) -> bool:
        return self.role == UserRole.PROVIDER
