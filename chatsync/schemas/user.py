from chatsync.models import UserSummary

from .common import Identifier, WireModel


class UserPayload(WireModel):
    id: Identifier
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None

    def to_model(self) -> UserSummary:
        return UserSummary(
            id=self.id,
            first_name=self.first_name or "",
            last_name=self.last_name or "",
            email=self.email,
        )
