from datetime import datetime
from typing import Iterable

from pydantic import BaseModel

MUTABLE_FIELDS = ("display_name", "is_group", "participants", "last_message_preview")


class ParticipantRef(BaseModel):
    user_id: str
    display_name: str
    first_name: str | None = None


class Conversation(BaseModel):
    id: str
    display_name: str | None = None  # Explicit name; derived from participants otherwise
    is_group: bool = False
    participants: list[ParticipantRef] = []
    last_message_preview: str | None = None  # Server summary, used until the log is loaded
    updated_at: datetime

    def has_participant(self, user_id: str) -> bool:
        return any(p.user_id == user_id for p in self.participants)

    def update_from(self, other: "Conversation", fields: Iterable[str] | None = None) -> bool:
        """Copies mutable fields of `other` onto this instance in place.

        Only `fields` are copied when given. `updated_at` only moves forward
        and identity (`id`) is never touched. Returns True if anything changed.
        """
        changed = False
        for field in MUTABLE_FIELDS if fields is None else fields:
            if field not in MUTABLE_FIELDS:
                continue
            value = getattr(other, field)
            if getattr(self, field) != value:
                setattr(self, field, value)
                changed = True
        if other.updated_at > self.updated_at:
            self.updated_at = other.updated_at
            changed = True
        return changed
