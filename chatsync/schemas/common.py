from datetime import datetime, timezone
from typing import Annotated

from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict
from pydantic.alias_generators import to_camel

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _ensure_utc(value: datetime) -> datetime:
    # Naive timestamps are taken as UTC so they compare with aware ones.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _as_str(value):
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


Identifier = Annotated[str, BeforeValidator(_as_str)]
Timestamp = Annotated[datetime, AfterValidator(_ensure_utc)]


class WireModel(BaseModel):
    """Base for payloads exchanged with the chat service (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)
