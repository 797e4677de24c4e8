"""Presentation timetable schemas.

The save request is validated and normalized here, at the gateway, so the
procedures only ever see well-typed nested items.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from server.schemas.base import CamelModel

HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class TimetableItem(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    duration: int = Field(ge=0)
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    content: Any = None


class TimetablePayload(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    title: Optional[str] = None
    items: list[TimetableItem]
    start_time: Optional[str] = None
    total_duration: Optional[int] = Field(default=None, ge=0)


class SaveRequest(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    canonical_key: str = Field(min_length=1, max_length=2048)
    title: str = Field(min_length=1, max_length=500)
    payload: TimetablePayload
    start_time: Optional[str] = Field(default=None, pattern=HHMM_PATTERN)
    total_duration: Optional[int] = Field(default=None, ge=0)

    @field_validator("title")
    @classmethod
    def strip_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("title must not be blank")
        return v

    def payload_dict(self) -> dict[str, Any]:
        """Payload as stored: camelCase keys, unknown keys preserved, omitted optionals dropped, explicit nulls kept."""
        return self.payload.model_dump(by_alias=True, exclude_unset=True)


class PresentationResponse(CamelModel):
    id: str
    canonical_key: str
    title: str
    payload: dict[str, Any]
    start_time: str
    total_duration: int
    item_count: int
    created_at: datetime
    last_modified: datetime

