"""Presentation timetable model."""

from datetime import datetime

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class Presentation(SQLModel, table=True):
    __tablename__ = "presentations"
    __table_args__ = (
        UniqueConstraint("owner_user_id", "canonical_key", name="uq_presentations_owner_key"),
    )

    id: str = Field(primary_key=True)  # set explicitly by the upsert procedure
    owner_user_id: str = Field(foreign_key="users.id", index=True)
    canonical_key: str
    title: str
    payload: str = "{}"  # JSON timetable
    start_time: str = Field(default="09:00")
    total_duration: int = Field(default=0)
    created_at: datetime
    last_modified: datetime = Field(index=True)
