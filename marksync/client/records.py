from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from dateutil import parser as dt_parser


def _parse_time(value) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = dt_parser.isoparse(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Bookmark:
    id: int
    user_id: int
    title: str
    url: str
    created_at: datetime

    @classmethod
    def from_dict(cls, data: dict) -> Bookmark:
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            title=data["title"],
            url=data["url"],
            created_at=_parse_time(data["created_at"]),
        )

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "url": self.url,
            "created_at": self.created_at.isoformat(),
        }
