"""Database rows and API response objects."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class SponsorTime:
    """One row of the ``sponsorTimes`` table."""

    video_id: str
    start_time: float
    end_time: float
    votes: int
    locked: int
    incorrect_votes: int
    uuid: str
    user_id: str
    time_submitted: int
    views: int
    category: str
    action_type: str
    service: str
    video_duration: float
    hidden: int
    reputation: float
    shadow_hidden: int
    hashed_video_id: str
    user_agent: str
    description: str

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> SponsorTime:
        """Build a row from a mapping keyed by the table's column names."""
        return cls(
            video_id=str(row["videoID"]),
            start_time=float(row["startTime"]),
            end_time=float(row["endTime"]),
            votes=int(row["votes"]),
            locked=int(row["locked"]),
            incorrect_votes=int(row["incorrectVotes"]),
            uuid=str(row["UUID"]),
            user_id=str(row["userID"]),
            time_submitted=int(row["timeSubmitted"]),
            views=int(row["views"]),
            category=str(row["category"]),
            action_type=str(row["actionType"]),
            service=str(row["service"]),
            video_duration=float(row["videoDuration"]),
            hidden=int(row["hidden"]),
            reputation=float(row["reputation"]),
            shadow_hidden=int(row["shadowHidden"]),
            hashed_video_id=str(row["hashedVideoID"]),
            user_agent=str(row["userAgent"]),
            description=str(row["description"]),
        )


@dataclass(eq=False)
class Segment:
    """A skippable segment as returned by the API.

    Segments are equal when their UUIDs are equal and order by start time.
    """

    uuid: str
    action_type: str
    category: str
    description: str
    locked: int
    segment: tuple[float, float]
    user_id: str
    video_duration: float
    votes: int

    @property
    def start(self) -> float:
        return self.segment[0]

    @property
    def end(self) -> float:
        return self.segment[1]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Segment):
            return NotImplemented
        return self.uuid == other.uuid

    def __hash__(self) -> int:
        return hash(self.uuid)

    def __lt__(self, other: Segment) -> bool:
        if not isinstance(other, Segment):
            return NotImplemented
        return self.start < other.start

    def to_dict(self) -> dict[str, Any]:
        return {
            "UUID": self.uuid,
            "actionType": self.action_type,
            "category": self.category,
            "description": self.description,
            "locked": self.locked,
            "segment": list(self.segment),
            "userID": self.user_id,
            "videoDuration": self.video_duration,
            "votes": self.votes,
        }


@dataclass
class Sponsor:
    """All segments for one hashed video ID."""

    hash: str
    video_id: str
    segments: list[Segment] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "hash": self.hash,
            "videoID": self.video_id,
            "segments": [segment.to_dict() for segment in self.segments],
        }


@dataclass(frozen=True)
class HealthCheck:
    """Result of probing one dependency."""

    status: str
    message: str | None = None
    response_time_ms: int | None = None

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "response_time_ms": self.response_time_ms,
        }


@dataclass(frozen=True)
class HealthResponse:
    """Overall health report of the service."""

    status: str
    timestamp: str
    database: HealthCheck

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "timestamp": self.timestamp,
            "checks": {"database": self.database.to_dict()},
        }