"""Queries against the mirrored ``sponsorTimes`` table."""

from __future__ import annotations

import time
from collections.abc import Sequence

from sqlalchemy import (
    BigInteger,
    Column,
    Float,
    Integer,
    MetaData,
    Select,
    Table,
    Text,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.types import TypeEngine

from .models import HealthCheck, Sponsor, SponsorTime
from .segments import group_sponsors

TABLE_NAME = "sponsorTimes"

COLUMNS: tuple[tuple[str, type[TypeEngine]], ...] = (
    ("videoID", Text),
    ("startTime", Float),
    ("endTime", Float),
    ("votes", Integer),
    ("locked", Integer),
    ("incorrectVotes", Integer),
    ("UUID", Text),
    ("userID", Text),
    ("timeSubmitted", BigInteger),
    ("views", Integer),
    ("category", Text),
    ("actionType", Text),
    ("service", Text),
    ("videoDuration", Float),
    ("hidden", Integer),
    ("reputation", Float),
    ("shadowHidden", Integer),
    ("hashedVideoID", Text),
    ("userAgent", Text),
    ("description", Text),
)

metadata = MetaData()

sponsor_times = Table(
    TABLE_NAME,
    metadata,
    *(Column(name, column_type(), nullable=False) for name, column_type in COLUMNS),
)


class SegmentStore:
    """Read access to the segment submissions held in the database."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_schema(self) -> None:
        """Create the ``sponsorTimes`` table if it does not exist yet."""
        metadata.create_all(self.engine, checkfirst=True)

    def find_by_hash_prefix(self, prefix: str, categories: Sequence[str]) -> list[Sponsor]:
        """Sponsors whose hashed video ID starts with ``prefix``."""
        if not categories:
            return []
        statement = self._visible(categories).where(
            sponsor_times.c.hashedVideoID.startswith(prefix, autoescape=True)
        )
        return self._fetch(statement)

    def find_by_video_id(self, video_id: str, categories: Sequence[str]) -> list[Sponsor]:
        """Sponsors for exactly ``video_id``; at most one is expected."""
        if not categories:
            return []
        statement = self._visible(categories).where(sponsor_times.c.videoID == video_id)
        return self._fetch(statement)

    def ping(self) -> HealthCheck:
        """Probe the database and report how it went."""
        start = time.perf_counter()
        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1")).one()
        except SQLAlchemyError as exc:
            return HealthCheck(
                status="unhealthy",
                message=f"Database connection failed: {exc}",
                response_time_ms=_elapsed_ms(start),
            )
        return HealthCheck(
            status="healthy",
            message="Database connection successful",
            response_time_ms=_elapsed_ms(start),
        )

    @staticmethod
    def _visible(categories: Sequence[str]) -> Select:
        table = sponsor_times
        return select(table).where(
            table.c.shadowHidden == 0,
            table.c.hidden == 0,
            table.c.votes >= 0,
            table.c.category.in_(list(categories)),
        )

    def _fetch(self, statement: Select) -> list[Sponsor]:
        with self.engine.connect() as connection:
            rows = [
                SponsorTime.from_mapping(mapping)
                for mapping in connection.execute(statement).mappings()
            ]
        return group_sponsors(rows)


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)