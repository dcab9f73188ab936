"""Selection and merging of overlapping segment submissions."""

from __future__ import annotations

import json
import math
from collections.abc import Iterable, Sequence

from .models import Segment, Sponsor, SponsorTime

DEFAULT_CATEGORIES = '["sponsor"]'


def parse_categories(raw: str | None) -> list[str]:
    """Parse a JSON array of category names; ``None`` means ``["sponsor"]``."""
    text = DEFAULT_CATEGORIES if raw is None else raw
    try:
        value = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"categories is not valid JSON: {exc}") from exc
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError("categories must be a JSON array of strings")
    return value


def build_segment(row: SponsorTime) -> Segment:
    """Turn a database row into an API segment."""
    return Segment(
        uuid=row.uuid,
        action_type=row.action_type,
        category=row.category,
        description=row.description,
        locked=row.locked,
        segment=(row.start_time, row.end_time),
        user_id=row.user_id,
        video_duration=row.video_duration,
        votes=row.votes,
    )


def _ratio(overlap: float, duration: float) -> float:
    if duration == 0:
        if overlap == 0 or math.isnan(overlap):
            return math.nan
        return math.copysign(math.inf, overlap)
    return overlap / duration


def is_overlap(
    segment: Segment, category: str, action_type: str, start: float, end: float
) -> bool:
    """Whether ``segment`` and the span ``start``-``end`` describe the same thing."""
    if segment.category != category:
        return False

    if segment.start > start and segment.end < end:
        return True

    overlap = min(segment.end, end) - max(segment.start, start)
    duration = max(segment.end, end) - min(segment.start, start)

    if category == "chapter":
        threshold = 0.8
    elif segment.action_type == action_type:
        threshold = 0.6
    else:
        threshold = 0.1
    return _ratio(overlap, duration) > threshold


def similar_segments(
    segment: Segment, video_hash: str, rows: Iterable[SponsorTime]
) -> list[Segment]:
    """Segments from other rows of the same video that overlap ``segment``."""
    return [
        build_segment(row)
        for row in rows
        if row.uuid != segment.uuid
        and row.hashed_video_id == video_hash
        and is_overlap(segment, row.category, row.action_type, row.start_time, row.end_time)
    ]


def best_segment(segments: Sequence[Segment]) -> Segment:
    """The segment with the most votes; the earliest wins a tie."""
    if not segments:
        raise ValueError("best_segment() needs at least one segment")
    best = segments[0]
    for candidate in segments:
        if candidate.votes > best.votes:
            best = candidate
    return best


def group_sponsors(rows: Sequence[SponsorTime]) -> list[Sponsor]:
    """Group rows by hashed video ID, keeping the best of each overlapping cluster."""
    sponsors: dict[str, Sponsor] = {}

    for row in rows:
        sponsor = sponsors.setdefault(
            row.hashed_video_id,
            Sponsor(hash=row.hashed_video_id, video_id=row.video_id),
        )
        segment = build_segment(row)

        if any(
            is_overlap(segment, kept.category, kept.action_type, kept.start, kept.end)
            for kept in sponsor.segments
        ):
            continue

        candidates = similar_segments(segment, row.hashed_video_id, rows)
        candidates.append(segment)
        chosen = best_segment(candidates)

        if chosen not in sponsor.segments:
            sponsor.segments.append(chosen)

    for sponsor in sponsors.values():
        sponsor.segments.sort(key=lambda seg: seg.start)

    return list(sponsors.values())