"""
Recency-weighted session scores.

Scores are reported on a 0-10 scale. Older sessions stored 0-3 scores; those
are rescaled by 10/3. Sessions that carry an explicit score_scale skip the
range heuristic.
"""

import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional, Union


LEGACY_SCALE = "legacy_3"
TEN_SCALE = "ten"
LEGACY_MAX = 3.0
DEFAULT_HALF_LIFE_DAYS = 14.0
MIN_TOTAL_WEIGHT = 1e-9


@dataclass(frozen=True)
class ScoredSession:
    started_at: Union[datetime, str, None]
    average_score: Optional[float]
    score_scale: Optional[str] = None


def normalize_score(score: float, scale: Optional[str] = None) -> float:
    if score is None or not math.isfinite(score):
        return 0.0
    if scale == TEN_SCALE:
        return float(score)
    if scale == LEGACY_SCALE or score <= LEGACY_MAX:
        return (score / LEGACY_MAX) * 10
    return float(score)


def _timestamp(value) -> Optional[float]:
    """Epoch seconds for a datetime or ISO-8601 string; None when unparsable."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def weighted_average_score_by_recency(
    sessions: Iterable[ScoredSession],
    half_life_days: float = DEFAULT_HALF_LIFE_DAYS,
    now: Optional[Union[datetime, float]] = None,
) -> float:
    """
    Exponentially decayed mean of normalized session scores.

    Each session weighs 2 ** (-age / half_life). Sessions without a score or
    with an unparsable start time are left out of both sums. Returns 0 when no
    session contributes. Raises ValueError for a non-positive half-life.
    """
    if half_life_days <= 0:
        raise ValueError("half_life_days must be positive")
    if now is None:
        now_ts = time.time()
    elif isinstance(now, datetime):
        now_ts = _timestamp(now)
    else:
        now_ts = float(now)

    half_life_seconds = half_life_days * 24 * 60 * 60
    sum_w = 0.0
    sum_ws = 0.0

    for session in sessions:
        if session.average_score is None:
            continue
        started = _timestamp(session.started_at)
        if started is None:
            continue
        age_seconds = max(0.0, now_ts - started)
        weight = 2 ** (-age_seconds / half_life_seconds)
        sum_w += weight
        sum_ws += weight * normalize_score(session.average_score, session.score_scale)

    return sum_ws / sum_w if sum_w > MIN_TOTAL_WEIGHT else 0.0
