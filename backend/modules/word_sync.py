from __future__ import annotations

import math
from bisect import bisect_right
from typing import Any, Iterable, Sequence

from modules.tts_types import WordTiming

SYNC_START_EPSILON_SEC = 0.02
SYNC_END_EPSILON_SEC = 0.04


def find_word_index_at_time(
    timings: Sequence[WordTiming] | None,
    time: float,
    *,
    start_eps: float = SYNC_START_EPSILON_SEC,
    end_eps: float = SYNC_END_EPSILON_SEC,
) -> int | None:
    """Return the index of the word spoken at ``time``, or None in a gap.

    ``timings`` must be ascending by start. Runs in O(log n).
    """
    if not timings or time is None or not math.isfinite(time):
        return None
    t = max(0.0, float(time))

    idx = bisect_right(timings, t + start_eps, key=lambda w: w.start) - 1
    if idx < 0:
        return None

    current = timings[idx]
    if not math.isfinite(current.start):
        return None
    if math.isfinite(current.end):
        end = current.end
    elif idx + 1 < len(timings):
        end = timings[idx + 1].start
    else:
        end = math.inf

    if t < current.start - start_eps:
        return None
    if t <= end + end_eps:
        return idx
    return None


def _coerce(item: Any) -> WordTiming | None:
    if isinstance(item, WordTiming):
        start, end = item.start, item.end
    elif isinstance(item, dict):
        start, end = item.get("start"), item.get("end")
    elif isinstance(item, (list, tuple)) and len(item) == 2:
        start, end = item
    else:
        return None
    if isinstance(start, bool) or isinstance(end, bool):
        return None
    if not isinstance(start, (int, float)) or not isinstance(end, (int, float)):
        return None
    if not math.isfinite(start) or not math.isfinite(end) or end < start:
        return None
    return WordTiming(start=float(start), end=float(end))


def normalize_word_timings(value: Iterable[Any] | None) -> tuple[WordTiming, ...] | None:
    if not value or isinstance(value, (str, bytes, dict)):
        return None
    cleaned = [t for t in (_coerce(item) for item in value) if t is not None]
    if not cleaned:
        return None
    cleaned.sort(key=lambda w: w.start)
    return tuple(cleaned)


def timings_to_dicts(timings: Sequence[WordTiming] | None) -> list[dict[str, float]]:
    return [{"start": t.start, "end": t.end} for t in timings or ()]
