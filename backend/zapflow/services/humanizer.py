"""
ZapFlow - Response Humanizer

Human-like timing for AI replies:
  - a response delay drawn uniformly between the agent's min and max
    (latency before the "person" starts typing), and
  - a typing duration derived from the reply length, shown to the contact
    as a "composing" presence while we wait.
"""

from __future__ import annotations

import random
from typing import Optional

from zapflow.config import get_settings


def count_words(text: str) -> int:
    return len(text.split())


def compute_typing_duration_ms(
    text: str,
    words_per_minute: Optional[int] = None,
    min_ms: Optional[int] = None,
    max_ms: Optional[int] = None,
) -> int:
    """
    Estimate how long a person would take to type *text*.

    Word count at a fixed typing rate, clamped to ``[min_ms, max_ms]`` so a
    one-word answer still shows the typing indicator and an essay does not
    stall the worker.
    """
    settings = get_settings()
    wpm = words_per_minute or settings.typing_words_per_minute
    lower = settings.typing_min_ms if min_ms is None else min_ms
    upper = settings.typing_max_ms if max_ms is None else max_ms

    minutes = count_words(text) / wpm
    milliseconds = min(minutes * 60 * 1000, upper)
    return int(max(milliseconds, lower))


def draw_response_delay_ms(
    min_seconds: Optional[float] = None,
    max_seconds: Optional[float] = None,
    rng: Optional[random.Random] = None,
) -> int:
    """Uniform integer delay in ``[min_seconds, max_seconds]``, in milliseconds."""
    settings = get_settings()
    low = settings.response_delay_min_seconds if min_seconds is None else min_seconds
    high = settings.response_delay_max_seconds if max_seconds is None else max_seconds
    if low > high:
        low, high = high, low
    low_ms = int(max(low, 0) * 1000)
    high_ms = int(max(high, 0) * 1000)
    return (rng or random).randint(low_ms, high_ms)
