"""
Retry state machine: maps a resource's counter and a fetch outcome to the
next cache status. No I/O happens here.
"""

from __future__ import annotations

from typing import NamedTuple, Optional

from .models import CacheLabel, FetchOutcome, FetchSuccess, RemoteFailure


class Transition(NamedTuple):
    label: CacheLabel
    times_tried: int
    http_code: Optional[int] = None


class RetryStateMachine:
    """Decides status transitions for the fetch pipeline.

    ``times_tried`` counts remote fetch attempts only. A resource turns
    DEAD as soon as the counter about to be recorded reaches
    ``max_retries``.
    """

    def __init__(self, max_retries: int) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.max_retries = max_retries

    def claim(self, times_tried: int) -> Transition:
        """PENDING with the counter left untouched."""
        return Transition(CacheLabel.PENDING, times_tried)

    def after_fetch(self, times_tried: int, outcome: FetchOutcome) -> Transition:
        tried = times_tried + 1
        if isinstance(outcome, FetchSuccess):
            return Transition(CacheLabel.CACHED, tried, outcome.http_code)

        http_code = outcome.http_code if isinstance(outcome, RemoteFailure) else None
        if tried >= self.max_retries:
            return Transition(CacheLabel.DEAD, tried, http_code)
        return Transition(CacheLabel.FAILED, tried, http_code)

    def after_persist_failure(self, times_tried: int) -> Transition:
        """The remote side behaved; local bookkeeping did not. No increment."""
        return Transition(CacheLabel.FAILED, times_tried)
