from __future__ import annotations
import logging
from collections import deque
from typing import Callable, List, Optional
from esadapter.models import FailureReport
from esadapter.stats import AdapterStats

logger = logging.getLogger(__name__)


class FailureChannel:
    """Operator-facing record of data-loss events.

    Every report is logged, counted under samples_dropped{reason=kind}, kept in
    a bounded list of recent failures and passed to the optional callback.
    """

    def __init__(self, stats: AdapterStats, keep: int = 100,
                 callback: Optional[Callable[[FailureReport], None]] = None):
        self.stats = stats
        self._recent: deque = deque(maxlen=keep)
        self._callback = callback
        self.total_samples = 0

    def report(self, kind: str, samples: int, reason: str) -> FailureReport:
        rep = FailureReport(kind=kind, samples=samples, reason=reason)
        logger.error("data loss: %s samples dropped (%s): %s", samples, kind, reason)
        self.stats.samples_dropped.labels(reason=kind).inc(samples)
        self.total_samples += samples
        self._recent.append(rep)
        if self._callback is not None:
            self._callback(rep)
        return rep

    def recent(self) -> List[FailureReport]:
        return list(self._recent)
