"""
Storage read tracking and N+1 detection.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Sequence


@dataclass
class ReadStat:
    label: str
    count: int = 0
    total_ms: float = 0.0
    fingerprints: set[str] = field(default_factory=set)
    samples: List[str] = field(default_factory=list)

    def record(self, fingerprint: str, elapsed_ms: float, *, sample_limit: int) -> None:
        self.count += 1
        self.total_ms += elapsed_ms
        if fingerprint and fingerprint not in self.fingerprints:
            self.fingerprints.add(fingerprint)
            if len(self.samples) < sample_limit:
                self.samples.append(fingerprint)

    @property
    def average_ms(self) -> float:
        if self.count == 0:
            return 0.0
        return self.total_ms / self.count


class PerformanceTracker:
    """
    Tracks storage reads and warns when one read shape repeats with many
    different parameters, the usual sign of lazy references loaded in a loop.
    """

    def __init__(
        self,
        logger: logging.Logger,
        *,
        n_plus_one_threshold: int = 5,
        sample_size: int = 5,
    ) -> None:
        self.logger = logger
        self.n_plus_one_threshold = n_plus_one_threshold
        self.sample_size = sample_size
        self.stats: dict[str, ReadStat] = {}
        self._reported: set[str] = set()

    def record(self, label: str, params: Sequence[object], elapsed_ms: float) -> None:
        fingerprint = self._fingerprint(params)
        stat = self.stats.setdefault(label, ReadStat(label=label))
        stat.record(fingerprint, elapsed_ms, sample_limit=self.sample_size)
        if self._should_report(stat):
            self._report(stat)

    def summary(self) -> List[dict[str, object]]:
        return [
            {
                "label": stat.label,
                "count": stat.count,
                "total_ms": stat.total_ms,
                "average_ms": stat.average_ms,
                "distinct_params": len(stat.fingerprints),
            }
            for stat in self.stats.values()
        ]

    def reset(self) -> None:
        self.stats.clear()
        self._reported.clear()

    def _should_report(self, stat: ReadStat) -> bool:
        if stat.count < self.n_plus_one_threshold:
            return False
        if len(stat.fingerprints) < 2:
            return False
        return stat.label not in self._reported

    def _report(self, stat: ReadStat) -> None:
        self._reported.add(stat.label)
        self.logger.warning(
            "Potential N+1 detected for '%s' (%s executions, %s distinct params)",
            stat.label,
            stat.count,
            len(stat.fingerprints),
            extra={"label": stat.label, "count": stat.count, "distinct_params": len(stat.fingerprints)},
        )

    @staticmethod
    def _fingerprint(params: Sequence[object]) -> str:
        if not params:
            return ""
        normalized = []
        for value in params:
            if isinstance(value, (list, tuple)):
                normalized.append(tuple(value))
            elif isinstance(value, dict):
                normalized.append(tuple(sorted(value.items())))
            else:
                normalized.append(value)
        return repr(tuple(normalized))
