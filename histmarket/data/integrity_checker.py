"""
Integrity Checker - Validates the raw series and its derived levels.

Detects:
- Misaligned keys
- Non-monotonic or duplicate keys
- Gaps inside the validity window
- Derived buckets that drifted from their source data

Read-only: never mutates the series or the caches.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..core.exceptions import IntegrityViolation
from .gap_filler import detect_gaps
from .interval_aggregator import IntervalAggregator

logger = logging.getLogger(__name__)


@dataclass
class IntegrityReport:
    """Outcome of an integrity check."""
    issues: List[str] = field(default_factory=list)
    gap_count: int = 0
    drifted_buckets: int = 0

    @property
    def ok(self) -> bool:
        return not self.issues

    def add(self, issue: str) -> None:
        self.issues.append(issue)


class IntegrityChecker:
    """Checks completeness and ordering invariants."""

    def __init__(self, aggregator: IntervalAggregator, validity_window: Optional[int] = None,
                 max_reported: int = 20):
        """
        Initialize integrity checker.

        Args:
            aggregator: Aggregator (and through it, the raw series) to check
            validity_window: Seconds before the last tick that must be
                gap-free; None checks the whole series
            max_reported: Maximum individual issues listed per category
        """
        self.aggregator = aggregator
        self.validity_window = validity_window
        self.max_reported = max_reported

    def check(self) -> IntegrityReport:
        report = IntegrityReport()
        self._check_keys(report)
        self._check_gaps(report)
        self._check_derived(report)

        if report.ok:
            logger.debug("Integrity check passed")
        else:
            logger.warning(
                "Integrity check failed: %d issues (%d gaps, %d drifted buckets)",
                len(report.issues), report.gap_count, report.drifted_buckets
            )
        return report

    def is_integrity_ok(self) -> bool:
        return self.check().ok

    def verify(self) -> IntegrityReport:
        """
        Check and raise if the dataset cannot be trusted.

        Raises:
            IntegrityViolation: If any issue was found
        """
        report = self.check()
        if not report.ok:
            raise IntegrityViolation(
                "Integrity is broken. Run refresh over the data file",
                report=report,
                issues=len(report.issues),
                gaps=report.gap_count
            )
        return report

    def _check_keys(self, report: IntegrityReport) -> None:
        raw = self.aggregator.raw
        keys = raw.keys()
        reported = 0

        if len(set(keys)) != len(keys):
            report.add("duplicate raw keys")

        previous = None
        for key, tick in raw.items():
            problem = None
            if key % raw.width != 0:
                problem = f"raw key {key} is not aligned to {raw.width}s"
            elif raw.align(tick.time) != key:
                problem = f"tick at {tick.time} stored under slot {key}"
            elif previous is not None and key <= previous:
                problem = f"raw key {key} does not follow {previous}"

            if problem:
                if reported < self.max_reported:
                    report.add(problem)
                reported += 1
            previous = key

    def _check_gaps(self, report: IntegrityReport) -> None:
        raw = self.aggregator.raw
        start = None
        if self.validity_window is not None and raw.last_time is not None:
            start = raw.last_time - self.validity_window

        gaps = detect_gaps(raw, start=start)
        report.gap_count = len(gaps)
        for gap in gaps[:self.max_reported]:
            report.add(f"gap of {gap.slots} slots in [{gap.start}, {gap.end})")

    def _check_derived(self, report: IntegrityReport) -> None:
        fresh = self.aggregator.recompute_all()
        cached = self.aggregator.cached()
        drifted = 0

        for idx in range(1, len(self.aggregator.levels)):
            name = self.aggregator.levels[idx].name
            expected, actual = fresh[idx], cached[idx]
            for start in sorted(set(expected) | set(actual)):
                if expected.get(start) == actual.get(start):
                    continue
                if drifted < self.max_reported:
                    if start not in actual:
                        report.add(f"{name} bucket {start} missing from cache")
                    elif start not in expected:
                        report.add(f"{name} bucket {start} has no underlying data")
                    else:
                        report.add(f"{name} bucket {start} differs from recomputation")
                drifted += 1

        report.drifted_buckets = drifted
