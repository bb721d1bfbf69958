"""Running per-source and global crawl statistics."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Dict, List

from discoverycrawler.blobstore import read_json, write_json
from discoverycrawler.models import CrawlJob, GlobalStats, JobStatus, SourceStats

__all__ = ["StatsAggregator"]

STATS_FILENAME = "stats.json"

_SUMMED_FIELDS = (
    "total_runs",
    "successful_runs",
    "failed_runs",
    "items_found",
    "items_submitted",
    "items_duplicate",
    "items_failed",
)


class StatsAggregator:
    def __init__(self, blob_root: Path | str | None = None) -> None:
        self._path = Path(blob_root) / STATS_FILENAME if blob_root is not None else None
        self._lock = threading.Lock()
        self._stats: Dict[str, SourceStats] = {}
        if self._path is not None:
            for raw in read_json(self._path, default=[]):
                stats = SourceStats.model_validate(raw)
                self._stats[stats.source_id] = stats

    def _persist(self) -> None:
        if self._path is not None:
            write_json(self._path, [stats.model_dump(mode="json") for stats in self._stats.values()])

    def update(self, source_id: str, job: CrawlJob) -> SourceStats:
        """Fold a finished job's counts into the source's totals."""

        with self._lock:
            stats = self._stats.get(source_id) or SourceStats(source_id=source_id)
            succeeded = job.status == JobStatus.completed
            stats = stats.model_copy(
                update={
                    "total_runs": stats.total_runs + 1,
                    "successful_runs": stats.successful_runs + int(succeeded),
                    "failed_runs": stats.failed_runs + int(not succeeded),
                    "items_found": stats.items_found + job.items_found,
                    "items_submitted": stats.items_submitted + job.items_submitted,
                    "items_duplicate": stats.items_duplicate + job.items_duplicate,
                    "items_failed": stats.items_failed + job.items_failed,
                    "last_run_at": job.completed_at or job.started_at,
                    "last_run_status": job.status,
                    "last_run_duration_ms": job.duration_ms,
                }
            )
            self._stats[source_id] = stats
            self._persist()
        return stats.model_copy()

    def get(self, source_id: str) -> SourceStats:
        """Return the source's stats; a source that never ran reports zeros."""

        with self._lock:
            stats = self._stats.get(source_id)
        return stats.model_copy() if stats is not None else SourceStats(source_id=source_id)

    def all(self) -> List[SourceStats]:
        with self._lock:
            return [stats.model_copy() for stats in self._stats.values()]

    def remove(self, source_id: str) -> None:
        with self._lock:
            if self._stats.pop(source_id, None) is not None:
                self._persist()

    def summary(self) -> GlobalStats:
        """Sum every source's totals; rates are derived from the sums."""

        stats = self.all()
        totals = {name: sum(getattr(item, name) for item in stats) for name in _SUMMED_FIELDS}
        last_runs = [item.last_run_at for item in stats if item.last_run_at is not None]
        return GlobalStats(sources=len(stats), last_run_at=max(last_runs, default=None), **totals)
