"""Durable record of every (source, normalised URL) pair the crawler has processed."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from discoverycrawler.blobstore import read_json, write_json
from discoverycrawler.models import CrawlHistoryEntry, HistoryOutcome, utcnow

__all__ = ["HistoryLedger"]

logger = logging.getLogger(__name__)

HISTORY_FILENAME = "history.json"

_Key = Tuple[str, str]


class HistoryLedger:
    """Dedup authority keyed by ``(source_id, normalized_url)``.

    Recording the same key twice replaces the earlier entry with the latest
    outcome, so at most one entry ever exists per key. Each record is written
    to ``history.json`` as soon as it is made. A ``flush_every`` above 1 batches
    writes, and a crash may then lose up to that many records, whose candidates
    would be submitted again. ``blob_root=None`` keeps the ledger in memory only.
    """

    def __init__(
        self,
        blob_root: Path | str | None = None,
        *,
        retry_failed: bool = False,
        flush_every: int = 1,
    ) -> None:
        self._path = Path(blob_root) / HISTORY_FILENAME if blob_root is not None else None
        self._retry_failed = retry_failed
        self._flush_every = max(1, flush_every)
        self._lock = threading.Lock()
        self._entries: Dict[_Key, CrawlHistoryEntry] = {}
        self._pending = 0
        self._load()

    def _load(self) -> None:
        if self._path is None:
            return
        payload = read_json(self._path, default={"entries": []})
        for raw in payload.get("entries", []):
            entry = CrawlHistoryEntry.model_validate(raw)
            self._entries[(entry.source_id, entry.normalized_url)] = entry
        logger.debug("Loaded %d history entries from %s", len(self._entries), self._path)

    def has(self, source_id: str, normalized_url: str) -> bool:
        """Whether the URL was already processed for the source.

        With ``retry_failed`` enabled an entry whose last outcome was ``error``
        does not count as seen.
        """

        with self._lock:
            entry = self._entries.get((source_id, normalized_url))
        if entry is None:
            return False
        return not (self._retry_failed and entry.outcome == HistoryOutcome.error)

    def get(self, source_id: str, normalized_url: str) -> Optional[CrawlHistoryEntry]:
        with self._lock:
            entry = self._entries.get((source_id, normalized_url))
        return entry.model_copy() if entry is not None else None

    def record(
        self,
        source_id: str,
        normalized_url: str,
        outcome: HistoryOutcome,
        *,
        url: str | None = None,
        job_id: str | None = None,
        title: str | None = None,
        error_message: str | None = None,
    ) -> CrawlHistoryEntry:
        entry = CrawlHistoryEntry(
            source_id=source_id,
            normalized_url=normalized_url,
            url=url or normalized_url,
            discovered_at=utcnow(),
            outcome=outcome,
            job_id=job_id,
            title=title,
            error_message=error_message,
        )
        with self._lock:
            # Re-insert so iteration order follows the latest record.
            self._entries.pop((source_id, normalized_url), None)
            self._entries[(source_id, normalized_url)] = entry
            self._pending += 1
            if self._pending >= self._flush_every:
                self._flush_locked()
        return entry.model_copy()

    def flush(self) -> None:
        with self._lock:
            self._flush_locked()

    def _flush_locked(self) -> None:
        if self._path is None or not self._pending:
            self._pending = 0
            return
        entries = [entry.model_dump(mode="json") for entry in self._entries.values()]
        write_json(self._path, {"entries": entries})
        self._pending = 0

    def entries(self, source_id: str | None = None, *, limit: int | None = None) -> List[CrawlHistoryEntry]:
        """Return entries newest first, optionally for one source only."""

        with self._lock:
            selected = [
                entry.model_copy()
                for entry in reversed(self._entries.values())
                if source_id is None or entry.source_id == source_id
            ]
        selected.sort(key=lambda entry: entry.discovered_at, reverse=True)
        return selected[:limit] if limit is not None else selected

    def count(self, source_id: str | None = None) -> int:
        with self._lock:
            if source_id is None:
                return len(self._entries)
            return sum(1 for key in self._entries if key[0] == source_id)

    def __len__(self) -> int:
        return self.count()
