"""Utilities for the JSON blob root that backs the crawler's persisted records."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Union

_PACKAGE_DIR = Path(__file__).resolve().parent

#: Name of the directory under :mod:`discoverycrawler.blobstore` that contains the data.
DEFAULT_BLOB_SUBDIR = "data"

#: Default location where sources, jobs, history and stats are stored.
DEFAULT_BLOB_ROOT = _PACKAGE_DIR / DEFAULT_BLOB_SUBDIR


_Pathish = Union[str, Path]


def resolve_blob_root(blob_root: _Pathish | None = None) -> Path:
    """Return a :class:`Path` pointing at the blob root.

    ``blob_root`` may be either a string or :class:`Path`.  When ``None`` is
    provided, :data:`DEFAULT_BLOB_ROOT` is returned.  The path is not created on
    disk; callers can use :func:`ensure_blob_root` if they need to create it.
    """

    if blob_root is None:
        return DEFAULT_BLOB_ROOT
    if isinstance(blob_root, Path):
        return blob_root
    return Path(blob_root)


def ensure_blob_root(blob_root: _Pathish | None = None) -> Path:
    """Ensure the blob root exists and return it as a :class:`Path`."""

    root = resolve_blob_root(blob_root)
    root.mkdir(parents=True, exist_ok=True)
    return root


def read_json(path: Path, default: Any = None) -> Any:
    """Load JSON from ``path``, returning ``default`` when the file is absent.

    A corrupt file raises :class:`ValueError` naming the path rather than being
    silently replaced, so a bad write never wipes the crawl history.
    """

    if not path.exists():
        return default

    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in blob file: {path}") from exc


def write_json(path: Path, payload: Any) -> None:
    """Atomically replace ``path`` with ``payload`` serialised as JSON."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as file:
            json.dump(payload, file, ensure_ascii=False, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


__all__ = [
    "DEFAULT_BLOB_ROOT",
    "DEFAULT_BLOB_SUBDIR",
    "ensure_blob_root",
    "read_json",
    "resolve_blob_root",
    "write_json",
]
