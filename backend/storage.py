"""Filesystem-backed storage: per-note JSON files plus small JSON tables."""

from __future__ import annotations

import json
import os
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog

from errors import NoteNotFoundError
from models import NoteRecord

logger = structlog.get_logger(__name__)

_NOTE_FIELDS = {"title", "content", "tags", "headings", "category", "cluster_id"}


def _atomic_write(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2)
    os.replace(tmp_path, path)


class JsonTable:
    """A keyed collection of JSON rows persisted to a single file.

    Rows stay in insertion order. The whole table is cached in memory and
    rewritten on every mutation, which is fine at personal-knowledge-base scale.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.lock = threading.RLock()
        self._rows: Optional[Dict[str, Dict[str, Any]]] = None

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if self._rows is None:
            if self.path.exists():
                with open(self.path, "r", encoding="utf-8") as handle:
                    self._rows = json.load(handle)
            else:
                self._rows = {}
        return self._rows

    def _flush(self) -> None:
        _atomic_write(self.path, self._rows or {})

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self.lock:
            row = self._load().get(key)
            return dict(row) if row is not None else None

    def rows(self) -> List[Dict[str, Any]]:
        with self.lock:
            return [dict(row) for row in self._load().values()]

    def where(self, predicate: Callable[[Dict[str, Any]], bool]) -> List[Dict[str, Any]]:
        return [row for row in self.rows() if predicate(row)]

    def count(self) -> int:
        with self.lock:
            return len(self._load())

    def put(self, key: str, row: Dict[str, Any]) -> None:
        with self.lock:
            self._load()[key] = row
            self._flush()

    def put_many(self, items: Iterable[tuple]) -> int:
        with self.lock:
            rows = self._load()
            written = 0
            for key, row in items:
                rows[key] = row
                written += 1
            if written:
                self._flush()
            return written

    def delete(self, key: str) -> bool:
        with self.lock:
            rows = self._load()
            if key not in rows:
                return False
            del rows[key]
            self._flush()
            return True

    def delete_where(self, predicate: Callable[[Dict[str, Any]], bool]) -> int:
        with self.lock:
            rows = self._load()
            doomed = [key for key, row in rows.items() if predicate(row)]
            for key in doomed:
                del rows[key]
            if doomed:
                self._flush()
            return len(doomed)

    def clear(self) -> int:
        with self.lock:
            removed = len(self._load())
            self._rows = {}
            self._flush()
            return removed


class NoteStorage:
    """Local JSON storage for notes, one file per note."""

    def __init__(self, root: Optional[Path] = None):
        base_dir = Path(root) if root else Path(__file__).resolve().parent / "storage" / "notes"
        base_dir.mkdir(parents=True, exist_ok=True)
        self.notes_dir = base_dir
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def get(self, note_id: str) -> NoteRecord:
        path = self._path_for(note_id)
        if not path.exists():
            raise NoteNotFoundError(note_id)
        return self._read_record(path)

    def find(self, note_id: str) -> Optional[NoteRecord]:
        try:
            return self.get(note_id)
        except NoteNotFoundError:
            return None

    def get_all(self) -> List[NoteRecord]:
        records = list(self.list_records().values())
        records.sort(key=lambda r: (r.created_at, r.id))
        return records

    def list_records(self) -> Dict[str, NoteRecord]:
        """Expose all records for services that need to rebuild derived state."""
        records: Dict[str, NoteRecord] = {}
        for path in self.notes_dir.glob("*.json"):
            try:
                record = self._read_record(path)
            except (OSError, ValueError, KeyError) as exc:
                logger.warning("note_file_unreadable", path=str(path), error=str(exc))
                continue
            records[record.id] = record
        return records

    def count(self) -> int:
        return sum(1 for _ in self.notes_dir.glob("*.json"))

    def create(
        self,
        title: str,
        content: str = "",
        *,
        note_id: Optional[str] = None,
        tags: Optional[List[str]] = None,
        headings: Optional[List[str]] = None,
        category: Optional[str] = None,
    ) -> NoteRecord:
        now = time.time()
        record = NoteRecord(
            id=self._normalize_id(note_id) if note_id else uuid.uuid4().hex,
            title=title,
            content=content,
            tags=list(tags or []),
            headings=list(headings or []),
            category=category,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._write_record(record)
        return record

    def update(self, note_id: str, *, touch: bool = True, **fields) -> NoteRecord:
        """Apply ``fields`` to a note.

        ``updated_at`` is bumped unless ``touch`` is False; engine-owned writes
        such as cluster assignment pass ``touch=False`` so they never make a
        pending ANALYZE job look stale.
        """
        unknown = set(fields) - _NOTE_FIELDS
        if unknown:
            raise ValueError(f"Unknown note fields: {sorted(unknown)}")
        with self._lock:
            record = self.get(note_id)
            for name, value in fields.items():
                setattr(record, name, value)
            if touch:
                record.updated_at = max(time.time(), record.updated_at + 1e-6)
            self._write_record(record)
            return record

    def delete(self, note_id: str) -> bool:
        with self._lock:
            path = self._path_for(note_id)
            if not path.exists():
                return False
            path.unlink()
            return True

    def reset_cluster_ids(self) -> int:
        reset = 0
        with self._lock:
            for record in self.list_records().values():
                if record.cluster_id is not None:
                    record.cluster_id = None
                    self._write_record(record)
                    reset += 1
        return reset

    def assign_cluster_ids(self, assignments: Dict[str, int]) -> int:
        assigned = 0
        with self._lock:
            for note_id, cluster_id in assignments.items():
                record = self.find(note_id)
                if record is None:
                    continue
                record.cluster_id = int(cluster_id)
                self._write_record(record)
                assigned += 1
        return assigned

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _normalize_id(self, raw_id: str) -> str:
        return raw_id.strip().strip("/")

    def _path_for(self, note_id: str) -> Path:
        stem = self._normalize_id(note_id).replace("/", "__")
        return self.notes_dir / f"{stem}.json"

    def _read_record(self, path: Path) -> NoteRecord:
        with open(path, "r", encoding="utf-8") as handle:
            raw = json.load(handle)
        raw.setdefault("id", path.stem.replace("__", "/"))
        return NoteRecord.from_dict(raw)

    def _write_record(self, record: NoteRecord) -> None:
        _atomic_write(self._path_for(record.id), record.to_dict())
