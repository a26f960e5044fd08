"""Embedding store: an interim SQLite table in front of a flat binary file.

Workers write each finished embedding to the table as it arrives, so a
crashed run loses nothing. drain() later folds the table into the flat file,
which is the fast bulk-read format used by search and classification.

Flat file layout, little-endian, no header, records back to back:

    id: int64 | timestamp: int64 | vector: float32[dim]
"""

import logging
import os
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from errors import DimensionMismatch, StoreFailure

logger = logging.getLogger(__name__)


@dataclass
class Embedding:
    id: int
    timestamp: int
    vector: np.ndarray

    @classmethod
    def create(cls, media_id: int, vector: np.ndarray) -> "Embedding":
        return cls(id=media_id, timestamp=int(time.time() * 1000), vector=np.asarray(vector, dtype=np.float32))


# ---------------------------------------------------------------------------
# Flat file codec
# ---------------------------------------------------------------------------


def record_dtype(dimension: int) -> np.dtype:
    return np.dtype([("id", "<i8"), ("timestamp", "<i8"), ("vector", "<f4", (dimension,))])


def _check_lengths(records: list[Embedding], dimension: int, where: str) -> None:
    for r in records:
        length = np.asarray(r.vector).size
        if length != dimension:
            raise DimensionMismatch(dimension, length, where)


def _pack(records: list[Embedding], dimension: int) -> bytes:
    arr = np.empty(len(records), dtype=record_dtype(dimension))
    for i, r in enumerate(records):
        arr[i] = (r.id, r.timestamp, np.asarray(r.vector, dtype=np.float32).reshape(-1))
    return arr.tobytes()


def write_records(path: Path, records: list[Embedding], dimension: int) -> None:
    """Replace the file with records. Written to a tmp file then renamed."""
    _check_lengths(records, dimension, str(path))
    data = _pack(records, dimension)
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_bytes(data)
        os.replace(tmp, path)
    except OSError as exc:
        raise StoreFailure(f"Cannot write {path}: {exc}") from exc


def append_records(path: Path, records: list[Embedding], dimension: int) -> None:
    _check_lengths(records, dimension, str(path))
    data = _pack(records, dimension)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "ab") as f:
            f.write(data)
    except OSError as exc:
        raise StoreFailure(f"Cannot append to {path}: {exc}") from exc


def read_records(path: Path, dimension: int) -> list[Embedding]:
    """Read every record. A missing file reads as empty."""
    if not path.exists():
        return []
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise StoreFailure(f"Cannot read {path}: {exc}") from exc

    dtype = record_dtype(dimension)
    if len(data) % dtype.itemsize != 0:
        raise DimensionMismatch(dimension, where=f"{path} ({len(data)} bytes)")

    arr = np.frombuffer(data, dtype=dtype)
    return [
        Embedding(int(row["id"]), int(row["timestamp"]), np.array(row["vector"], dtype=np.float32))
        for row in arr
    ]


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class EmbeddingStore:
    """Embeddings of one media kind and one fixed dimension."""

    def __init__(self, db_path: Path, file_path: Path, dimension: int, table: str = "embedding"):
        if not table.isidentifier():
            raise ValueError(f"Invalid table name: {table!r}")
        self.file_path = file_path
        self.dimension = dimension
        self._table = table
        self._lock = threading.RLock()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute(
                f"""CREATE TABLE IF NOT EXISTS {table} (
                    id INTEGER PRIMARY KEY,
                    timestamp INTEGER NOT NULL,
                    vector BLOB NOT NULL
                )"""
            )
            self._conn.commit()
        except sqlite3.Error as exc:
            raise StoreFailure(f"Cannot open embedding table {table}: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _table_rows(self) -> list[Embedding]:
        try:
            rows = self._conn.execute(
                f"SELECT id, timestamp, vector FROM {self._table} ORDER BY id"
            ).fetchall()
        except sqlite3.Error as exc:
            raise StoreFailure(str(exc)) from exc

        out = []
        for id_, ts, blob in rows:
            vec = np.frombuffer(blob, dtype="<f4").astype(np.float32)
            if vec.size != self.dimension:
                raise DimensionMismatch(self.dimension, vec.size, f"{self._table} id {id_}")
            out.append(Embedding(id_, ts, vec))
        return out

    def add(self, records: list[Embedding]) -> None:
        """Upsert records into the interim table."""
        _check_lengths(records, self.dimension, self._table)
        rows = [
            (r.id, r.timestamp, np.asarray(r.vector, dtype="<f4").tobytes()) for r in records
        ]
        with self._lock:
            try:
                self._conn.executemany(
                    f"INSERT OR REPLACE INTO {self._table} (id, timestamp, vector) VALUES (?, ?, ?)",
                    rows,
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StoreFailure(f"Cannot store embeddings: {exc}") from exc

    def get_all(self) -> list[Embedding]:
        """Flat file records overlaid with the interim table. The table wins per id."""
        with self._lock:
            merged = {r.id: r for r in read_records(self.file_path, self.dimension)}
            for r in self._table_rows():
                merged[r.id] = r
        return list(merged.values())

    def get(self, media_id: int) -> Embedding | None:
        for r in self.get_all():
            if r.id == media_id:
                return r
        return None

    def existing_ids(self) -> set[int]:
        with self._lock:
            ids = {r.id for r in read_records(self.file_path, self.dimension)}
            try:
                rows = self._conn.execute(f"SELECT id FROM {self._table}").fetchall()
            except sqlite3.Error as exc:
                raise StoreFailure(str(exc)) from exc
        ids.update(r[0] for r in rows)
        return ids

    def delete_ids(self, ids) -> int:
        """Remove ids from both the table and the flat file. Returns how many were removed."""
        ids = set(ids)
        if not ids:
            return 0
        with self._lock:
            removed = set()
            try:
                for i in ids:
                    cur = self._conn.execute(f"DELETE FROM {self._table} WHERE id = ?", (i,))
                    if cur.rowcount:
                        removed.add(i)
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StoreFailure(str(exc)) from exc

            records = read_records(self.file_path, self.dimension)
            kept = [r for r in records if r.id not in ids]
            if len(kept) != len(records):
                removed.update(r.id for r in records if r.id in ids)
                write_records(self.file_path, kept, self.dimension)
        return len(removed)

    def delete_all(self) -> None:
        with self._lock:
            try:
                self._conn.execute(f"DELETE FROM {self._table}")
                self._conn.commit()
            except sqlite3.Error as exc:
                raise StoreFailure(str(exc)) from exc
            try:
                self.file_path.unlink(missing_ok=True)
            except OSError as exc:
                raise StoreFailure(f"Cannot remove {self.file_path}: {exc}") from exc

    def drain(self) -> int:
        """Fold the interim table into the flat file and clear the table.

        Returns the number of records moved. Draining an empty table is a no-op.
        """
        with self._lock:
            pending = self._table_rows()
            if not pending:
                return 0
            on_file = read_records(self.file_path, self.dimension)
            if {r.id for r in on_file}.isdisjoint(r.id for r in pending):
                append_records(self.file_path, pending, self.dimension)
            else:
                merged = {r.id: r for r in on_file}
                for r in pending:
                    merged[r.id] = r
                write_records(self.file_path, list(merged.values()), self.dimension)
            try:
                self._conn.execute(f"DELETE FROM {self._table}")
                self._conn.commit()
            except sqlite3.Error as exc:
                raise StoreFailure(f"Drained file but could not clear table: {exc}") from exc
        logger.info("Drained %d embeddings into %s", len(pending), self.file_path.name)
        return len(pending)
