"""SQLite-backed records for media, prototypes, tags, and move history."""

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from config import DEFAULT_TAG_COLOR, DEFAULT_TAG_THRESHOLD
from errors import StoreFailure

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS media (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL UNIQUE,
    kind TEXT NOT NULL CHECK (kind IN ('image', 'video'))
);
CREATE INDEX IF NOT EXISTS idx_media_kind ON media(kind);

CREATE TABLE IF NOT EXISTS prototype (
    category_id TEXT PRIMARY KEY,
    timestamp INTEGER NOT NULL,
    vector BLOB NOT NULL
);

CREATE TABLE IF NOT EXISTS tag (
    name TEXT PRIMARY KEY,
    description TEXT NOT NULL,
    vector BLOB NOT NULL,
    threshold REAL NOT NULL,
    color INTEGER NOT NULL,
    active INTEGER NOT NULL DEFAULT 1,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS media_tag (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    media_id INTEGER NOT NULL,
    tag_name TEXT NOT NULL REFERENCES tag(name) ON DELETE CASCADE,
    confidence REAL NOT NULL,
    is_user_assigned INTEGER NOT NULL DEFAULT 0,
    assigned_at INTEGER NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_media_tag ON media_tag(media_id, tag_name);
CREATE INDEX IF NOT EXISTS idx_media_tag_name ON media_tag(tag_name);

CREATE TABLE IF NOT EXISTS scan (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    moved_count INTEGER NOT NULL DEFAULT 0,
    finished INTEGER NOT NULL DEFAULT 0,
    timestamp INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS move_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    scan_id INTEGER NOT NULL,
    source TEXT NOT NULL,
    destination TEXT NOT NULL,
    timestamp INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_move_scan ON move_history(scan_id);

CREATE TABLE IF NOT EXISTS fewshot_prototype (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    vector BLOB NOT NULL,
    color INTEGER NOT NULL,
    sample_count INTEGER NOT NULL,
    description TEXT,
    category TEXT,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS fewshot_sample (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    prototype_id INTEGER NOT NULL REFERENCES fewshot_prototype(id) ON DELETE CASCADE,
    path TEXT NOT NULL,
    crop TEXT,
    vector BLOB NOT NULL,
    added_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_fewshot_sample_prototype ON fewshot_sample(prototype_id);

CREATE TABLE IF NOT EXISTS setting (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def now_ms() -> int:
    return int(time.time() * 1000)


def _to_blob(vector) -> bytes:
    return np.asarray(vector, dtype="<f4").tobytes()


def _from_blob(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype="<f4").astype(np.float32)


@dataclass
class MediaItem:
    id: int
    path: str
    kind: str


@dataclass
class PrototypeEmbedding:
    category_id: str
    timestamp: int
    vector: np.ndarray


@dataclass
class TagDefinition:
    name: str
    description: str
    vector: np.ndarray
    threshold: float = DEFAULT_TAG_THRESHOLD
    color: int = DEFAULT_TAG_COLOR
    active: bool = True
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def __eq__(self, other) -> bool:
        if not isinstance(other, TagDefinition):
            return NotImplemented
        return self.name == other.name

    def __hash__(self) -> int:
        return hash(self.name)


@dataclass
class MediaTagAssignment:
    media_id: int
    tag_name: str
    confidence: float
    is_user_assigned: bool = False
    assigned_at: int = field(default_factory=now_ms)


@dataclass
class MoveHistoryEntry:
    scan_id: int
    source: str
    destination: str
    timestamp: int = field(default_factory=now_ms)


@dataclass
class FewShotSample:
    prototype_id: int
    path: str
    vector: np.ndarray
    crop: str | None = None
    added_at: int = field(default_factory=now_ms)
    id: int | None = None


@dataclass
class FewShotPrototype:
    """Mean embedding of a handful of user-chosen sample images."""

    name: str
    vector: np.ndarray
    sample_count: int
    color: int = DEFAULT_TAG_COLOR
    description: str | None = None
    category: str | None = None
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
    id: int | None = None


@dataclass
class ScanRecord:
    id: int
    moved_count: int
    timestamp: int


class Repository:
    """One SQLite connection shared by all worker threads behind a lock."""

    def __init__(self, db_path: Path):
        self._db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        except sqlite3.Error as exc:
            raise StoreFailure(f"Cannot open repository {db_path}: {exc}") from exc

    def close(self):
        with self._lock:
            self._conn.close()

    def backup_to(self, path: Path) -> None:
        """Write a consistent snapshot of the whole database to path."""
        with self._lock:
            try:
                dest = sqlite3.connect(str(path))
                try:
                    self._conn.backup(dest)
                finally:
                    dest.close()
            except sqlite3.Error as exc:
                raise StoreFailure(f"Cannot back up repository: {exc}") from exc

    def restore_from(self, path: Path) -> None:
        """Replace the live database with the snapshot at path."""
        with self._lock:
            try:
                src = sqlite3.connect(str(path))
                try:
                    src.backup(self._conn)
                finally:
                    src.close()
                self._conn.executescript(_SCHEMA)
                self._conn.commit()
            except sqlite3.Error as exc:
                raise StoreFailure(f"Cannot restore repository: {exc}") from exc

    def _execute(self, sql: str, params=()) -> sqlite3.Cursor:
        with self._lock:
            try:
                cursor = self._conn.execute(sql, params)
                self._conn.commit()
                return cursor
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StoreFailure(str(exc)) from exc

    def _executemany(self, sql: str, rows: list) -> None:
        with self._lock:
            try:
                self._conn.executemany(sql, rows)
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StoreFailure(str(exc)) from exc

    def _query(self, sql: str, params=()) -> list[tuple]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise StoreFailure(str(exc)) from exc

    # -- media catalog --

    def register_media(self, paths: list[str], kind: str) -> list[int]:
        """Assign stable ids to paths. Already-known paths keep their id."""
        if not paths:
            return []
        self._executemany(
            "INSERT OR IGNORE INTO media (path, kind) VALUES (?, ?)",
            [(p, kind) for p in paths],
        )
        ids = []
        for p in paths:
            row = self._query("SELECT id FROM media WHERE path = ?", (p,))
            ids.append(row[0][0])
        return ids

    def get_media(self, media_id: int) -> MediaItem | None:
        rows = self._query("SELECT id, path, kind FROM media WHERE id = ?", (media_id,))
        return MediaItem(*rows[0]) if rows else None

    def media_id_for_path(self, path: str) -> int | None:
        rows = self._query("SELECT id FROM media WHERE path = ?", (path,))
        return rows[0][0] if rows else None

    def list_media(self, kind: str | None = None) -> list[MediaItem]:
        if kind is None:
            rows = self._query("SELECT id, path, kind FROM media ORDER BY id")
        else:
            rows = self._query(
                "SELECT id, path, kind FROM media WHERE kind = ? ORDER BY id", (kind,)
            )
        return [MediaItem(*r) for r in rows]

    def update_media_path(self, old_path: str, new_path: str) -> None:
        self._execute("UPDATE media SET path = ? WHERE path = ?", (new_path, old_path))

    def remove_media(self, media_ids: list[int]) -> None:
        self._executemany("DELETE FROM media WHERE id = ?", [(i,) for i in media_ids])
        self._executemany("DELETE FROM media_tag WHERE media_id = ?", [(i,) for i in media_ids])

    # -- prototypes --

    def upsert_prototype(self, prototype: PrototypeEmbedding) -> None:
        self._execute(
            """INSERT INTO prototype (category_id, timestamp, vector) VALUES (?, ?, ?)
               ON CONFLICT(category_id) DO UPDATE
               SET timestamp = excluded.timestamp, vector = excluded.vector""",
            (prototype.category_id, prototype.timestamp, _to_blob(prototype.vector)),
        )

    def list_prototypes(self) -> list[PrototypeEmbedding]:
        rows = self._query(
            "SELECT category_id, timestamp, vector FROM prototype ORDER BY category_id"
        )
        return [PrototypeEmbedding(r[0], r[1], _from_blob(r[2])) for r in rows]

    def delete_prototype(self, category_id: str) -> bool:
        cursor = self._execute("DELETE FROM prototype WHERE category_id = ?", (category_id,))
        return cursor.rowcount > 0

    # -- tags --

    @staticmethod
    def _row_to_tag(row) -> TagDefinition:
        return TagDefinition(
            name=row[0],
            description=row[1],
            vector=_from_blob(row[2]),
            threshold=row[3],
            color=row[4],
            active=bool(row[5]),
            created_at=row[6],
            updated_at=row[7],
        )

    _TAG_COLUMNS = "name, description, vector, threshold, color, active, created_at, updated_at"

    def upsert_tag(self, tag: TagDefinition) -> None:
        """Insert or update a tag by name. created_at of an existing tag is kept."""
        self._execute(
            f"""INSERT INTO tag ({self._TAG_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    description = excluded.description,
                    vector = excluded.vector,
                    threshold = excluded.threshold,
                    color = excluded.color,
                    active = excluded.active,
                    updated_at = excluded.updated_at""",
            (
                tag.name,
                tag.description,
                _to_blob(tag.vector),
                float(tag.threshold),
                int(tag.color),
                int(tag.active),
                tag.created_at,
                tag.updated_at,
            ),
        )

    def get_tag(self, name: str) -> TagDefinition | None:
        rows = self._query(f"SELECT {self._TAG_COLUMNS} FROM tag WHERE name = ?", (name,))
        return self._row_to_tag(rows[0]) if rows else None

    def list_tags(self) -> list[TagDefinition]:
        rows = self._query(f"SELECT {self._TAG_COLUMNS} FROM tag ORDER BY name")
        return [self._row_to_tag(r) for r in rows]

    def list_active_tags(self) -> list[TagDefinition]:
        rows = self._query(
            f"SELECT {self._TAG_COLUMNS} FROM tag WHERE active = 1 ORDER BY name"
        )
        return [self._row_to_tag(r) for r in rows]

    def set_tag_active(self, name: str, active: bool) -> None:
        self._execute(
            "UPDATE tag SET active = ?, updated_at = ? WHERE name = ?",
            (int(active), now_ms(), name),
        )

    def delete_tag(self, name: str) -> bool:
        """Delete a tag and, through the foreign key, all of its assignments."""
        cursor = self._execute("DELETE FROM tag WHERE name = ?", (name,))
        return cursor.rowcount > 0

    # -- media tag assignments --

    def upsert_media_tags(self, assignments: list[MediaTagAssignment]) -> None:
        """Insert or replace assignments keyed by (media_id, tag_name).

        An automatic assignment never overwrites a user-assigned row.
        """
        if not assignments:
            return
        self._executemany(
            """INSERT INTO media_tag
               (media_id, tag_name, confidence, is_user_assigned, assigned_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(media_id, tag_name) DO UPDATE SET
                   confidence = excluded.confidence,
                   is_user_assigned = excluded.is_user_assigned,
                   assigned_at = excluded.assigned_at
               WHERE media_tag.is_user_assigned = 0 OR excluded.is_user_assigned = 1""",
            [
                (a.media_id, a.tag_name, float(a.confidence), int(a.is_user_assigned), a.assigned_at)
                for a in assignments
            ],
        )

    def delete_auto_tags_for_media(self, media_id: int) -> None:
        self._execute(
            "DELETE FROM media_tag WHERE media_id = ? AND is_user_assigned = 0", (media_id,)
        )

    def delete_media_tag(self, media_id: int, tag_name: str) -> bool:
        cursor = self._execute(
            "DELETE FROM media_tag WHERE media_id = ? AND tag_name = ?", (media_id, tag_name)
        )
        return cursor.rowcount > 0

    def tags_for_media(self, media_id: int) -> list[MediaTagAssignment]:
        rows = self._query(
            """SELECT media_id, tag_name, confidence, is_user_assigned, assigned_at
               FROM media_tag WHERE media_id = ? ORDER BY confidence DESC""",
            (media_id,),
        )
        return [MediaTagAssignment(r[0], r[1], r[2], bool(r[3]), r[4]) for r in rows]

    def media_ids_for_tag(self, tag_name: str) -> set[int]:
        rows = self._query(
            "SELECT DISTINCT media_id FROM media_tag WHERE tag_name = ?", (tag_name,)
        )
        return {r[0] for r in rows}

    def tag_counts(self) -> dict[str, int]:
        rows = self._query("SELECT tag_name, COUNT(*) FROM media_tag GROUP BY tag_name")
        return {r[0]: r[1] for r in rows}

    # -- few-shot prototypes --

    _FEWSHOT_COLUMNS = (
        "id, name, vector, color, sample_count, description, category, created_at, updated_at"
    )

    @staticmethod
    def _row_to_fewshot(row) -> FewShotPrototype:
        return FewShotPrototype(
            id=row[0],
            name=row[1],
            vector=_from_blob(row[2]),
            color=row[3],
            sample_count=row[4],
            description=row[5],
            category=row[6],
            created_at=row[7],
            updated_at=row[8],
        )

    def insert_fewshot_prototype(
        self, prototype: FewShotPrototype, samples: list[FewShotSample]
    ) -> int:
        """Store a prototype together with its samples in one transaction. Returns its id."""
        with self._lock:
            try:
                cursor = self._conn.execute(
                    """INSERT INTO fewshot_prototype
                       (name, vector, color, sample_count, description, category,
                        created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        prototype.name,
                        _to_blob(prototype.vector),
                        int(prototype.color),
                        prototype.sample_count,
                        prototype.description,
                        prototype.category,
                        prototype.created_at,
                        prototype.updated_at,
                    ),
                )
                prototype_id = cursor.lastrowid
                self._conn.executemany(
                    """INSERT INTO fewshot_sample (prototype_id, path, crop, vector, added_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    [(prototype_id, s.path, s.crop, _to_blob(s.vector), s.added_at) for s in samples],
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StoreFailure(str(exc)) from exc
        prototype.id = prototype_id
        return prototype_id

    def get_fewshot_prototype(self, prototype_id: int) -> FewShotPrototype | None:
        rows = self._query(
            f"SELECT {self._FEWSHOT_COLUMNS} FROM fewshot_prototype WHERE id = ?", (prototype_id,)
        )
        return self._row_to_fewshot(rows[0]) if rows else None

    def get_fewshot_prototype_by_name(self, name: str) -> FewShotPrototype | None:
        rows = self._query(
            f"SELECT {self._FEWSHOT_COLUMNS} FROM fewshot_prototype WHERE name = ?", (name,)
        )
        return self._row_to_fewshot(rows[0]) if rows else None

    def list_fewshot_prototypes(self) -> list[FewShotPrototype]:
        rows = self._query(f"SELECT {self._FEWSHOT_COLUMNS} FROM fewshot_prototype ORDER BY name")
        return [self._row_to_fewshot(r) for r in rows]

    def update_fewshot_vector(self, prototype_id: int, vector, sample_count: int) -> None:
        self._execute(
            """UPDATE fewshot_prototype SET vector = ?, sample_count = ?, updated_at = ?
               WHERE id = ?""",
            (_to_blob(vector), sample_count, now_ms(), prototype_id),
        )

    def update_fewshot_metadata(
        self,
        prototype_id: int,
        name: str,
        color: int,
        description: str | None,
        category: str | None,
    ) -> None:
        self._execute(
            """UPDATE fewshot_prototype
               SET name = ?, color = ?, description = ?, category = ?, updated_at = ?
               WHERE id = ?""",
            (name, int(color), description, category, now_ms(), prototype_id),
        )

    def delete_fewshot_prototype(self, prototype_id: int) -> bool:
        """Delete a prototype and, through the foreign key, its samples."""
        cursor = self._execute("DELETE FROM fewshot_prototype WHERE id = ?", (prototype_id,))
        return cursor.rowcount > 0

    def add_fewshot_sample(self, sample: FewShotSample) -> int:
        cursor = self._execute(
            """INSERT INTO fewshot_sample (prototype_id, path, crop, vector, added_at)
               VALUES (?, ?, ?, ?, ?)""",
            (sample.prototype_id, sample.path, sample.crop, _to_blob(sample.vector), sample.added_at),
        )
        sample.id = cursor.lastrowid
        return sample.id

    def delete_fewshot_sample(self, prototype_id: int, sample_id: int) -> bool:
        cursor = self._execute(
            "DELETE FROM fewshot_sample WHERE id = ? AND prototype_id = ?", (sample_id, prototype_id)
        )
        return cursor.rowcount > 0

    def fewshot_samples(self, prototype_id: int) -> list[FewShotSample]:
        """Samples of one prototype, oldest first."""
        rows = self._query(
            """SELECT prototype_id, path, vector, crop, added_at, id FROM fewshot_sample
               WHERE prototype_id = ? ORDER BY added_at, id""",
            (prototype_id,),
        )
        return [FewShotSample(r[0], r[1], _from_blob(r[2]), r[3], r[4], r[5]) for r in rows]

    # -- scans and move history --

    def begin_scan(self) -> int:
        cursor = self._execute(
            "INSERT INTO scan (moved_count, timestamp) VALUES (0, ?)", (now_ms(),)
        )
        return cursor.lastrowid

    def finish_scan(self, scan_id: int, moved_count: int) -> None:
        """Record the result of a scan. Scans that moved nothing are dropped."""
        if moved_count > 0:
            self._execute(
                "UPDATE scan SET moved_count = ?, finished = 1 WHERE id = ?",
                (moved_count, scan_id),
            )
        else:
            self._execute("DELETE FROM scan WHERE id = ?", (scan_id,))

    def list_scans(self) -> list[ScanRecord]:
        """Finished scans, newest first. A scan still in progress is not listed."""
        rows = self._query(
            "SELECT id, moved_count, timestamp FROM scan WHERE finished = 1 ORDER BY id DESC"
        )
        return [ScanRecord(*r) for r in rows]

    def delete_scan(self, scan_id: int) -> None:
        self.delete_move_history(scan_id)
        self._execute("DELETE FROM scan WHERE id = ?", (scan_id,))

    def record_move(self, entry: MoveHistoryEntry) -> None:
        self._execute(
            """INSERT INTO move_history (scan_id, source, destination, timestamp)
               VALUES (?, ?, ?, ?)""",
            (entry.scan_id, entry.source, entry.destination, entry.timestamp),
        )

    def move_history(self, scan_id: int) -> list[MoveHistoryEntry]:
        """Moves of one scan, most recent first."""
        rows = self._query(
            """SELECT scan_id, source, destination, timestamp FROM move_history
               WHERE scan_id = ? ORDER BY id DESC""",
            (scan_id,),
        )
        return [MoveHistoryEntry(*r) for r in rows]

    def has_move_history(self, scan_id: int) -> bool:
        rows = self._query(
            "SELECT EXISTS(SELECT 1 FROM move_history WHERE scan_id = ?)", (scan_id,)
        )
        return bool(rows[0][0])

    def delete_move_history(self, scan_id: int) -> None:
        self._execute("DELETE FROM move_history WHERE scan_id = ?", (scan_id,))

    # -- settings --

    def get_setting(self, key: str, default=None):
        rows = self._query("SELECT value FROM setting WHERE key = ?", (key,))
        if not rows:
            return default
        try:
            return json.loads(rows[0][0])
        except json.JSONDecodeError:
            logger.warning("Corrupt setting %s, using default", key)
            return default

    def set_setting(self, key: str, value) -> None:
        self._execute(
            """INSERT INTO setting (key, value) VALUES (?, ?)
               ON CONFLICT(key) DO UPDATE SET value = excluded.value""",
            (key, json.dumps(value)),
        )
