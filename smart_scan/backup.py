"""Zip export and restore of the embedding files plus the repository.

Archive layout:

    manifest.json            {"format", "model", "dimension", "created_at", "stores"}
    repository.db            consistent SQLite snapshot
    embeddings/<kind>.bin    drained flat files, one per media kind
"""

import json
import logging
import os
import tempfile
import zipfile
from pathlib import Path

from errors import DimensionMismatch, StoreFailure
from repository import Repository, now_ms
from store import EmbeddingStore, read_records, write_records

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
_MANIFEST = "manifest.json"
_DB_ENTRY = "repository.db"


def export_backup(
    dest: Path,
    repo: Repository,
    stores: dict[str, EmbeddingStore],
    model_name: str,
) -> Path:
    """Write a backup zip to dest. Pending embeddings are drained first."""
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    dimensions = {s.dimension for s in stores.values()}
    manifest = {
        "format": FORMAT_VERSION,
        "model": model_name,
        "dimension": dimensions.pop() if len(dimensions) == 1 else None,
        "created_at": now_ms(),
        "stores": {kind: s.dimension for kind, s in stores.items()},
    }

    for store in stores.values():
        store.drain()

    tmp = dest.with_suffix(dest.suffix + ".tmp")
    try:
        with tempfile.TemporaryDirectory() as workdir:
            db_copy = Path(workdir) / _DB_ENTRY
            repo.backup_to(db_copy)
            with zipfile.ZipFile(tmp, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                zf.writestr(_MANIFEST, json.dumps(manifest, indent=2))
                zf.write(db_copy, _DB_ENTRY)
                for kind, store in stores.items():
                    if store.file_path.exists():
                        zf.write(store.file_path, f"embeddings/{kind}.bin")
        os.replace(tmp, dest)
    except OSError as exc:
        tmp.unlink(missing_ok=True)
        raise StoreFailure(f"Cannot write backup {dest}: {exc}") from exc

    logger.info("Backup written to %s", dest)
    return dest


def restore_backup(
    src: Path,
    repo: Repository,
    stores: dict[str, EmbeddingStore],
) -> dict:
    """Replace the repository and embedding files with the contents of a backup.

    Every embedding file is validated against its store's dimension before
    anything live is touched, so a backup from a different model is refused
    whole.
    """
    src = Path(src)
    try:
        zf = zipfile.ZipFile(src)
    except (OSError, zipfile.BadZipFile) as exc:
        raise StoreFailure(f"Cannot open backup {src}: {exc}") from exc

    with zf, tempfile.TemporaryDirectory() as workdir:
        names = set(zf.namelist())
        if _MANIFEST not in names or _DB_ENTRY not in names:
            raise StoreFailure(f"{src} is not a backup archive")
        manifest = json.loads(zf.read(_MANIFEST))
        if manifest.get("format") != FORMAT_VERSION:
            raise StoreFailure(f"Unsupported backup format: {manifest.get('format')}")

        staged: dict[str, list] = {}
        for kind, store in stores.items():
            entry = f"embeddings/{kind}.bin"
            if entry not in names:
                staged[kind] = []
                continue
            expected = manifest.get("stores", {}).get(kind, store.dimension)
            if expected != store.dimension:
                raise DimensionMismatch(store.dimension, expected, f"backup {kind} embeddings")
            path = Path(zf.extract(entry, workdir))
            staged[kind] = read_records(path, store.dimension)

        db_path = Path(zf.extract(_DB_ENTRY, workdir))
        repo.restore_from(db_path)

        counts = {}
        for kind, records in staged.items():
            store = stores[kind]
            store.delete_all()
            if records:
                write_records(store.file_path, records, store.dimension)
            counts[kind] = len(records)

    logger.info("Restored backup %s: %s", src, counts)
    return {"model": manifest.get("model"), "embeddings": counts}
