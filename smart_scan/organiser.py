"""Moves images into destination folders chosen by the classifier.

Every successful move is recorded against the run's scan id, so a whole
run can be undone later. A destination folder is represented by its
prototype: the normalized mean embedding of sample images already in it.
"""

import logging
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path

from classifier import classify
from concurrency import ConcurrencyController
from config import (
    CHUNK_SIZE,
    IMAGE_EXTENSIONS,
    ORGANISER_MATCH_THRESHOLD,
    ORGANISER_MIN_MARGIN,
    PROTOTYPE_SAMPLE_LIMIT,
)
from errors import EmbedFailure, MoveFailure, ScanError, StoreFailure
from media import open_image
from models import Embedder
from pipeline import RunState, RunSummary, run_chunked
from repository import MoveHistoryEntry, PrototypeEmbedding, Repository, now_ms
from vectors import average_embedding

logger = logging.getLogger(__name__)

LAST_DESTINATIONS_KEY = "last_destinations"


@dataclass
class OrganiseResult:
    scan_id: int | None
    processed: int
    moved: int
    destinations: list[str] = field(default_factory=list)


def unique_destination(directory: Path, name: str) -> Path:
    """directory/name, or directory/"stem (n).ext" if that is taken."""
    candidate = directory / name
    stem, suffix = Path(name).stem, Path(name).suffix
    n = 1
    while candidate.exists():
        candidate = directory / f"{stem} ({n}){suffix}"
        n += 1
    return candidate


def move_file(source: Path, directory: Path) -> Path:
    if not source.is_file():
        raise MoveFailure(f"Source vanished: {source}")
    if not directory.is_dir():
        raise MoveFailure(f"Destination is not a directory: {directory}")
    target = unique_destination(directory, source.name)
    try:
        return Path(shutil.move(str(source), str(target)))
    except OSError as exc:
        raise MoveFailure(f"Cannot move {source} to {directory}: {exc}") from exc


class Organiser:
    def __init__(
        self,
        repo: Repository,
        embedder: Embedder,
        controller: ConcurrencyController,
        match_threshold: float = ORGANISER_MATCH_THRESHOLD,
        min_margin: float = ORGANISER_MIN_MARGIN,
        chunk_size: int = CHUNK_SIZE,
    ):
        self._repo = repo
        self._embedder = embedder
        self._controller = controller
        self._match_threshold = match_threshold
        self._min_margin = min_margin
        self._chunk_size = chunk_size
        # Picking a free target name and moving into it must not interleave
        self._move_lock = threading.Lock()

    def last_destinations(self) -> list[str]:
        return list(self._repo.get_setting(LAST_DESTINATIONS_KEY, []))

    def organise(
        self,
        paths: list[Path],
        state: RunState | None = None,
        cancel_event: threading.Event | None = None,
    ) -> OrganiseResult:
        """Classify each image and move the matches. Returns what moved under which scan id."""
        state = state or RunState()
        try:
            prototypes = self._repo.list_prototypes()
        except StoreFailure as exc:
            logger.error("Cannot load prototypes: %s", exc)
            state.fail(exc)
            raise

        paths = [Path(p) for p in paths]
        if not prototypes:
            logger.info("No destination prototypes, nothing to organise")
            state.complete(RunSummary(0, len(paths), 0.0))
            return OrganiseResult(scan_id=None, processed=0, moved=0)

        scan_id = self._repo.begin_scan()
        used: set[str] = set()
        used_lock = threading.Lock()

        def _one(path: Path) -> int:
            vector = self._embedder.embed(open_image(path))
            category = classify(vector, prototypes, self._match_threshold, self._min_margin)
            if category is None:
                return 0
            directory = Path(category)
            if path.parent.resolve() == directory.resolve():
                return 0

            with self._move_lock:
                target = move_file(path, directory)
                try:
                    self._repo.record_move(MoveHistoryEntry(scan_id, str(path), str(target)))
                except StoreFailure:
                    # No history means no move
                    shutil.move(str(target), str(path))
                    raise
            try:
                self._repo.update_media_path(str(path), str(target))
            except StoreFailure:
                # The move is recorded, so undo still finds it
                logger.warning("Moved %s but could not update the catalog", path.name, exc_info=True)
            with used_lock:
                used.add(category)
            logger.info("Moved %s -> %s", path.name, directory)
            return 1

        try:
            moved = run_chunked(
                paths,
                _one,
                self._controller,
                state=state,
                cancel_event=cancel_event,
                chunk_size=self._chunk_size,
            )
        finally:
            moved_now = len(self._repo.move_history(scan_id))
            self._repo.finish_scan(scan_id, moved_now)

        if used:
            self._repo.set_setting(LAST_DESTINATIONS_KEY, sorted(used))
        return OrganiseResult(
            scan_id=scan_id if moved else None,
            processed=len(paths),
            moved=moved,
            destinations=sorted(used),
        )

    def undo(self, scan_id: int) -> int:
        """Move a scan's files back, most recent first, then forget the scan.

        Returns how many files were restored. Files that can't be moved back
        are logged and left where they are.
        """
        entries = self._repo.move_history(scan_id)
        restored = 0
        for entry in entries:
            source, destination = Path(entry.source), Path(entry.destination)
            if not destination.is_file():
                logger.warning("Cannot undo %s: file no longer at %s", source.name, destination)
                continue
            if source.exists():
                logger.warning("Cannot undo %s: original location is occupied", source)
                continue
            try:
                source.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(str(destination), str(source))
            except OSError:
                logger.warning("Failed to move back %s", destination, exc_info=True)
                continue
            self._repo.update_media_path(str(destination), str(source))
            restored += 1
        self._repo.delete_scan(scan_id)
        logger.info("Undo of scan %d restored %d/%d files", scan_id, restored, len(entries))
        return restored

    def build_prototype(
        self, folder: str | Path, sample_limit: int = PROTOTYPE_SAMPLE_LIMIT
    ) -> PrototypeEmbedding:
        """Embed up to sample_limit images of folder and store their mean as its prototype."""
        directory = Path(folder).resolve()
        if not directory.is_dir():
            raise MoveFailure(f"Not a directory: {directory}")

        samples = sorted(
            p for p in directory.iterdir()
            if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS
        )[:sample_limit]

        vectors = []
        for p in samples:
            try:
                vectors.append(self._embedder.embed(open_image(p)))
            except ScanError:
                logger.warning("Skipping prototype sample %s", p, exc_info=True)
        if not vectors:
            raise EmbedFailure(f"No images in {directory} could be embedded")

        prototype = PrototypeEmbedding(
            category_id=str(directory),
            timestamp=now_ms(),
            vector=average_embedding(vectors),
        )
        self._repo.upsert_prototype(prototype)
        logger.info("Built prototype for %s from %d images", directory, len(vectors))
        return prototype

    def remove_prototype(self, folder: str | Path) -> bool:
        return self._repo.delete_prototype(str(Path(folder).resolve()))
