"""Wires the stores, encoder, and workers together and runs jobs one at a time.

The service owns exactly one Engine. Everything below it is constructed
here and handed its collaborators explicitly.
"""

import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable

from backup import export_backup, restore_backup
from concurrency import ConcurrencyController
from config import CACHE_DIR, DEFAULT_MODEL, DEFAULT_TOP_K, SEARCH_THRESHOLD
from fewshot import CropRect, FewShotService, parse_samples
from indexer import image_indexer, video_indexer
from library import IMAGE, VIDEO, MediaLibrary, scan_folder
from models import AVAILABLE_MODELS, Embedder, EmbeddingModel
from organiser import Organiser
from pipeline import ProgressChannel, ProgressUpdate, RunState, RunStatus, RunSummary
from repository import FewShotPrototype, Repository
from search import SearchEngine
from store import EmbeddingStore
from tagger import TaggingService

logger = logging.getLogger(__name__)

ProgressListener = Callable[[str, ProgressUpdate], None]


class JobBusy(RuntimeError):
    """Another job is already running."""


@dataclass
class Job:
    name: str
    cancel_event: threading.Event = field(default_factory=threading.Event)
    started_at: float = field(default_factory=time.time)
    phase: str = ""
    state: RunState = field(default_factory=RunState)
    active: bool = True
    # Set when the job stopped between phases rather than inside one
    cancelled: bool = False

    @property
    def status(self) -> RunStatus:
        if self.cancelled and self.state.status is not RunStatus.FAILED:
            return RunStatus.CANCELLED
        return self.state.status

    def to_dict(self) -> dict:
        return {
            "job": self.name,
            "phase": self.phase,
            **self.state.to_dict(),
            "status": self.status.value,
            "active": self.active,
        }


class Engine:
    def __init__(
        self,
        cache_dir: Path | None = None,
        model: EmbeddingModel | None = None,
        controller: ConcurrencyController | None = None,
    ):
        self._cache_dir = cache_dir or CACHE_DIR
        self._cache_dir.mkdir(parents=True, exist_ok=True)

        self.repo = Repository(self._db_path)
        self.embedder = Embedder(model or AVAILABLE_MODELS[DEFAULT_MODEL])
        dim = self.embedder.dimension
        self.stores = {
            IMAGE: EmbeddingStore(
                self._db_path, self._embeddings_dir / "image_index.bin", dim, table="image_embedding"
            ),
            VIDEO: EmbeddingStore(
                self._db_path, self._embeddings_dir / "video_index.bin", dim, table="video_embedding"
            ),
        }
        self.controller = controller or ConcurrencyController()
        self.library = MediaLibrary(self.repo)
        self.indexers = {
            IMAGE: image_indexer(self.stores[IMAGE], self.library.resolve, self.embedder, self.controller),
            VIDEO: video_indexer(self.stores[VIDEO], self.library.resolve, self.embedder, self.controller),
        }
        self.organiser = Organiser(self.repo, self.embedder, self.controller)
        self.tagging = TaggingService(self.repo, self.embedder, self.stores[IMAGE], self.controller)
        self.fewshot = FewShotService(self.repo, self.embedder)
        self.search_engine = SearchEngine(self.repo, self.embedder, self.stores)

        self._job_lock = threading.Lock()
        self._job: Job | None = None
        self._listeners: list[ProgressListener] = []

    # -- paths --

    @property
    def _db_path(self) -> Path:
        return self._cache_dir / "smartscan.db"

    @property
    def _embeddings_dir(self) -> Path:
        d = self._cache_dir / "embeddings"
        d.mkdir(parents=True, exist_ok=True)
        return d

    @property
    def _backup_dir(self) -> Path:
        return self._cache_dir / "backups"

    # -- lifecycle --

    def load_model(self) -> None:
        self.embedder.initialize()

    def close(self) -> None:
        self.embedder.close()
        for store in self.stores.values():
            store.close()
        self.repo.close()

    # -- jobs --

    def add_progress_listener(self, fn: ProgressListener) -> None:
        self._listeners.append(fn)

    def _new_phase(self, job: Job, phase: str) -> RunState:
        if job.state.channel is not None:
            job.state.channel.close()
        channel = ProgressChannel()
        for fn in self._listeners:
            channel.subscribe(lambda update, _fn=fn: _fn(phase, update))
        job.phase = phase
        job.state = RunState(channel)
        return job.state

    def _run_job(self, name: str, body: Callable[[Job], dict]) -> dict:
        if not self._job_lock.acquire(blocking=False):
            raise JobBusy(f"{self._job.name if self._job else 'A job'} is already running")
        job = Job(name)
        self._job = job
        try:
            try:
                result = body(job)
            except Exception as exc:
                job.state.fail(exc)
                raise
            if job.cancelled:
                job.state.cancel()
            elif not job.state.status.terminal:
                job.state.complete(RunSummary(0, 0, time.time() - job.started_at))
            result["status"] = job.status.value
            result["elapsed"] = round(time.time() - job.started_at, 3)
            return result
        finally:
            if job.state.channel is not None:
                job.state.channel.close()
            job.active = False
            self._job_lock.release()

    def cancel(self) -> bool:
        """Ask the running job to stop. False when no job is running."""
        job = self._job
        if job is None or not job.active:
            return False
        job.cancel_event.set()
        logger.info("Cancelling %s", job.name)
        return True

    def job_status(self) -> dict | None:
        return self._job.to_dict() if self._job else None

    # -- folders --

    def add_folder(self, path: str) -> str:
        return self.library.add_folder(path)

    def remove_folder(self, path: str) -> str:
        return self.library.remove_folder(path)

    def list_folders(self) -> list[str]:
        return self.library.list_folders()

    # -- indexing --

    def index(self, kinds: tuple[str, ...] = (IMAGE, VIDEO)) -> dict:
        """Scan the configured folders and index everything not yet indexed."""

        def _body(job: Job) -> dict:
            gone = self.library.prune_missing()
            if gone:
                for store in self.stores.values():
                    store.delete_ids(gone)
            ids = self.library.scan()
            counts = {}
            for kind in kinds:
                if job.cancel_event.is_set():
                    job.cancelled = True
                    break
                state = self._new_phase(job, kind)
                counts[kind] = self.indexers[kind].run(
                    ids[kind], state=state, cancel_event=job.cancel_event
                )
            return {"new": counts, "total": {k: len(ids[k]) for k in kinds}}

        return self._run_job("index", _body)

    # -- organising --

    def organise(self, source: str) -> dict:
        """Sort the images directly inside source into the prototype folders."""
        folder = Path(source).resolve()
        if not folder.is_dir():
            raise ValueError(f"Not a directory: {folder}")
        paths = [p for p in scan_folder(folder)[IMAGE] if p.parent == folder]

        def _body(job: Job) -> dict:
            state = self._new_phase(job, "organise")
            result = self.organiser.organise(paths, state=state, cancel_event=job.cancel_event)
            return asdict(result)

        return self._run_job("organise", _body)

    def undo(self, scan_id: int | None = None) -> dict:
        """Move the files of a finished scan back. Defaults to the latest scan."""

        def _body(job: Job) -> dict:
            target = scan_id
            if target is None:
                scans = self.repo.list_scans()
                if not scans:
                    return {"scan_id": None, "restored": 0}
                target = scans[0].id
            if not self.repo.has_move_history(target):
                return {"scan_id": target, "restored": 0}
            return {"scan_id": target, "restored": self.organiser.undo(target)}

        return self._run_job("undo", _body)

    def scans(self) -> list[dict]:
        return [asdict(s) for s in self.repo.list_scans()]

    def prototypes(self) -> list[dict]:
        return [
            {"category_id": p.category_id, "timestamp": p.timestamp}
            for p in self.repo.list_prototypes()
        ]

    def build_prototype(self, folder: str) -> dict:
        p = self.organiser.build_prototype(folder)
        return {"category_id": p.category_id, "timestamp": p.timestamp}

    def remove_prototype(self, folder: str) -> bool:
        return self.organiser.remove_prototype(folder)

    # -- tagging --

    def retag(self) -> dict:
        def _body(job: Job) -> dict:
            state = self._new_phase(job, "retag")
            stats = self.tagging.retag_all(state=state, cancel_event=job.cancel_event)
            return stats.to_dict()

        return self._run_job("retag", _body)

    def tags(self) -> list[dict]:
        counts = self.repo.tag_counts()
        return [
            {
                "name": t.name,
                "description": t.description,
                "threshold": t.threshold,
                "color": t.color,
                "active": t.active,
                "media_count": counts.get(t.name, 0),
            }
            for t in self.tagging.list_tags()
        ]

    # -- few-shot prototypes --

    @staticmethod
    def _fewshot_dict(p: FewShotPrototype | None) -> dict | None:
        if p is None:
            return None
        return {
            "id": p.id,
            "name": p.name,
            "sample_count": p.sample_count,
            "color": p.color,
            "description": p.description,
            "category": p.category,
            "updated_at": p.updated_at,
        }

    def fewshot_prototypes(self) -> list[dict]:
        return [self._fewshot_dict(p) for p in self.fewshot.list_prototypes()]

    def create_fewshot(
        self,
        name: str,
        samples: list,
        color: int | None = None,
        description: str | None = None,
        category: str | None = None,
    ) -> dict:
        """samples are paths or {"path", "crop"} dicts."""
        kwargs = {"color": color} if color is not None else {}
        p = self.fewshot.create(
            name, parse_samples(samples), description=description, category=category, **kwargs
        )
        return self._fewshot_dict(p)

    def add_fewshot_sample(self, prototype_id: int, path: str, crop: dict | None = None) -> dict:
        rect = CropRect.from_dict(crop) if crop else None
        return self._fewshot_dict(self.fewshot.add_sample(prototype_id, path, rect))

    def remove_fewshot_sample(self, prototype_id: int, sample_id: int) -> dict | None:
        return self._fewshot_dict(self.fewshot.remove_sample(prototype_id, sample_id))

    def update_fewshot(self, prototype_id: int, **fields) -> dict:
        return self._fewshot_dict(self.fewshot.update(prototype_id, **fields))

    def delete_fewshot(self, prototype_id: int) -> bool:
        return self.fewshot.delete(prototype_id)

    def fewshot_samples(self, prototype_id: int) -> list[dict]:
        return [
            {"id": s.id, "path": s.path, "crop": s.crop, "added_at": s.added_at}
            for s in self.fewshot.samples(prototype_id)
        ]

    # -- search --

    def search(
        self,
        query: str,
        top_k: int = DEFAULT_TOP_K,
        threshold: float = SEARCH_THRESHOLD,
        kind: str = IMAGE,
        tag: str | None = None,
        prototype: str | None = None,
    ) -> list[dict]:
        results = self.search_engine.search(
            query, top_k, threshold, kind=kind, tag=tag, prototype=prototype
        )
        return [asdict(r) for r in results]

    def find_similar(
        self,
        media_id: int | None = None,
        path: str | None = None,
        top_k: int = DEFAULT_TOP_K,
        threshold: float = SEARCH_THRESHOLD,
        tag: str | None = None,
    ) -> list[dict]:
        if media_id is None and path is not None:
            media_id = self.repo.media_id_for_path(str(Path(path).resolve()))
        if media_id is None:
            return []
        results = self.search_engine.find_similar(media_id, top_k, threshold, tag=tag)
        return [asdict(r) for r in results]

    # -- backup --

    def backup(self, dest: str | None = None) -> dict:
        target = Path(dest) if dest else self._backup_dir / f"smart-scan-{int(time.time())}.zip"
        return self._run_job(
            "backup",
            lambda job: {"path": str(export_backup(target, self.repo, self.stores, self.embedder.name))},
        )

    def restore(self, src: str) -> dict:
        return self._run_job("restore", lambda job: restore_backup(Path(src), self.repo, self.stores))

    # -- status --

    def status(self) -> dict:
        job = self.job_status()
        return {
            "model": self.embedder.name,
            "dimension": self.embedder.dimension,
            "model_loaded": self.embedder.initialized,
            "folders": self.list_folders(),
            "media": {k: len(self.library.ids(k)) for k in (IMAGE, VIDEO)},
            "embeddings": {k: len(s.existing_ids()) for k, s in self.stores.items()},
            "prototypes": len(self.repo.list_prototypes()),
            "fewshot_prototypes": len(self.repo.list_fewshot_prototypes()),
            "tags": len(self.repo.list_tags()),
            "last_destinations": self.organiser.last_destinations(),
            "job": job,
            "busy": job is not None and job["active"],
        }
