"""HTTP service daemon for smart-scan.

Owns the Engine (repository, embedding stores, loaded encoder) and runs
indexing, organising, and tagging jobs. MCP servers connect as thin
clients. Only one instance should run at a time.

    uv run python service.py

Startup order:
    1. Write PID, start uvicorn  -- HTTP is up immediately
    2. Background thread: open the engine and load the encoder
    3. Background thread: seed preset tags on first start
    Handlers return {"loading": true} until the engine is ready.
"""

import asyncio
import logging
import os
import signal
import sys
import threading
from pathlib import Path

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.routing import Route

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
from activity import ActivityReporter

from config import CACHE_DIR, DEFAULT_TOP_K, NICE_VALUE, SERVICE_HOST, SERVICE_PID_FILE, SERVICE_PORT
from engine import Engine, JobBusy
from errors import DimensionMismatch, ScanError
from pipeline import ProgressUpdate

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

reporter = ActivityReporter("smart-scan")
_engine: Engine | None = None
_engine_lock = threading.Lock()
_engine_ready = threading.Event()


def _report_progress(phase: str, update: ProgressUpdate) -> None:
    reporter.set_progress(update.current, update.total, phase, extras=update.extras)


def _create_engine() -> Engine:
    """Create the Engine and load its encoder (called from background thread)."""
    global _engine
    with _engine_lock:
        if _engine is None:
            engine = Engine(CACHE_DIR)
            engine.add_progress_listener(_report_progress)
            engine.load_model()
            _engine = engine
    _engine_ready.set()
    return _engine


def get_engine() -> Engine:
    """Return the Engine, blocking until it is loaded."""
    _engine_ready.wait()
    return _engine  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


_LOADING = JSONResponse({"loading": True}, status_code=503)


async def _run_job(operation: str, fn, *args, **kwargs) -> JSONResponse:
    with reporter.report(operation) as r:
        result = await asyncio.to_thread(fn, *args, **kwargs)
        r.set_outcome(result.get("status", "complete"))
    return JSONResponse(result)


async def health(request: Request) -> JSONResponse:
    return JSONResponse({"ok": True, "ready": _engine_ready.is_set()})


async def status(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    data = await asyncio.to_thread(get_engine().status)
    if reporter._current_operation:
        data["activity"] = {
            "operation": reporter._current_operation,
            "progress": reporter._current_progress,
        }
    return JSONResponse(data)


async def add_folder(request: Request) -> PlainTextResponse:
    if not _engine_ready.is_set():
        return PlainTextResponse("Service is loading, try again shortly.", status_code=503)
    body = await request.json()
    return PlainTextResponse(await asyncio.to_thread(get_engine().add_folder, body["path"]))


async def remove_folder(request: Request) -> PlainTextResponse:
    if not _engine_ready.is_set():
        return PlainTextResponse("Service is loading, try again shortly.", status_code=503)
    body = await request.json()
    return PlainTextResponse(await asyncio.to_thread(get_engine().remove_folder, body["path"]))


async def list_folders(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    return JSONResponse(await asyncio.to_thread(get_engine().list_folders))


async def index(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    body = await request.json()
    kinds = tuple(body.get("kinds") or ("image", "video"))
    return await _run_job("Indexing media", get_engine().index, kinds)


async def organise(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    body = await request.json()
    return await _run_job("Organising images", get_engine().organise, body["source"])


async def undo(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    body = await request.json()
    return await _run_job("Undoing moves", get_engine().undo, body.get("scan_id"))


async def scans(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    return JSONResponse(await asyncio.to_thread(get_engine().scans))


async def retag(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    return await _run_job("Re-tagging images", get_engine().retag)


async def search(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    body = await request.json()
    engine = get_engine()
    kwargs = {
        "top_k": body.get("top_k", DEFAULT_TOP_K),
        "kind": body.get("kind", "image"),
        "tag": body.get("tag"),
        "prototype": body.get("prototype"),
    }
    if body.get("threshold") is not None:
        kwargs["threshold"] = body["threshold"]
    with reporter.report("Searching media"):
        results = await asyncio.to_thread(engine.search, body.get("query", ""), **kwargs)
    return JSONResponse(results)


async def find_similar(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    body = await request.json()
    kwargs = {"top_k": body.get("top_k", DEFAULT_TOP_K), "tag": body.get("tag")}
    if body.get("threshold") is not None:
        kwargs["threshold"] = body["threshold"]
    results = await asyncio.to_thread(
        get_engine().find_similar, body.get("media_id"), body.get("path"), **kwargs
    )
    return JSONResponse(results)


async def list_tags(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    return JSONResponse(await asyncio.to_thread(get_engine().tags))


async def create_tag(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    body = await request.json()
    kwargs = {k: body[k] for k in ("threshold", "color", "active") if k in body}
    tag = await asyncio.to_thread(
        get_engine().tagging.create_tag, body["name"], body["description"], **kwargs
    )
    return JSONResponse({"name": tag.name, "threshold": tag.threshold, "active": tag.active})


async def delete_tag(request: Request) -> PlainTextResponse:
    if not _engine_ready.is_set():
        return PlainTextResponse("Service is loading, try again shortly.", status_code=503)
    body = await request.json()
    name = body["name"]
    if await asyncio.to_thread(get_engine().tagging.delete_tag, name):
        return PlainTextResponse(f"Deleted tag: {name}")
    return PlainTextResponse(f"No such tag: {name}", status_code=404)


async def tag_media(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    body = await request.json()
    engine = get_engine()
    if body.get("remove"):
        removed = await asyncio.to_thread(engine.tagging.remove_tag, body["media_id"], body["tag"])
        return JSONResponse({"removed": removed})
    a = await asyncio.to_thread(engine.tagging.assign_user_tag, body["media_id"], body["tag"])
    return JSONResponse({"media_id": a.media_id, "tag": a.tag_name, "confidence": a.confidence})


async def media_tags(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    media_id = int(request.query_params["media_id"])
    assignments = await asyncio.to_thread(get_engine().tagging.tags_for_media, media_id)
    return JSONResponse([
        {"tag": a.tag_name, "confidence": a.confidence, "user": a.is_user_assigned}
        for a in assignments
    ])


async def prototypes(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    return JSONResponse(await asyncio.to_thread(get_engine().prototypes))


async def build_prototype(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    body = await request.json()
    with reporter.report("Building prototype"):
        result = await asyncio.to_thread(get_engine().build_prototype, body["folder"])
    return JSONResponse(result)


async def remove_prototype(request: Request) -> PlainTextResponse:
    if not _engine_ready.is_set():
        return PlainTextResponse("Service is loading, try again shortly.", status_code=503)
    body = await request.json()
    if await asyncio.to_thread(get_engine().remove_prototype, body["folder"]):
        return PlainTextResponse(f"Removed destination: {body['folder']}")
    return PlainTextResponse(f"Not a destination: {body['folder']}", status_code=404)


async def fewshot_prototypes(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    return JSONResponse(await asyncio.to_thread(get_engine().fewshot_prototypes))


async def create_fewshot(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    body = await request.json()
    kwargs = {k: body.get(k) for k in ("color", "description", "category")}
    with reporter.report("Building few-shot prototype"):
        result = await asyncio.to_thread(
            get_engine().create_fewshot, body["name"], body["samples"], **kwargs
        )
    return JSONResponse(result)


async def fewshot_add_sample(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    body = await request.json()
    result = await asyncio.to_thread(
        get_engine().add_fewshot_sample, body["prototype_id"], body["path"], body.get("crop")
    )
    return JSONResponse(result)


async def fewshot_remove_sample(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    body = await request.json()
    result = await asyncio.to_thread(
        get_engine().remove_fewshot_sample, body["prototype_id"], body["sample_id"]
    )
    return JSONResponse({"prototype": result, "deleted": result is None})


async def fewshot_samples(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    prototype_id = int(request.query_params["prototype_id"])
    return JSONResponse(await asyncio.to_thread(get_engine().fewshot_samples, prototype_id))


async def update_fewshot(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    body = await request.json()
    fields = {k: body[k] for k in ("name", "color", "description", "category") if k in body}
    result = await asyncio.to_thread(get_engine().update_fewshot, body["prototype_id"], **fields)
    return JSONResponse(result)


async def delete_fewshot(request: Request) -> PlainTextResponse:
    if not _engine_ready.is_set():
        return PlainTextResponse("Service is loading, try again shortly.", status_code=503)
    body = await request.json()
    if await asyncio.to_thread(get_engine().delete_fewshot, body["prototype_id"]):
        return PlainTextResponse(f"Deleted few-shot prototype {body['prototype_id']}")
    return PlainTextResponse(f"No such few-shot prototype: {body['prototype_id']}", status_code=404)


async def backup(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    body = await request.json()
    return await _run_job("Backing up", get_engine().backup, body.get("path"))


async def restore(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    body = await request.json()
    return await _run_job("Restoring backup", get_engine().restore, body["path"])


async def cancel(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    return JSONResponse({"cancelled": get_engine().cancel()})


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


async def _busy(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse({"error": str(exc)}, status_code=409)


async def _bad_request(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse({"error": str(exc)}, status_code=400)


async def _not_found(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse({"error": f"Not found: {exc}"}, status_code=404)


async def _scan_error(request: Request, exc: Exception) -> JSONResponse:
    logger.warning("Request failed: %s", exc)
    status_code = 409 if isinstance(exc, DimensionMismatch) else 500
    return JSONResponse({"error": str(exc), "kind": type(exc).__name__}, status_code=status_code)


routes = [
    Route("/health", health, methods=["GET"]),
    Route("/status", status, methods=["GET"]),
    Route("/add-folder", add_folder, methods=["POST"]),
    Route("/remove-folder", remove_folder, methods=["POST"]),
    Route("/folders", list_folders, methods=["GET"]),
    Route("/index", index, methods=["POST"]),
    Route("/organise", organise, methods=["POST"]),
    Route("/undo", undo, methods=["POST"]),
    Route("/scans", scans, methods=["GET"]),
    Route("/retag", retag, methods=["POST"]),
    Route("/search", search, methods=["POST"]),
    Route("/find-similar", find_similar, methods=["POST"]),
    Route("/tags", list_tags, methods=["GET"]),
    Route("/create-tag", create_tag, methods=["POST"]),
    Route("/delete-tag", delete_tag, methods=["POST"]),
    Route("/tag-media", tag_media, methods=["POST"]),
    Route("/media-tags", media_tags, methods=["GET"]),
    Route("/prototypes", prototypes, methods=["GET"]),
    Route("/build-prototype", build_prototype, methods=["POST"]),
    Route("/remove-prototype", remove_prototype, methods=["POST"]),
    Route("/fewshot", fewshot_prototypes, methods=["GET"]),
    Route("/create-fewshot", create_fewshot, methods=["POST"]),
    Route("/fewshot-add-sample", fewshot_add_sample, methods=["POST"]),
    Route("/fewshot-remove-sample", fewshot_remove_sample, methods=["POST"]),
    Route("/fewshot-samples", fewshot_samples, methods=["GET"]),
    Route("/update-fewshot", update_fewshot, methods=["POST"]),
    Route("/delete-fewshot", delete_fewshot, methods=["POST"]),
    Route("/backup", backup, methods=["POST"]),
    Route("/restore", restore, methods=["POST"]),
    Route("/cancel", cancel, methods=["POST"]),
]

app = Starlette(
    routes=routes,
    exception_handlers={
        JobBusy: _busy,
        ValueError: _bad_request,
        KeyError: _not_found,
        ScanError: _scan_error,
    },
)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def _set_process_priority() -> None:
    """Set low process priority via nice. Applied before uvicorn starts."""
    try:
        os.nice(NICE_VALUE)
        logger.info("Set nice value to %d", NICE_VALUE)
    except OSError:
        logger.debug("Could not set nice value")


def _write_pid() -> None:
    SERVICE_PID_FILE.parent.mkdir(parents=True, exist_ok=True)
    SERVICE_PID_FILE.write_text(str(os.getpid()))
    logger.info("PID file: %s", SERVICE_PID_FILE)


def _cleanup_pid(*_args) -> None:
    SERVICE_PID_FILE.unlink(missing_ok=True)
    if _engine is not None:
        _engine.close()
    reporter.cleanup()


def _background_startup() -> None:
    """Open the engine and load the encoder without blocking the event loop.

    Uvicorn is already listening. Handlers return 503 until _engine_ready is set.
    """
    def _load():
        try:
            engine = _create_engine()
            status = engine.status()
            logger.info(
                "Engine ready: %d images, %d videos indexed",
                status["embeddings"]["image"], status["embeddings"]["video"],
            )
            added = engine.tagging.install_presets()
            if added:
                logger.info("Seeded %d preset tags", added)
        except Exception:
            logger.warning("Background startup failed", exc_info=True)

    threading.Thread(target=_load, name="background-startup", daemon=True).start()


if __name__ == "__main__":
    import atexit

    import uvicorn

    _write_pid()
    atexit.register(_cleanup_pid)
    signal.signal(signal.SIGTERM, lambda *_: sys.exit(0))

    _set_process_priority()

    # Engine + encoder load in a background thread.
    # HTTP is up immediately; handlers return 503 until ready.
    _background_startup()

    logger.info("Starting smart-scan service on %s:%d", SERVICE_HOST, SERVICE_PORT)
    uvicorn.run(app, host=SERVICE_HOST, port=SERVICE_PORT, log_level="warning")
