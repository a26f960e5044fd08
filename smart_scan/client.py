"""HTTP client for the smart-scan service daemon.

Auto-launches the service if it's not running.
"""

import json
import logging
import subprocess
import sys
import time
from pathlib import Path

import httpx

from config import (
    DEFAULT_TOP_K,
    SERVICE_HOST,
    SERVICE_PORT,
    SERVICE_STARTUP_TIMEOUT,
)

logger = logging.getLogger(__name__)


class ServiceError(RuntimeError):
    """The service answered with an error status."""


class ServiceClient:
    def __init__(self, base_url: str | None = None, http: httpx.Client | None = None):
        self._base_url = base_url or f"http://{SERVICE_HOST}:{SERVICE_PORT}"
        self._http = http or httpx.Client(base_url=self._base_url, timeout=600)

    def _is_alive(self) -> bool:
        try:
            resp = self._http.get("/health", timeout=2)
            return resp.status_code == 200
        except (httpx.ConnectError, httpx.TimeoutException):
            return False

    def _ensure_service(self) -> None:
        if self._is_alive():
            return

        logger.info("Service not running, launching...")
        service_script = Path(__file__).resolve().parent / "service.py"
        subprocess.Popen(
            [sys.executable, str(service_script)],
            cwd=str(service_script.parent),
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )

        deadline = time.time() + SERVICE_STARTUP_TIMEOUT
        while time.time() < deadline:
            time.sleep(0.5)
            if self._is_alive():
                logger.info("Service is ready")
                return

        raise RuntimeError(
            f"Service did not start within {SERVICE_STARTUP_TIMEOUT}s"
        )

    @staticmethod
    def _check(resp: httpx.Response) -> httpx.Response:
        if resp.status_code == 503:
            raise ServiceError("Service is still loading, try again shortly.")
        if resp.status_code >= 400:
            try:
                detail = resp.json().get("error", resp.text)
            except ValueError:
                detail = resp.text
            raise ServiceError(detail)
        return resp

    def _post(self, path: str, json: dict | None = None) -> httpx.Response:
        self._ensure_service()
        return self._check(self._http.post(path, json=json or {}))

    def _get(self, path: str, params: dict | None = None) -> httpx.Response:
        self._ensure_service()
        return self._check(self._http.get(path, params=params))

    # -- tool methods --

    def search(
        self,
        query: str = "",
        top_k: int = DEFAULT_TOP_K,
        kind: str = "image",
        tag: str | None = None,
        prototype: str | None = None,
    ) -> str:
        results = self._post(
            "/search",
            {"query": query, "top_k": top_k, "kind": kind, "tag": tag, "prototype": prototype},
        ).json()
        if not results:
            return "No matching media found."
        return json.dumps(results, indent=2)

    def find_similar(self, path: str, top_k: int = DEFAULT_TOP_K) -> str:
        results = self._post("/find-similar", {"path": path, "top_k": top_k}).json()
        if not results:
            return "No similar media found."
        return json.dumps(results, indent=2)

    def index(self, kinds: list[str] | None = None) -> dict:
        return self._post("/index", {"kinds": kinds}).json()

    def organise(self, source: str) -> dict:
        return self._post("/organise", {"source": source}).json()

    def undo(self, scan_id: int | None = None) -> dict:
        return self._post("/undo", {"scan_id": scan_id}).json()

    def scans(self) -> list[dict]:
        return self._get("/scans").json()

    def retag(self) -> dict:
        return self._post("/retag").json()

    def cancel(self) -> bool:
        return self._post("/cancel").json()["cancelled"]

    def add_folder(self, path: str) -> str:
        return self._post("/add-folder", {"path": path}).text

    def remove_folder(self, path: str) -> str:
        return self._post("/remove-folder", {"path": path}).text

    def list_folders(self) -> list[str]:
        return self._get("/folders").json()

    # -- tags --

    def list_tags(self) -> list[dict]:
        return self._get("/tags").json()

    def create_tag(self, name: str, description: str, threshold: float | None = None) -> dict:
        body: dict = {"name": name, "description": description}
        if threshold is not None:
            body["threshold"] = threshold
        return self._post("/create-tag", body).json()

    def delete_tag(self, name: str) -> str:
        try:
            return self._post("/delete-tag", {"name": name}).text
        except ServiceError as exc:
            return str(exc)

    def tag_media(self, media_id: int, tag: str, remove: bool = False) -> dict:
        return self._post("/tag-media", {"media_id": media_id, "tag": tag, "remove": remove}).json()

    def media_tags(self, media_id: int) -> list[dict]:
        return self._get("/media-tags", {"media_id": str(media_id)}).json()

    # -- destinations --

    def list_prototypes(self) -> list[dict]:
        return self._get("/prototypes").json()

    def build_prototype(self, folder: str) -> dict:
        return self._post("/build-prototype", {"folder": folder}).json()

    def remove_prototype(self, folder: str) -> str:
        try:
            return self._post("/remove-prototype", {"folder": folder}).text
        except ServiceError as exc:
            return str(exc)

    # -- few-shot prototypes --

    def list_fewshot(self) -> list[dict]:
        return self._get("/fewshot").json()

    def create_fewshot(
        self,
        name: str,
        samples: list,
        description: str | None = None,
        category: str | None = None,
    ) -> dict:
        return self._post("/create-fewshot", {
            "name": name, "samples": samples, "description": description, "category": category,
        }).json()

    def fewshot_add_sample(self, prototype_id: int, path: str, crop: dict | None = None) -> dict:
        return self._post(
            "/fewshot-add-sample", {"prototype_id": prototype_id, "path": path, "crop": crop}
        ).json()

    def fewshot_remove_sample(self, prototype_id: int, sample_id: int) -> dict:
        return self._post(
            "/fewshot-remove-sample", {"prototype_id": prototype_id, "sample_id": sample_id}
        ).json()

    def fewshot_samples(self, prototype_id: int) -> list[dict]:
        return self._get("/fewshot-samples", {"prototype_id": str(prototype_id)}).json()

    def update_fewshot(self, prototype_id: int, **fields) -> dict:
        return self._post("/update-fewshot", {"prototype_id": prototype_id, **fields}).json()

    def delete_fewshot(self, prototype_id: int) -> str:
        try:
            return self._post("/delete-fewshot", {"prototype_id": prototype_id}).text
        except ServiceError as exc:
            return str(exc)

    # -- backup --

    def backup(self, path: str | None = None) -> dict:
        return self._post("/backup", {"path": path}).json()

    def restore(self, path: str) -> dict:
        return self._post("/restore", {"path": path}).json()

    def status(self) -> dict:
        return self._get("/status").json()

    def health(self) -> bool:
        return self._is_alive()
