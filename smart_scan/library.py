import logging
import os
from pathlib import Path

from config import IMAGE_EXTENSIONS, VIDEO_EXTENSIONS
from errors import DecodeFailure
from repository import MediaItem, Repository

logger = logging.getLogger(__name__)

IMAGE = "image"
VIDEO = "video"

_FOLDERS_KEY = "folders"


def media_kind(path: Path) -> str | None:
    suffix = path.suffix.lower()
    if suffix in IMAGE_EXTENSIONS:
        return IMAGE
    if suffix in VIDEO_EXTENSIONS:
        return VIDEO
    return None


def scan_folder(folder: Path) -> dict[str, list[Path]]:
    """Walk folder for supported media. Hidden files and directories are skipped."""
    found: dict[str, list[Path]] = {IMAGE: [], VIDEO: []}
    for dirpath, dirnames, filenames in os.walk(folder):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        for fname in sorted(filenames):
            if fname.startswith("."):
                continue
            p = Path(dirpath) / fname
            kind = media_kind(p)
            if kind:
                found[kind].append(p)
    return found


class MediaLibrary:
    """Configured source folders and the id <-> path catalog."""

    def __init__(self, repo: Repository):
        self._repo = repo

    def list_folders(self) -> list[str]:
        return list(self._repo.get_setting(_FOLDERS_KEY, []))

    def add_folder(self, path: str) -> str:
        resolved = str(Path(path).resolve())
        if not Path(resolved).is_dir():
            return f"Not a directory: {resolved}"
        folders = self.list_folders()
        if resolved in folders:
            return f"Already configured: {resolved}"
        folders.append(resolved)
        self._repo.set_setting(_FOLDERS_KEY, folders)
        return f"Added folder: {resolved}"

    def remove_folder(self, path: str) -> str:
        resolved = str(Path(path).resolve())
        folders = self.list_folders()
        if resolved not in folders:
            return f"Not configured: {resolved}"
        folders.remove(resolved)
        self._repo.set_setting(_FOLDERS_KEY, folders)
        return f"Removed folder: {resolved}"

    def scan(self) -> dict[str, list[int]]:
        """Scan every configured folder and register what it holds.

        Returns {"image": [ids], "video": [ids]}. Folders that are not
        accessible are skipped.
        """
        ids: dict[str, list[int]] = {IMAGE: [], VIDEO: []}
        for folder in self.list_folders():
            folder_path = Path(folder)
            if not folder_path.is_dir():
                logger.warning("Folder not accessible (skipping): %s", folder)
                continue
            found = scan_folder(folder_path)
            for kind, paths in found.items():
                ids[kind].extend(self._repo.register_media([str(p) for p in paths], kind))
        logger.info("Scanned %d images, %d videos", len(ids[IMAGE]), len(ids[VIDEO]))
        return ids

    def register(self, paths: list[Path]) -> list[int]:
        """Register individual files. Unsupported files are ignored."""
        ids = []
        for p in paths:
            kind = media_kind(p)
            if kind is None:
                logger.warning("Unsupported media type: %s", p)
                continue
            ids.extend(self._repo.register_media([str(Path(p).resolve())], kind))
        return ids

    def get(self, media_id: int) -> MediaItem | None:
        return self._repo.get_media(media_id)

    def resolve(self, media_id: int) -> Path:
        item = self._repo.get_media(media_id)
        if item is None:
            raise DecodeFailure(f"Unknown media id {media_id}")
        path = Path(item.path)
        if not path.is_file():
            raise DecodeFailure(f"Media {media_id} missing on disk: {path}")
        return path

    def ids(self, kind: str) -> list[int]:
        return [m.id for m in self._repo.list_media(kind)]

    def prune_missing(self) -> list[int]:
        """Drop catalog rows whose file is gone. Returns the removed ids."""
        gone = [m.id for m in self._repo.list_media() if not Path(m.path).exists()]
        if gone:
            self._repo.remove_media(gone)
            logger.info("Pruned %d missing media", len(gone))
        return gone
