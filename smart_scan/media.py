import logging
from pathlib import Path

from PIL import Image, ImageOps

from config import VIDEO_FRAME_COUNT
from errors import DecodeFailure

# Allow large panoramas; images are resized by the encoder's preprocess
Image.MAX_IMAGE_PIXELS = None

logger = logging.getLogger(__name__)

_heif_registered = False


def register_heif() -> None:
    """Register HEIF/HEIC opener with Pillow (idempotent)."""
    global _heif_registered
    if _heif_registered:
        return
    try:
        from pillow_heif import register_heif_opener

        register_heif_opener()
        _heif_registered = True
        logger.info("HEIF support registered")
    except ImportError:
        logger.warning("pillow-heif not installed; HEIF/HEIC files will be skipped")


def open_image(path: Path) -> Image.Image:
    """Decode an image file into an RGB PIL Image held fully in memory.

    Applies the EXIF orientation and closes the file handle immediately
    so parallel workers don't accumulate open fds.
    """
    register_heif()
    try:
        with Image.open(path) as img:
            img = ImageOps.exif_transpose(img)
            img.load()
            if img.mode != "RGB":
                img = img.convert("RGB")
            return img
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise DecodeFailure(f"Cannot decode image {path}: {exc}") from exc


def extract_frames(path: Path, frame_count: int = VIDEO_FRAME_COUNT) -> list[Image.Image]:
    """Sample frame_count evenly spaced frames from a video.

    Stops at the first frame the codec cannot deliver. Raises DecodeFailure
    when the video can't be opened or yields no frames at all.
    """
    import cv2

    if not Path(path).exists():
        raise DecodeFailure(f"Video not found: {path}")

    cap = cv2.VideoCapture(str(path))
    try:
        if not cap.isOpened():
            raise DecodeFailure(f"Cannot open video {path}")

        total_frames = int(cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0)
        if total_frames <= 0:
            raise DecodeFailure(f"Video has no duration: {path}")

        frames: list[Image.Image] = []
        for i in range(frame_count):
            cap.set(cv2.CAP_PROP_POS_FRAMES, (i * total_frames) // frame_count)
            ok, frame = cap.read()
            if not ok or frame is None:
                # Codec trouble; keep what we have
                break
            rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
            frames.append(Image.fromarray(rgb))
    finally:
        cap.release()

    if not frames:
        raise DecodeFailure(f"No frames could be extracted from {path}")
    return frames
