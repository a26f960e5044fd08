import os
from pathlib import Path

CACHE_DIR = Path(
    os.environ.get("SMART_SCAN_CACHE_DIR", Path.home() / ".cache" / "smart-scan")
).resolve()

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".heif", ".heic"}
VIDEO_EXTENSIONS = {".mp4", ".mov", ".m4v", ".mkv", ".webm", ".3gp"}

DEFAULT_MODEL = "clip-vit-b-32"

# -- indexing --

CHUNK_SIZE = 10
VIDEO_FRAME_COUNT = 10

# -- concurrency --

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 4
MEMORY_RESERVE_BYTES = 800 * 1024 * 1024  # left untouched for the rest of the system
ITEM_MEMORY_BYTES = 200 * 1024 * 1024  # decoded bitmap + tensor buffers per in-flight item

# -- classification / tagging / search --

ORGANISER_MATCH_THRESHOLD = 0.4
ORGANISER_MIN_MARGIN = 0.05
PROTOTYPE_SAMPLE_LIMIT = 30
DEFAULT_TAG_THRESHOLD = 0.30
DEFAULT_TAG_COLOR = 0xFF2196F3
SEARCH_THRESHOLD = 0.2
DEFAULT_TOP_K = 20
TOP_TAGS_REPORTED = 5

# -- service daemon --

SERVICE_PORT = int(os.environ.get("SMART_SCAN_PORT", "7830"))
SERVICE_HOST = "127.0.0.1"
SERVICE_PID_FILE = Path("/tmp/mcp-tools/smart-scan.pid")
SERVICE_STARTUP_TIMEOUT = 60  # seconds to wait for health check
NICE_VALUE = 15
