import os
from pathlib import Path

BASE_DIR = Path(__file__).parent
DATA_DIR = Path(os.getenv("GRAPHRUN_DATA_DIR", BASE_DIR / "data"))
MEDIA_DIR = Path(os.getenv("GRAPHRUN_MEDIA_DIR", DATA_DIR / "media"))

DATABASE_PATH = DATA_DIR / "run_history.duckdb"

TASK_BACKEND_URL = os.getenv("GRAPHRUN_TASK_BACKEND_URL", "http://localhost:8080")
HTTP_REQUEST_TIMEOUT = 30

MAX_CONCURRENCY = int(os.getenv("GRAPHRUN_MAX_CONCURRENCY", "4"))
POLL_INTERVAL = float(os.getenv("GRAPHRUN_POLL_INTERVAL", "1.0"))
# Finished runs kept in memory for status lookups; older ones are evicted
MAX_RETAINED_RUNS = int(os.getenv("GRAPHRUN_MAX_RETAINED_RUNS", "100"))

DEFAULT_LLM_MODEL = "gemini-2.5-flash"
SUPPORTED_LLM_MODELS = {'gemini-2.5-flash', 'gemini-1.5-flash', 'gemini-1.5-pro', 'gemini-1.0-pro'}

# Seconds; inference is short, media transforms are longer
TASK_TIMEOUTS = {
    'inference': 120,
    'media.store': 120,
    'media.probe': 60,
    'media.crop': 180,
    'media.extract_frame': 300,
}
DEFAULT_TASK_TIMEOUT = 120

# Upper bound on status polls per attempt, independent of the timeout
MAX_POLLS = {
    'inference': 120,
    'media.crop': 60,
    'media.extract_frame': 90,
}
DEFAULT_MAX_POLLS = 90

RETRY_POLICIES = {
    'inference': {'max_attempts': 2, 'base_delay': 1.0, 'max_delay': 5.0, 'backoff_factor': 2.0},
    'media.store': {'max_attempts': 3, 'base_delay': 1.0, 'max_delay': 5.0, 'backoff_factor': 2.0},
    'media.probe': {'max_attempts': 3, 'base_delay': 1.0, 'max_delay': 5.0, 'backoff_factor': 2.0},
    'media.crop': {'max_attempts': 3, 'base_delay': 1.0, 'max_delay': 5.0, 'backoff_factor': 2.0},
    'media.extract_frame': {'max_attempts': 3, 'base_delay': 1.0, 'max_delay': 5.0, 'backoff_factor': 2.0},
}
DEFAULT_RETRY_POLICY = {'max_attempts': 1, 'base_delay': 1.0, 'max_delay': 5.0, 'backoff_factor': 2.0}

SUPPORTED_IMAGE_FORMATS = {'JPEG', 'PNG', 'WEBP', 'GIF', 'BMP'}
MAX_DOWNLOAD_SIZE = 200 * 1024 * 1024


def load_inference_credentials() -> list:
    """Ordered, de-duplicated inference credentials from the environment."""
    raw = os.getenv("GRAPHRUN_INFERENCE_KEYS")
    if raw:
        keys = [key.strip() for key in raw.split(',')]
    else:
        keys = [
            os.getenv("GOOGLE_GEMINI_API_KEY", ""),
            os.getenv("GOOGLE_GEMINI_API_KEY_BACKUP", ""),
        ]
    return list(dict.fromkeys(key for key in keys if key))


DATA_DIR.mkdir(parents=True, exist_ok=True)
