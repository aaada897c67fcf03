import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parents[1]
load_dotenv(BASE_DIR / ".env")


def env_bool(name: str, default: bool = False) -> bool:
    return str(os.getenv(name, str(default))).lower() in {"1", "true", "yes", "on"}


# Upload backend: local / gcp / azure / supabase
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local")

LOCAL_PHOTOS_DIR = BASE_DIR / "temp" / "photos"
LOCAL_OUTPUT_DIR = BASE_DIR / "data" / "output"
LOCAL_ORDERS_FILE = BASE_DIR / "data" / "orders.json"

# Served prefix for the local backend; file:// URIs when unset
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL")

GCS_BUCKET = os.getenv("GCS_BUCKET")
AZURE_CONN_STR = os.getenv("AZURE_STORAGE_CONNECTION_STRING")
AZURE_CONTAINER = os.getenv("AZURE_CONTAINER")
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY")
SUPABASE_BUCKET = os.getenv("SUPABASE_BUCKET", "reflect")

# Secondary record system mirrored after each order
MIRROR_URL = os.getenv("MIRROR_URL")
MIRROR_API_KEY = os.getenv("MIRROR_API_KEY", SUPABASE_ANON_KEY)
MIRROR_TIMEOUT = float(os.getenv("MIRROR_TIMEOUT", "10"))

# Worker pool
NUM_WORKERS = int(os.getenv("NUM_WORKERS", "4"))
CHECK_INTERVAL = float(os.getenv("CHECK_INTERVAL", "5"))            # seconds
MONITOR_INTERVAL = float(os.getenv("MONITOR_INTERVAL", str(2 * 60)))  # seconds
PROCESSING_TIMEOUT = float(os.getenv("PROCESSING_TIMEOUT", str(5 * 60)))  # seconds

ENGINE_ENABLED = env_bool("ENGINE_ENABLED", True)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "3000"))

# Ensure dirs exist (for local mode)
LOCAL_PHOTOS_DIR.mkdir(parents=True, exist_ok=True)
LOCAL_OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
LOCAL_ORDERS_FILE.parent.mkdir(parents=True, exist_ok=True)
if not LOCAL_ORDERS_FILE.exists():
    LOCAL_ORDERS_FILE.write_text("[]")
