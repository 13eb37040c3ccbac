import os


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


# --- Gemini ---
DEFAULT_MODEL = os.environ.get("ROBIN_DEFAULT_MODEL", "gemini-2.5-flash")
ANALYSIS_MODEL = "gemini-2.5-flash"
ANALYSIS_MODEL_STRONG = "gemini-2.5-pro"
IMAGE_MODEL = "gemini-2.0-flash-preview-image-generation"
FACTS_MODEL = "gemini-2.5-flash"

# Each endpoint may use its own key; all of them fall back to GEMINI_API_KEY.
API_KEY_ENV_BY_MODE = {
    "build": "GEMINI_API_KEY_BUILD",
    "ask": "GEMINI_API_KEY_ASK",
    "playground": "GEMINI_API_KEY_PLAYGROUND",
    "facts": "GEMINI_API_KEY_FACTS",
}
API_KEY_FILE = os.path.join(os.path.dirname(__file__), "private_data", "Gemini_API_Key.txt")

# --- Supabase ---
SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_ANON_KEY = os.environ.get("SUPABASE_ANON_KEY", "")
SUPABASE_SERVICE_ROLE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")

UPLOADS_BUCKET = "user-uploads"
UPLOADS_FOLDER = "playground/uploads"
GENERATED_BUCKET = "user-files"
GENERATED_FOLDER = "playground/images"
SIGNED_URL_TTL_SECONDS = 3600

# --- Orchestration loop ---
MAX_TOOL_ROUNDS = _env_int("ROBIN_MAX_TOOL_ROUNDS", 25)
MODEL_CALL_TIMEOUT_SECONDS = _env_float("ROBIN_MODEL_TIMEOUT_SECONDS", 120.0)
HISTORY_WINDOW = _env_int("ROBIN_HISTORY_WINDOW", 4)
ARTIFACT_MANIFEST_LIMIT = 20

# --- Streaming ---
PING_INTERVAL_SECONDS = 1.0
SYNTHETIC_CHUNK_SIZE = 64

# --- Tools ---
SEARCH_DEFAULT_MAX_PER_FILE = 20
SEARCH_MAX_PER_FILE_CEILING = 200
MAX_LINT_ISSUES = 50
MAX_ANALYZE_BYTES = 60_000
FILE_READY_TIMEOUT_SECONDS = 60.0
FILE_READY_POLL_SECONDS = 2.0
FETCH_TIMEOUT_SECONDS = 20.0
MAX_CARD_LIST_ITEMS = 12

# --- Ambient ---
DEBUG_MODE = _env_flag("ROBIN_DEBUG")
LOG_LEVEL = os.environ.get("ROBIN_LOG_LEVEL", "INFO").upper()
AUDIT_LOG_PATH = os.environ.get(
    "AUDIT_LOG_PATH", os.path.join(os.path.dirname(__file__), ".sandbox", "audit_trail.csv")
)

# Server configuration
SERVER_PORT = _env_int("SERVER_PORT", 5001)
DEBUGPY_ENABLED = _env_flag("ROBIN_DEBUGPY")
DEBUGPY_PORT = 5678
