"""Session Inspector configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    value = os.getenv(name)
    if not value or not value.strip():
        return default
    return Path(value.strip()).expanduser()


# Package root (inspector/)
PACKAGE_ROOT = Path(__file__).resolve().parent
PROJECT_ROOT = PACKAGE_ROOT.parent

# Session corpus
SESSIONS_DIR = _env_path("INSPECTOR_SESSIONS_DIR", Path.home() / ".clawdbot" / "agents" / "main" / "sessions")
SESSIONS_REGISTRY_FILENAME = "sessions.json"

# Writable state (rules override, progress)
DATA_DIR = _env_path("INSPECTOR_DATA_DIR", Path.home() / ".moltbot-inspector")
PROGRESS_FILENAME = "progress.json"
RULES_FILENAME = "danger-rules.json"

# Rule set: explicit path wins over the data-dir copy, bundled default is the fallback
RULES_PATH = os.getenv("INSPECTOR_RULES_PATH", "")
DEFAULT_RULES_PATH = PACKAGE_ROOT / "default_danger_rules.json"

# Optional descriptive labels
CSV_PATH = _env_path("INSPECTOR_CSV_PATH", PROJECT_ROOT / "sessions_table.csv")

# Prebuilt UI bundle
STATIC_DIR = _env_path("INSPECTOR_STATIC_DIR", PROJECT_ROOT / "dist")

# Progress persistence
PROGRESS_SAVE_DEBOUNCE_MS = _env_int("INSPECTOR_PROGRESS_SAVE_DEBOUNCE_MS", 300)
MAX_PROGRESS_BODY_BYTES = _env_int("INSPECTOR_MAX_PROGRESS_BODY_BYTES", 2 * 1024 * 1024)

# Watcher
WATCH_ENABLED = _env_bool("INSPECTOR_WATCH_ENABLED", True)
WATCH_DEBOUNCE_MS = _env_int("INSPECTOR_WATCH_DEBOUNCE_MS", 400)
EVENT_QUEUE_SIZE = _env_int("INSPECTOR_EVENT_QUEUE_SIZE", 100)

# Observability
OTEL_ENABLED = _env_bool("INSPECTOR_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("INSPECTOR_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("INSPECTOR_OTEL_SERVICE_NAME", "session-inspector")
PROM_PORT = _env_int("INSPECTOR_PROM_PORT", 9465)

# Server settings
HOST = os.getenv("INSPECTOR_HOST", "127.0.0.1")
PORT = _env_int("INSPECTOR_PORT", 9100)
