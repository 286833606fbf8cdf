"""Application configuration loaded from environment variables."""

import json
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() == "true"


def _int(name: str, default: int | None) -> int | None:
    try:
        value = int(os.getenv(name, "").strip())
    except ValueError:
        return default
    return value if value > 0 else default


def _float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, "").strip())
    except ValueError:
        return default


def _csv(name: str) -> list[str]:
    return [part.strip() for part in os.getenv(name, "").split(",") if part.strip()]


def _json_object(name: str) -> dict:
    raw = os.getenv(name, "").strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


# Paths
DATA_DIR = Path(os.getenv("DATA_DIR", Path(__file__).parent.parent / "data"))
DB_PATH = DATA_DIR / "unigrades.db"
SCREENSHOT_DIR = DATA_DIR / "screenshots"

# HTTP service
HOST = os.getenv("HOST", "0.0.0.0")
PORT = _int("PORT", 3001)
STORE_ENABLED = _flag("STORE_ENABLED", "true")

# Browser
BROWSER_HEADLESS = _flag("BROWSER_HEADLESS", "true")
BROWSER_TIMEOUT = _int("BROWSER_TIMEOUT", 45000)
DEBUG_SCREENSHOTS = _flag("DEBUG_SCREENSHOTS")

# Captcha solving
DISABLE_AUTO_CAPTCHA = _flag("DISABLE_AUTO_CAPTCHA")
MAX_AUTO_ATTEMPTS = 2
VERIFY_TIMEOUT_SECONDS = 25.0

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "").strip()
GEMINI_MODELS = _csv("GEMINI_MODELS") or [
    "gemini-2.5-flash-lite",
    "gemini-2.5-flash",
    "gemini-3-flash-preview",
]
GEMINI_ATTEMPTS_PER_MODEL = _int("GEMINI_ATTEMPTS_PER_MODEL", 5)
GEMINI_BASE_TEMPERATURE = _float("GEMINI_BASE_TEMPERATURE", 0.1)
GEMINI_TEMPERATURE_STEP = _float("GEMINI_TEMPERATURE_STEP", 0.15)
GEMINI_MAX_OUTPUT_TOKENS = _int("GEMINI_MAX_OUTPUT_TOKENS", 20)
GEMINI_PROMPT = os.getenv("GEMINI_PROMPT", "").strip() or (
    "Extract the 6-character alphanumeric captcha text from this image. "
    "Return ONLY the 6 characters. No spaces."
)

OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "").strip()
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "").strip() or "http://localhost:11434"
OLLAMA_GENERATE_PATH = os.getenv("OLLAMA_GENERATE_PATH", "").strip() or "/api/generate"
OLLAMA_API_URL = os.getenv("OLLAMA_API_URL", "").strip() or (
    f"{OLLAMA_BASE_URL.rstrip('/')}/{OLLAMA_GENERATE_PATH.lstrip('/')}"
)
OLLAMA_PROMPT = os.getenv("OLLAMA_PROMPT", "").strip() or (
    "Return exactly the 6 letters. No explanation. No spaces."
)
OLLAMA_TIMEOUT_MS = _int("OLLAMA_TIMEOUT_MS", 30000)
OLLAMA_OPTIONS = _json_object("OLLAMA_OPTIONS_JSON")
OLLAMA_NUM_CTX = _int("OLLAMA_NUM_CTX", None)
OLLAMA_NUM_PREDICT = _int("OLLAMA_NUM_PREDICT", None)
OLLAMA_TEMPERATURE = _float("OLLAMA_TEMPERATURE", 0.0)
OLLAMA_DEBUG_SAVE_CROPS = _flag("OLLAMA_DEBUG_SAVE_CROPS") or DEBUG_SCREENSHOTS

# Web push
VAPID_PUBLIC_KEY = os.getenv("VAPID_PUBLIC_KEY", "").strip()
VAPID_PRIVATE_KEY = os.getenv("VAPID_PRIVATE_KEY", "").strip()
VAPID_EMAIL = os.getenv("VAPID_EMAIL", "").strip() or "mailto:admin@example.com"

# Background notification worker
WORKER_ENABLED = _flag("WORKER_ENABLED", "true")
WORKER_TICK_SECONDS = _int("WORKER_TICK_SECONDS", 60)
WORKER_USER_DELAY_SECONDS = _float("WORKER_USER_DELAY_SECONDS", 5.0)
DEVICE_INACTIVITY_DAYS = _int("DEVICE_INACTIVITY_DAYS", 14)
MAX_DEVICES_PER_USER = _int("MAX_DEVICES_PER_USER", 2)
SENT_NOTIFICATIONS_LIMIT = _int("SENT_NOTIFICATIONS_LIMIT", 500)


def ensure_dirs():
    """Create required data directories if they don't exist."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    SCREENSHOT_DIR.mkdir(parents=True, exist_ok=True)
