import json
import sys
from http import HTTPStatus
from typing import Optional

# ============================================================
# CONFIGURATION
# ============================================================
# Set to True for detailed logging, False for minimal logging
DEBUG = True

CONFIG_FILE = "config.json"

DEFAULT_API_BASE_URL = "http://localhost:8000/api"
DEFAULT_CREDENTIALS_FILE = "credentials.json"

# Auth refresh coordination
MAX_RETRY_ATTEMPTS = 3
REFRESH_TIMEOUT_SECONDS = 5
REFRESH_WAIT_TIMEOUT_SECONDS = 10
FAILURE_RESET_INTERVAL_SECONDS = 60


def debug_print(*args, **kwargs):
    """Print debug messages only if DEBUG is True"""
    if DEBUG:
        try:
            print(*args, **kwargs)
        except UnicodeEncodeError:
            # Some consoles (e.g. GBK codepages) can't print emoji.
            encoding = getattr(sys.stdout, "encoding", None) or "utf-8"
            end = kwargs.get("end", "\n")
            sep = kwargs.get("sep", " ")
            message = sep.join(str(a) for a in args) + end
            try:
                sys.stdout.buffer.write(message.encode(encoding, errors="replace"))
            except Exception:
                safe = message.encode("ascii", errors="backslashreplace").decode("ascii")
                print(safe, end="")


def get_status_emoji(status_code: int) -> str:
    if 200 <= status_code < 300:
        return "✅"
    elif 300 <= status_code < 400:
        return "↪️"
    elif 400 <= status_code < 500:
        if status_code == HTTPStatus.UNAUTHORIZED:
            return "🔒"
        elif status_code == HTTPStatus.FORBIDDEN:
            return "🚫"
        elif status_code == HTTPStatus.NOT_FOUND:
            return "❓"
        return "⚠️"
    elif 500 <= status_code < 600:
        return "❌"
    return "ℹ️"


def log_http_status(status_code: int, context: str = ""):
    """Log HTTP status with readable message"""
    emoji = get_status_emoji(status_code)
    try:
        message = HTTPStatus(status_code).phrase
    except ValueError:
        message = f"Unknown Status {status_code}"
    if context:
        debug_print(f"{emoji} HTTP {status_code}: {message} ({context})")
    else:
        debug_print(f"{emoji} HTTP {status_code}: {message}")


def _clamped_number(value, default, minimum, maximum, cast=float):
    try:
        number = cast(value)
    except (TypeError, ValueError):
        number = default
    return max(minimum, min(number, maximum))


def get_config(path: Optional[str] = None) -> dict:
    try:
        with open(path or CONFIG_FILE, "r", encoding="utf-8") as f:
            config = json.load(f)
    except (FileNotFoundError, json.JSONDecodeError) as e:
        debug_print(f"⚠️  Config file error: {e}, using defaults")
        config = {}
    if not isinstance(config, dict):
        debug_print("⚠️  Config file is not a JSON object, using defaults")
        config = {}

    config.setdefault("api_base_url", DEFAULT_API_BASE_URL)
    config.setdefault("credentials_file", DEFAULT_CREDENTIALS_FILE)
    config.setdefault("request_timeout_seconds", 120)
    config.setdefault("refresh_timeout_seconds", REFRESH_TIMEOUT_SECONDS)
    config.setdefault("refresh_wait_timeout_seconds", REFRESH_WAIT_TIMEOUT_SECONDS)
    config.setdefault("max_retry_attempts", MAX_RETRY_ATTEMPTS)
    config.setdefault("failure_reset_interval_seconds", FAILURE_RESET_INTERVAL_SECONDS)
    config.setdefault("auto_generate_title", True)
    config.setdefault("debug", DEBUG)
    config.setdefault("mock_server_port", 8000)

    base_url = config.get("api_base_url")
    if not isinstance(base_url, str) or not base_url.strip():
        base_url = DEFAULT_API_BASE_URL
    config["api_base_url"] = base_url.strip().rstrip("/")

    config["request_timeout_seconds"] = _clamped_number(
        config.get("request_timeout_seconds"), 120, 1, 3600
    )
    config["refresh_timeout_seconds"] = _clamped_number(
        config.get("refresh_timeout_seconds"), REFRESH_TIMEOUT_SECONDS, 0.1, 60
    )
    config["refresh_wait_timeout_seconds"] = _clamped_number(
        config.get("refresh_wait_timeout_seconds"), REFRESH_WAIT_TIMEOUT_SECONDS, 0.01, 300
    )
    config["max_retry_attempts"] = _clamped_number(
        config.get("max_retry_attempts"), MAX_RETRY_ATTEMPTS, 1, 20, cast=int
    )
    config["failure_reset_interval_seconds"] = _clamped_number(
        config.get("failure_reset_interval_seconds"), FAILURE_RESET_INTERVAL_SECONDS, 0.01, 3600
    )
    config["mock_server_port"] = _clamped_number(config.get("mock_server_port"), 8000, 1, 65535, cast=int)
    return config


def save_config(config: dict, path: Optional[str] = None) -> None:
    try:
        with open(path or CONFIG_FILE, "w", encoding="utf-8") as f:
            json.dump(config, f, indent=4)
    except OSError as e:
        debug_print(f"❌ Error saving config: {e}")
