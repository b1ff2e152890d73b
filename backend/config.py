"""Application-wide configuration constants."""

import os


def _env(name: str, default, cast=int):
    value = os.getenv(f"PEERSHARE_{name}")
    if value is None:
        return default
    return cast(value)


# --- Networking ---
API_HOST = _env("API_HOST", "0.0.0.0", str)
API_PORT = _env("API_PORT", 8080)
CORS_ORIGINS = [
    origin.strip()
    for origin in _env(
        "CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000", str
    ).split(",")
    if origin.strip()
]

# --- Codes ---
CODE_LENGTH = 6
# Uppercase letters and digits without the look-alikes 0/O and 1/I
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_MAX_ATTEMPTS = 20

# --- Sessions ---
MAX_ACTIVE_SESSIONS = _env("MAX_ACTIVE_SESSIONS", 1000)
MAX_FILE_SIZE = _env("MAX_FILE_SIZE", 100 * 1024 * 1024)  # 100 MiB
JOIN_TIMEOUT = _env("JOIN_TIMEOUT", 600.0, float)  # seconds
IDLE_TIMEOUT = _env("IDLE_TIMEOUT", 60.0, float)  # seconds
GRACE_PERIOD = _env("GRACE_PERIOD", 30.0, float)  # seconds
REAP_INTERVAL = _env("REAP_INTERVAL", 5.0, float)  # seconds

# --- Transfer ---
CHUNK_SIZE = 1024 * 1024  # 1 MiB
MAX_RETRIES = _env("MAX_RETRIES", 3)
RETRY_DELAY = _env("RETRY_DELAY", 0.5, float)  # seconds, doubled per attempt
RELAY_WINDOW = _env("RELAY_WINDOW", 8)  # chunks buffered per session
SEND_TIMEOUT = _env("SEND_TIMEOUT", 10.0, float)  # seconds

# --- Logging ---
LOG_LEVEL = _env("LOG_LEVEL", "INFO", str)
