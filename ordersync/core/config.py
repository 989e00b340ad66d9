import os
from decimal import Decimal
from pathlib import Path


# Local .env next to the project root, read into os.environ.
env_path = Path(__file__).resolve().parents[2] / ".env"
if env_path.exists():
    for raw_line in env_path.read_text(encoding='utf-8').splitlines():
        line = raw_line.strip()
        if not line or line.startswith('#'):
            continue
        if '=' not in line:
            continue
        key, val = line.split('=', 1)
        key = key.strip()
        val = val.strip()
        # remove possible surrounding quotes
        if (val.startswith("\"") and val.endswith("\"")) or (val.startswith("'") and val.endswith("'")):
            val = val[1:-1]
        # the real environment wins over the file
        os.environ.setdefault(key, val)


def _flag(name: str, default: str) -> bool:
    return str(os.getenv(name, default)).strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    """Lightweight settings loader using environment variables.

    Values are read once at import time. Anything that changes while the
    process runs (currency fetched from the API, the transport, the HTTP
    client) lives on ``AppContext`` instead.
    """

    # Resource API
    API_BASE_URL: str = os.getenv("API_BASE_URL", "http://localhost:8000/api").rstrip("/")
    API_TOKEN: str = os.getenv("API_TOKEN", "").strip()
    HTTP_TIMEOUT: float = float(os.getenv("HTTP_TIMEOUT", "15"))

    # Realtime channels; when disabled every subscription is a no-op and the
    # views run on polling alone
    REALTIME_ENABLED: bool = _flag("REALTIME_ENABLED", "1")

    RESTAURANT_ID: int = int(os.getenv("RESTAURANT_ID", "1"))
    # identity sent with portal submissions for the server-side device lock
    DEVICE_ID: str = os.getenv("DEVICE_ID", "").strip()

    # Polling intervals (seconds). The KDS board is the most time critical.
    KDS_POLL_SECONDS: float = float(os.getenv("KDS_POLL_SECONDS", "10"))
    STAFF_POLL_SECONDS: float = float(os.getenv("STAFF_POLL_SECONDS", "10"))
    FLOOR_POLL_SECONDS: float = float(os.getenv("FLOOR_POLL_SECONDS", "30"))

    # Cart preview only; the server computes the authoritative totals
    TAX_RATE: Decimal = Decimal(os.getenv("TAX_RATE", "0.10"))
    DEFAULT_CURRENCY: str = os.getenv("DEFAULT_CURRENCY", "KES")

    # Relay server bind address
    HOST: str = os.getenv("HOST", "127.0.0.1")
    PORT: int = int(os.getenv("PORT", "8000"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
