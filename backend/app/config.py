import os
from typing import List


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _env_int(self, name: str, default: int) -> int:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return int(raw)
        except Exception:
            return default

    def _env_float(self, name: str, default: float) -> float:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return float(raw)
        except Exception:
            return default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/pos')
        # Comma-separated list of allowed CORS origins for the cashier UI.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        # sqlite file that plays the role of the browser's localStorage.
        self.local_store_path = os.getenv("POS_LOCAL_STORE_PATH", "").strip() or "pos-local.sqlite"

        # Offline replay retry policy. 0 attempts / 0s backoff keeps the
        # unlimited retry-on-every-pass behaviour.
        self.sync_max_attempts = self._env_int("POS_SYNC_MAX_ATTEMPTS", 0)
        self.sync_backoff_base_seconds = self._env_int("POS_SYNC_BACKOFF_BASE_SECONDS", 0)
        self.sync_backoff_max_seconds = self._env_int("POS_SYNC_BACKOFF_MAX_SECONDS", 300)

        self.connect_timeout_seconds = self._env_float("POS_CONNECT_TIMEOUT_SECONDS", 2.0)
        self.connectivity_poll_seconds = self._env_float("POS_CONNECTIVITY_POLL_SECONDS", 15.0)


settings = Settings()
