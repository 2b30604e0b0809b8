import os
from typing import List


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except Exception:
        return default


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL") or "postgresql://localhost/warehouse"
        # Comma-separated list of allowed CORS origins for browser clients.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        # Cost comparisons are float based; these are the tolerances below which
        # a stored cost is considered already in sync.
        self.cost_epsilon = _env_float("COST_EPSILON", 0.001)
        self.manufacturing_cost_epsilon = _env_float("MANUFACTURING_COST_EPSILON", 0.0001)
        self.manufacturing_total_epsilon = _env_float("MANUFACTURING_TOTAL_EPSILON", 0.01)

        self.sync_batch_limit = _env_int("COST_SYNC_BATCH_LIMIT", 500)
        self.sync_batch_limit_max = _env_int("COST_SYNC_BATCH_LIMIT_MAX", 5000)
        self.ledger_page_size = _env_int("LEDGER_PAGE_SIZE", 50)

settings = Settings()
