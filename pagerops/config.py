from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(dotenv_path=".env")

DB_PATH = Path(os.getenv("PAGEROPS_DB_PATH", str(Path.cwd() / "pager-ops.db")))

PAGERDUTY_BASE_URL = os.getenv("PAGERDUTY_BASE_URL", "https://api.pagerduty.com")
PAGERDUTY_TIMEOUT = float(os.getenv("PAGERDUTY_TIMEOUT", "10"))
PAGERDUTY_PAGE_LIMIT = int(os.getenv("PAGERDUTY_PAGE_LIMIT", "100"))

BACKOFF_CEILING = float(os.getenv("PAGEROPS_BACKOFF_CEILING", "300"))
JITTER_RATIO = float(os.getenv("PAGEROPS_JITTER_RATIO", "0.1"))
DRAFT_DEBOUNCE_SECONDS = float(os.getenv("PAGEROPS_DRAFT_DEBOUNCE", "1.0"))
RESOLVED_LOOKBACK_HOURS = int(os.getenv("PAGEROPS_RESOLVED_LOOKBACK_HOURS", "24"))
RESOLVED_RETENTION_HOURS = int(os.getenv("PAGEROPS_RESOLVED_RETENTION_HOURS", "48"))

LOG_LEVEL = os.getenv("PAGEROPS_LOG_LEVEL", "INFO")


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
