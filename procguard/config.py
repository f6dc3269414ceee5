"""
Configuration for the procguard service.

Loads settings from environment variables with sensible defaults.
All persistent data is stored in ~/.procguard/ unless PROCGUARD_DATA_DIR is set.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _json_env(name: str) -> dict[str, str]:
    """Parse a JSON object from an environment variable, empty if unset or invalid."""
    raw = os.environ.get(name, "").strip()
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Ignoring {name}: not valid JSON")
        return {}
    if not isinstance(value, dict):
        logger.warning(f"Ignoring {name}: expected a JSON object")
        return {}
    return {str(k): str(v) for k, v in value.items()}


@dataclass
class Config:
    """Procguard configuration."""

    # Paths
    data_dir: Path = Path(os.environ.get("PROCGUARD_DATA_DIR", str(Path.home() / ".procguard")))
    db_path: Path = None
    supervisor_log: Path = None

    # Logging
    log_level: str = os.environ.get("LOG_LEVEL", "INFO").upper()
    log_max_bytes: int = int(os.environ.get("LOG_MAX_BYTES", str(10 * 1024 * 1024)))  # 10MB
    log_backup_count: int = int(os.environ.get("LOG_BACKUP_COUNT", "5"))

    # Server
    host: str = os.environ.get("PROCGUARD_HOST", "0.0.0.0")
    port: int = int(os.environ.get("PROCGUARD_PORT", "9900"))

    # Recovery
    max_restarts: int = int(os.environ.get("MAX_RESTARTS", "5"))
    backoff_base_ms: int = int(os.environ.get("BACKOFF_BASE_MS", "1000"))
    backoff_max_ms: int = int(os.environ.get("BACKOFF_MAX_MS", "30000"))
    # 0 means only a fresh start request resets the restart count
    restart_reset_after_seconds: float = float(os.environ.get("RESTART_RESET_AFTER_SECONDS", "0"))

    # History
    max_history_entries_per_process: int = int(os.environ.get("MAX_HISTORY_ENTRIES_PER_PROCESS", "500"))
    max_history_bytes_per_process: int = int(
        os.environ.get("MAX_HISTORY_BYTES_PER_PROCESS", str(1024 * 1024))
    )

    # Process management
    stop_grace_period_ms: int = int(os.environ.get("STOP_GRACE_PERIOD_MS", "10000"))
    start_timeout_ms: int = int(os.environ.get("START_TIMEOUT_MS", "30000"))
    error_block_lines: int = int(os.environ.get("ERROR_BLOCK_LINES", "20"))
    # An open error block is classified once its process has been quiet this long
    error_block_idle_ms: int = int(os.environ.get("ERROR_BLOCK_IDLE_MS", "500"))
    resume_on_startup: bool = os.environ.get("RESUME_ON_STARTUP", "true").lower() == "true"

    # Process id -> framework tag used for scoped classification rules
    framework_hints: dict[str, str] = field(default_factory=lambda: _json_env("FRAMEWORK_HINTS"))

    def __post_init__(self):
        """Initialize derived paths and create directories."""
        self.data_dir = Path(self.data_dir)
        if self.db_path is None:
            self.db_path = self.data_dir / "procguard.db"
        if self.supervisor_log is None:
            self.supervisor_log = self.data_dir / "procguard.log"

        self.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def stop_grace_period(self) -> float:
        return self.stop_grace_period_ms / 1000

    @property
    def start_timeout(self) -> float:
        return self.start_timeout_ms / 1000

    @property
    def error_block_idle(self) -> float:
        return self.error_block_idle_ms / 1000


config = Config()
