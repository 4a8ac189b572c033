from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv
from sqlalchemy.engine import make_url

DEFAULT_DATABASE_URL = "sqlite:///data/launcher.db"
DEFAULT_PORT = 8902


@dataclass(frozen=True)
class Config:
    database_url: str = DEFAULT_DATABASE_URL
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    stop_timeout: float = 10.0  # seconds; 0 waits forever
    log_level: str = "INFO"

    def ensure_data_dir(self) -> None:
        """Create the directory holding a file-backed SQLite database.

        sqlite:///data/launcher.db   ->  ./data
        sqlite:////var/lib/l.db      ->  /var/lib
        sqlite:// / other backends   ->  nothing to do
        """
        url = make_url(self.database_url)
        if url.get_backend_name() != "sqlite":
            return
        if not url.database or url.database == ":memory:":
            return
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_env(cls, env_path: str | Path | None = None) -> Config:
        load_dotenv(env_path)

        return cls(
            database_url=os.getenv("LAUNCHER_DATABASE_URL", DEFAULT_DATABASE_URL),
            host=os.getenv("LAUNCHER_HOST", "127.0.0.1"),
            port=int(os.getenv("LAUNCHER_PORT", str(DEFAULT_PORT))),
            stop_timeout=float(os.getenv("LAUNCHER_STOP_TIMEOUT", "10")),
            log_level=os.getenv("LAUNCHER_LOG_LEVEL", "INFO").upper(),
        )
