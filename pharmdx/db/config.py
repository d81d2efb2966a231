"""Where the diagnostic store lives and how its engine is tuned.

``PHARMDX_DATABASE_URL`` (or ``DATABASE_URL``) selects the database.  Without
one, a SQLite file under the platform user-data directory is used;
``PHARMDX_DB_PATH`` relocates that file.  Pool and connection limits come
from the conventional ``DB_*`` / ``PG*`` variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from platformdirs import user_data_dir
from sqlalchemy.engine import make_url

APP_NAME = "pharmdx"
DEFAULT_DB_FILENAME = "pharmdx.db"

_TRUTHY = {"1", "true", "yes", "on"}


def _optional_int(name: str) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class DatabaseSettings:
    url: str
    echo: bool = False
    pool_size: Optional[int] = None
    max_overflow: Optional[int] = None
    pool_timeout: Optional[int] = None
    connect_timeout: Optional[int] = None
    statement_timeout_ms: Optional[int] = None

    @property
    def backend(self) -> str:
        return make_url(self.url).get_backend_name()

    @property
    def is_sqlite(self) -> bool:
        return self.backend == "sqlite"

    @property
    def is_postgres(self) -> bool:
        return self.backend == "postgresql"

    def engine_options(self) -> Dict[str, Any]:
        """Keyword arguments for :func:`sqlalchemy.create_engine`."""

        pool = {
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_timeout": self.pool_timeout,
        }
        options: Dict[str, Any] = {"echo": self.echo}
        options.update({key: value for key, value in pool.items() if value is not None})

        if self.is_sqlite:
            # The engine is shared by callers on different threads.
            options["connect_args"] = {"check_same_thread": False}
        elif self.is_postgres:
            server_options = ["-c timezone=UTC"]
            if self.statement_timeout_ms is not None:
                server_options.append(f"-c statement_timeout={self.statement_timeout_ms}")
            connect_args: Dict[str, Any] = {"options": " ".join(server_options)}
            if self.connect_timeout is not None:
                connect_args["connect_timeout"] = self.connect_timeout
            options["connect_args"] = connect_args
        return options


def default_sqlite_url(path_override: Optional[str] = None) -> str:
    """SQLite URL for ``path_override`` (a file or directory) or the user-data dir."""

    if path_override:
        target = Path(path_override).expanduser()
        if target.is_dir():
            target = target / DEFAULT_DB_FILENAME
    else:
        target = Path(user_data_dir(APP_NAME, APP_NAME)) / DEFAULT_DB_FILENAME
    target.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{target}"


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
    """Resolve database settings from the environment.

    Raises :class:`ValueError` when a numeric pool or timeout variable is set
    to something other than an integer.
    """

    url = (
        os.getenv("PHARMDX_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or default_sqlite_url(os.getenv("PHARMDX_DB_PATH"))
    )
    return DatabaseSettings(
        url=url,
        echo=os.getenv("PHARMDX_DB_ECHO", "").strip().lower() in _TRUTHY,
        pool_size=_optional_int("DB_POOL_SIZE"),
        max_overflow=_optional_int("DB_MAX_OVERFLOW"),
        pool_timeout=_optional_int("DB_POOL_TIMEOUT"),
        connect_timeout=_optional_int("PGCONNECT_TIMEOUT"),
        statement_timeout_ms=_optional_int("STATEMENT_TIMEOUT_MS"),
    )


__all__ = ["DEFAULT_DB_FILENAME", "DatabaseSettings", "default_sqlite_url", "get_database_settings"]
