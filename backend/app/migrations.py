"""Apply Alembic migrations before the gift card API serves requests.

Several workers may start at once, so the upgrade runs under an exclusive
file lock. Databases created with ``Base.metadata.create_all`` have tables
but no ``alembic_version``; those are stamped at the newest revision whose
schema they already contain and upgraded from there.
"""

from __future__ import annotations

import errno
import logging
import os
import sys
import time
from pathlib import Path
from typing import Callable, Optional, Sequence

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import make_url
from sqlalchemy.engine.reflection import Inspector

from .database import SQLALCHEMY_DATABASE_URL

LOGGER = logging.getLogger(__name__)

BACKEND_DIR = Path(__file__).resolve().parent.parent
LOCK_FILENAME = ".alembic-migration.lock"
LOCK_POLL_SECONDS = 0.25
LOCK_TIMEOUT_ENV = "ALEMBIC_MIGRATION_LOCK_TIMEOUT"
DEFAULT_LOCK_TIMEOUT = 30.0

if os.name == "posix":  # pragma: no cover - platform specific
    import fcntl
else:  # pragma: no cover - platform specific
    import msvcrt


def _has_columns(inspector: Inspector, table_name: str, *columns: str) -> bool:
    if not inspector.has_table(table_name):
        return False
    present = {column["name"] for column in inspector.get_columns(table_name)}
    return all(column in present for column in columns)


def _has_index(inspector: Inspector, table_name: str, index_name: str) -> bool:
    if not inspector.has_table(table_name):
        return False
    return any(index["name"] == index_name for index in inspector.get_indexes(table_name))


# Newest first: the first revision whose check passes is used for stamping.
SCHEMA_MARKERS: Sequence[tuple[str, Callable[[Inspector], bool]]] = (
    ("20260130_0002", lambda inspector: inspector.has_table("operational_metric_events")),
    (
        "20260130_0001",
        lambda inspector: _has_columns(
            inspector, "gift_card_transactions", "sequence", "idempotency_key"
        )
        and _has_columns(inspector, "gift_cards", "disabled_by_admin")
        and _has_index(inspector, "gift_cards", "gift_cards_status_idx"),
    ),
)


def detect_schema_revision(inspector: Inspector) -> Optional[str]:
    """Return the newest revision an unversioned schema already matches."""

    for revision, matches in SCHEMA_MARKERS:
        if matches(inspector):
            return revision
    return None


def _lock_timeout() -> float:
    raw = os.getenv(LOCK_TIMEOUT_ENV)
    if not raw:
        return DEFAULT_LOCK_TIMEOUT
    try:
        value = float(raw)
    except ValueError:
        LOGGER.warning("Ignoring invalid %s=%r", LOCK_TIMEOUT_ENV, raw)
        return DEFAULT_LOCK_TIMEOUT
    if value <= 0:
        LOGGER.warning("Ignoring non-positive %s=%r", LOCK_TIMEOUT_ENV, raw)
        return DEFAULT_LOCK_TIMEOUT
    return value


class MigrationLock:
    """Exclusive, non-blocking file lock polled until ``timeout`` expires."""

    def __init__(self, path: Path, *, timeout: float) -> None:
        self.path = path
        self.timeout = timeout
        self._handle = None

    def _try_lock(self) -> bool:
        try:
            if os.name == "posix":  # pragma: no cover - platform specific
                fcntl.flock(self._handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            else:  # pragma: no cover - platform specific
                msvcrt.locking(self._handle.fileno(), msvcrt.LK_NBLCK, 1)
        except BlockingIOError:
            return False
        except OSError as error:
            # Windows reports a held lock as a sharing (32) or lock (33) violation.
            if error.errno in {errno.EACCES, errno.EAGAIN, errno.EBUSY}:
                return False
            if getattr(error, "winerror", None) in {32, 33}:
                return False
            raise
        return True

    def __enter__(self) -> "MigrationLock":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = self.path.open("a+")
        deadline = time.monotonic() + self.timeout
        LOGGER.debug("Waiting for migration lock %s", self.path)
        while not self._try_lock():
            if time.monotonic() >= deadline:
                self._handle.close()
                self._handle = None
                raise TimeoutError(f"Timed out waiting for migration lock {self.path}")
            time.sleep(LOCK_POLL_SECONDS)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if os.name == "posix":  # pragma: no cover - platform specific
                fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
            else:  # pragma: no cover - platform specific
                msvcrt.locking(self._handle.fileno(), msvcrt.LK_UNLCK, 1)
        except OSError:  # pragma: no cover - closing the handle releases it too
            LOGGER.debug("Could not explicitly release %s", self.path)
        finally:
            self._handle.close()
            self._handle = None
        LOGGER.debug("Released migration lock %s", self.path)


def build_alembic_config(database_url: str) -> Config:
    config = Config(str(BACKEND_DIR / "alembic.ini"))
    config.set_main_option("script_location", str(BACKEND_DIR / "alembic"))
    config.set_main_option("sqlalchemy.url", database_url)
    # Keep the application's logging configuration intact.
    config.attributes["configure_logger"] = False
    return config


def _upgrade(config: Config, database_url: str) -> None:
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    engine = create_engine(database_url, connect_args=connect_args)
    try:
        inspector = inspect(engine)
        if inspector.has_table("alembic_version"):
            LOGGER.debug("Database is versioned; upgrading to head")
            command.upgrade(config, "head")
            return

        if not inspector.get_table_names():
            LOGGER.debug("Empty database; running every migration")
            command.upgrade(config, "head")
            return

        revision = detect_schema_revision(inspector)
        if revision is None:
            LOGGER.info("Unversioned tables found without a known schema; running full upgrade")
            command.upgrade(config, "head")
            return

        LOGGER.info("Unversioned schema matches revision %s; stamping it", revision)
        command.stamp(config, revision)
        if revision != ScriptDirectory.from_config(config).get_current_head():
            command.upgrade(config, "head")
    finally:
        engine.dispose()


def run_database_migrations() -> None:
    """Bring the configured database up to the latest Alembic revision."""

    project_root = str(BACKEND_DIR.parent)
    if project_root not in sys.path:
        sys.path.insert(0, project_root)

    database_url = os.getenv("DATABASE_URL", SQLALCHEMY_DATABASE_URL)
    LOGGER.info(
        "Running database migrations at %s",
        make_url(database_url).render_as_string(hide_password=True),
    )
    config = build_alembic_config(database_url)
    with MigrationLock(BACKEND_DIR / LOCK_FILENAME, timeout=_lock_timeout()):
        _upgrade(config, database_url)
