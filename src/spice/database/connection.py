import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, List, Optional, Sequence

from spice.logger import get_logger

logger = get_logger(__name__)

# Type alias for clarity
Connection = sqlite3.Connection
Cursor = sqlite3.Cursor

SCHEMA_PATH = Path(__file__).parent / "schema.sql"


class StorageError(Exception):
    """Raised when the underlying store fails."""
    pass


class StoreClosedError(StorageError):
    """Raised when the store is used while it is locked for a restore."""
    pass


class DatabaseConfig:
    """Database configuration settings."""

    def __init__(self, db_path: Path | str = "data/spice.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def connection_string(self) -> str:
        """Return the database file path as a string"""
        return str(self.db_path.absolute())


def configure_connection(conn: Connection) -> None:
    """
    Apply standard configuration to a SQLite connection.

    Args:
        conn: SQLite connection to configure
    """
    # Enable foreign key constraints (OFF by default in SQLite!)
    conn.execute("PRAGMA foreign_keys = ON")

    # Return rows as dict-like objects instead of tuples
    conn.row_factory = sqlite3.Row


class DatabaseManager:
    """
    Manages the single SQLite connection shared by the application.

    All access goes through one re-entrant lock, so classification workers
    running in threads never interleave statements on the connection.
    The store can be locked for a restore, after which any access raises
    StoreClosedError until reopen() is called.
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._connection: Connection | None = None
        self._lock = threading.RLock()
        self._depth = 0
        self._locked = False

    @property
    def db_path(self) -> Path:
        return self.config.db_path

    @property
    def is_locked(self) -> bool:
        return self._locked

    def get_connection(self) -> Connection:
        """
        Get or create the database connection.

        Raises:
            StoreClosedError: If the store is locked for a restore
        """
        with self._lock:
            if self._locked:
                raise StoreClosedError(
                    "Store is closed for restore; reopen it before use"
                )
            if self._connection is None:
                self._connection = self._create_connection()
            return self._connection

    def _create_connection(self) -> Connection:
        try:
            conn = sqlite3.connect(
                self.config.connection_string,
                check_same_thread=False,  # Workers share this connection under the lock
            )
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database {self.db_path}: {e}") from e

        configure_connection(conn)
        return conn

    def close(self) -> None:
        """Close the database connection if open."""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None

    def lock_for_restore(self) -> None:
        """Close the connection and refuse further access until reopen()."""
        with self._lock:
            self.close()
            self._locked = True
        logger.debug("Store %s locked for restore", self.db_path)

    def reopen(self) -> None:
        """Lift the restore lock. The connection is recreated lazily."""
        with self._lock:
            self.close()
            self._locked = False
        logger.debug("Store %s reopened", self.db_path)

    @contextmanager
    def transaction(self) -> Generator[Connection, None, None]:
        """
        Context manager for database transactions.

        Automatically commits on success, rolls back on exception.
        Nested calls join the outer transaction; only the outermost
        level commits.

        Usage:
            with db_manager.transaction() as conn:
                conn.execute("INSERT INTO ...")
                conn.execute("UPDATE ...")
        """
        with self._lock:
            conn = self.get_connection()
            self._depth += 1
            try:
                yield conn
                if self._depth == 1:
                    conn.commit()
            except sqlite3.Error as e:
                if self._depth == 1:
                    conn.rollback()
                raise StorageError(str(e)) from e
            except BaseException:
                if self._depth == 1:
                    conn.rollback()
                raise
            finally:
                self._depth -= 1

    def fetch_all(self, query: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self.get_connection().execute(query, params).fetchall()
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

    def fetch_one(self, query: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            try:
                return self.get_connection().execute(query, params).fetchone()
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

    def backup(self, target: Path) -> None:
        """
        Copy the live database into target using SQLite's online backup.

        The copy is consistent: no writer can run while it is taken.
        """
        with self._lock:
            conn = self.get_connection()
            dest = sqlite3.connect(str(target))
            try:
                conn.backup(dest)
            except sqlite3.Error as e:
                raise StorageError(f"Backup to {target} failed: {e}") from e
            finally:
                dest.close()

    def initialize_schema(self) -> None:
        """Create tables (idempotent) and seed the default categories."""
        with self._lock:
            execute_schema(self.get_connection(), SCHEMA_PATH)

    def __enter__(self) -> "DatabaseManager":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit - close connection."""
        self.close()


def execute_schema(conn: Connection, schema_path: Path) -> None:
    """
    Execute a SQL schema file.

    Args:
        conn: Database connection
        schema_path: Path to .sql file
    """
    with open(schema_path) as f:
        schema = f.read()

    try:
        conn.executescript(schema)
        conn.commit()
    except sqlite3.Error as e:
        raise StorageError(f"Schema initialization failed: {e}") from e
