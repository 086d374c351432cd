"""
SQLite persistence for projects and statistic snapshots.

Snapshots are append-only. The `UNIQUE(project_id, commit_hash)` constraint
is what keeps concurrent runs on the same project from inserting twice: a
second insert for the same commit hits `ON CONFLICT DO NOTHING` and the
existing row's id is returned instead.

Every call opens its own short-lived connection, so a store instance can be
shared freely between worker threads.
"""
import contextlib
import logging
import sqlite3
from pathlib import Path
from typing import Iterator, List, Optional, Union

from .errors import ConstraintViolation, StoreUnavailable
from .models import Project, StatSnapshot, format_timestamp

logger = logging.getLogger(__name__)

DEFAULT_DB_URL = "loc_sweeper.db"

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner TEXT NOT NULL,
    name TEXT NOT NULL,
    title TEXT,
    remote_url TEXT,
    branch TEXT,
    ignored_dirs TEXT,
    ignored_langs TEXT,
    last_snapshot_id INTEGER,
    UNIQUE (owner, name)
);
CREATE TABLE IF NOT EXISTS snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL REFERENCES projects(id),
    captured_at TEXT NOT NULL,
    commit_hash TEXT NOT NULL,
    metrics_json TEXT NOT NULL,
    UNIQUE (project_id, commit_hash)
);
CREATE INDEX IF NOT EXISTS snapshots_by_time ON snapshots (project_id, captured_at);
"""

_PROJECT_COLUMNS = "id, owner, name, title, remote_url, branch, ignored_dirs, ignored_langs, last_snapshot_id"
_SNAPSHOT_COLUMNS = "id, project_id, captured_at, commit_hash, metrics_json"


def db_path_from_url(db_url: Union[str, Path]) -> str:
    """
    Accept either a filesystem path or an SQLAlchemy-style sqlite URL.

      sqlite:///stats.db        -> stats.db (relative)
      sqlite:////var/lib/s.db   -> /var/lib/s.db
    """
    url = str(db_url)
    if url.startswith("sqlite:///"):
        url = url[len("sqlite:///"):]
    elif "://" in url:
        raise ValueError(f"unsupported database url: {url}")
    if not url or url == ":memory:":
        raise ValueError("the snapshot store needs a database file")
    return url


def _project_from_row(row) -> Project:
    return Project(
        id=row[0],
        owner=row[1],
        name=row[2],
        title=row[3],
        remote_url=row[4],
        branch=row[5],
        ignored_dirs=row[6],
        ignored_langs=row[7],
        last_snapshot_id=row[8],
    )


def _snapshot_from_row(row) -> StatSnapshot:
    try:
        return StatSnapshot.from_record(*row)
    except (ValueError, KeyError, TypeError) as exc:
        raise ConstraintViolation(f"stored snapshot {row[0]} is invalid: {exc}") from exc


class SnapshotStore:
    """Append-only snapshot storage plus the registry of tracked projects."""

    def __init__(self, db_url: Union[str, Path] = DEFAULT_DB_URL, timeout: float = 30.0):
        self.path = db_path_from_url(db_url)
        self.timeout = timeout

    # ---------------------------
    # Connection helpers
    # ---------------------------
    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.path, timeout=self.timeout, isolation_level=None)
            conn.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"cannot open {self.path}: {exc}") from exc
        return conn

    @contextlib.contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"query on {self.path} failed: {exc}") from exc
        finally:
            conn.close()

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Write transaction. BEGIN IMMEDIATE takes the database write lock up
        front, so concurrent writers queue (up to `timeout`) instead of failing
        half way through.
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.IntegrityError as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise ConstraintViolation(str(exc)) from exc
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StoreUnavailable(f"write to {self.path} failed: {exc}") from exc
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def init_db(self):
        """Create the schema if missing. Safe to call on every start."""
        parent = Path(self.path).parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreUnavailable(f"cannot create {parent}: {exc}") from exc
        with self._reading() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA)
        logger.debug("Schema ready in %s", self.path)

    # ---------------------------
    # Projects
    # ---------------------------
    def upsert_project(self, project: Project) -> Project:
        """Register `project` or update its configuration. Identity never changes."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO projects (owner, name, title, remote_url, branch, ignored_dirs, ignored_langs)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (owner, name) DO UPDATE SET
                    title = excluded.title,
                    remote_url = excluded.remote_url,
                    branch = excluded.branch,
                    ignored_dirs = excluded.ignored_dirs,
                    ignored_langs = excluded.ignored_langs
                """,
                (project.owner, project.name, project.title, project.remote_url,
                 project.branch, project.ignored_dirs, project.ignored_langs),
            )
            row = conn.execute(
                f"SELECT {_PROJECT_COLUMNS} FROM projects WHERE owner = ? AND name = ?",
                project.key,
            ).fetchone()
        return _project_from_row(row)

    def ensure_project(self, project: Project) -> int:
        """Id of `project`, registering it first if it is unknown. Existing config is left alone."""
        if project.id is not None:
            return project.id
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO projects (owner, name, title, remote_url, branch, ignored_dirs, ignored_langs)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (owner, name) DO NOTHING
                """,
                (project.owner, project.name, project.title, project.remote_url,
                 project.branch, project.ignored_dirs, project.ignored_langs),
            )
            row = conn.execute(
                "SELECT id FROM projects WHERE owner = ? AND name = ?", project.key
            ).fetchone()
        return row[0]

    def get_project(self, owner: str, name: str) -> Optional[Project]:
        with self._reading() as conn:
            row = conn.execute(
                f"SELECT {_PROJECT_COLUMNS} FROM projects WHERE owner = ? AND name = ?",
                (owner, name),
            ).fetchone()
        return _project_from_row(row) if row else None

    def all_projects(self) -> List[Project]:
        with self._reading() as conn:
            rows = conn.execute(
                f"SELECT {_PROJECT_COLUMNS} FROM projects ORDER BY owner, name"
            ).fetchall()
        return [_project_from_row(r) for r in rows]

    # ---------------------------
    # Snapshots
    # ---------------------------
    def put(self, snapshot: StatSnapshot) -> int:
        """
        Store `snapshot` and return its id.

        At most one snapshot exists per (project, commit): storing the same
        commit again is a no-op returning the id of the row already there.
        """
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO snapshots (project_id, captured_at, commit_hash, metrics_json)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (project_id, commit_hash) DO NOTHING
                """,
                (snapshot.project_id, format_timestamp(snapshot.captured_at),
                 snapshot.commit_hash, snapshot.metrics_json()),
            )
            if cur.rowcount == 1:
                snapshot_id = cur.lastrowid
                conn.execute(
                    "UPDATE projects SET last_snapshot_id = ? WHERE id = ?",
                    (snapshot_id, snapshot.project_id),
                )
                logger.info("Stored snapshot %d for project %d at %s",
                            snapshot_id, snapshot.project_id, snapshot.short_hash)
                return snapshot_id
            row = conn.execute(
                "SELECT id FROM snapshots WHERE project_id = ? AND commit_hash = ?",
                (snapshot.project_id, snapshot.commit_hash),
            ).fetchone()
        if row is None:
            raise ConstraintViolation(
                f"insert of {snapshot.commit_hash} for project {snapshot.project_id} "
                "was ignored but no existing row was found")
        logger.debug("Snapshot for %s already stored as %d", snapshot.short_hash, row[0])
        return row[0]

    def get(self, snapshot_id: int) -> Optional[StatSnapshot]:
        with self._reading() as conn:
            row = conn.execute(
                f"SELECT {_SNAPSHOT_COLUMNS} FROM snapshots WHERE id = ?", (snapshot_id,)
            ).fetchone()
        return _snapshot_from_row(row) if row else None

    def latest(self, project_id: int) -> Optional[StatSnapshot]:
        """Most recently captured snapshot of the project, or None if never analyzed."""
        with self._reading() as conn:
            row = conn.execute(
                f"""
                SELECT {_SNAPSHOT_COLUMNS} FROM snapshots
                WHERE project_id = ?
                ORDER BY captured_at DESC, id DESC
                LIMIT 1
                """,
                (project_id,),
            ).fetchone()
        return _snapshot_from_row(row) if row else None

    def list(self, project_id: int) -> Iterator[StatSnapshot]:
        """Lazily yield the project's snapshots, newest first."""
        with self._reading() as conn:
            cursor = conn.execute(
                f"""
                SELECT {_SNAPSHOT_COLUMNS} FROM snapshots
                WHERE project_id = ?
                ORDER BY captured_at DESC, id DESC
                """,
                (project_id,),
            )
            for row in cursor:
                yield _snapshot_from_row(row)

    def count(self, project_id: int) -> int:
        with self._reading() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM snapshots WHERE project_id = ?", (project_id,)
            ).fetchone()[0]
