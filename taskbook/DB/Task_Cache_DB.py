# Task_Cache_DB.py
# Description: DB Library for the local task cache, sync freshness markers and the outgoing mutation queue.
#
"""
Task_Cache_DB.py
----------------

SQLite-backed local store for the task client. It holds three kinds of data:

- Cached remote entities (tasks, projects, sections, labels) stored as JSON documents
  keyed by `(entity_type, id)` and grouped by a `scope_id` (the parent project for tasks
  and sections, `""` for global resources).
- Freshness markers per `(resource_type, scope_id)`: when a resource was last replaced
  from the server, plus an optional server sync cursor.
- The mutation queue: user edits waiting to be sent to the server, drained oldest first.
  Mutations are deleted once delivered; the only stored statuses are `pending`,
  `flushing` and `conflicted`.

A small archive of recently completed tasks backs the reopen action. Archived projects and a
directory of collaborator names (keyed by user id) are kept beside the cache.

Connections are thread-local (`threading.local`), file databases run in WAL mode and
every multi-statement write goes through `transaction()`. Storage errors are raised as
`TaskCacheDBError`; nothing here reports success after a failed write.
"""
# Imports
import json
import logging
import sqlite3
import threading
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union
#
# Third-Party Libraries
#
# Local Imports
#
########################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)


# --- Custom Exceptions ---
class TaskCacheDBError(Exception):
    """Base exception for TaskCacheDB related errors."""
    pass


class SchemaError(TaskCacheDBError):
    """Exception for schema version mismatches or migration failures."""
    pass


class InputError(ValueError):
    """Custom exception for input validation errors."""
    pass


MUTATION_STATUSES = ("pending", "flushing", "conflicted")

# Higher wins when several mutations target the same entity.
_STATUS_RANK = {"pending": 1, "flushing": 2, "conflicted": 3}


class TaskCacheDB:
    """
    Local cache and mutation queue for the task client.

    Attributes:
        db_path (Path): Resolved path of the database file (or ":memory:").
        ttl_seconds (float): Default freshness window for cached resources.
        resource_ttls (Dict[str, float]): Per-resource overrides of `ttl_seconds`.
    """
    _CURRENT_SCHEMA_VERSION = 1
    _SCHEMA_NAME = "task_cache_schema"
    DEFAULT_TTL_SECONDS = 3600.0

    _SCHEMA_SQL_V1 = """
    CREATE TABLE IF NOT EXISTS db_schema_version(
        schema_name TEXT PRIMARY KEY NOT NULL,
        version INTEGER NOT NULL
    );
    INSERT OR IGNORE INTO db_schema_version (schema_name, version) VALUES ('task_cache_schema', 0);

    CREATE TABLE IF NOT EXISTS entities(
        entity_type TEXT NOT NULL,
        id TEXT NOT NULL,
        scope_id TEXT NOT NULL DEFAULT '',
        data TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (entity_type, id)
    );
    CREATE INDEX IF NOT EXISTS idx_entities_scope ON entities(entity_type, scope_id);

    CREATE TABLE IF NOT EXISTS sync_meta(
        resource_type TEXT NOT NULL,
        scope_id TEXT NOT NULL DEFAULT '',
        last_synced REAL NOT NULL,
        sync_cursor TEXT,
        PRIMARY KEY (resource_type, scope_id)
    );

    CREATE TABLE IF NOT EXISTS mutations(
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL DEFAULT '',
        action TEXT NOT NULL,
        payload TEXT NOT NULL DEFAULT '{}',
        snapshot TEXT,
        status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'flushing', 'conflicted')),
        note TEXT NOT NULL DEFAULT '',
        idempotency_key TEXT NOT NULL UNIQUE,
        force_apply INTEGER NOT NULL DEFAULT 0,
        attempts INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_mutations_queue ON mutations(status, created_at, id);
    CREATE INDEX IF NOT EXISTS idx_mutations_entity ON mutations(entity_type, entity_id);

    CREATE TABLE IF NOT EXISTS completed_tasks(
        id TEXT PRIMARY KEY NOT NULL,
        project_id TEXT NOT NULL DEFAULT '',
        data TEXT NOT NULL,
        completed_at TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_completed_tasks_completed_at ON completed_tasks(completed_at);

    CREATE TABLE IF NOT EXISTS archived_projects(
        id TEXT PRIMARY KEY NOT NULL,
        data TEXT NOT NULL,
        archived_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS user_names(
        id TEXT PRIMARY KEY NOT NULL,
        name TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    UPDATE db_schema_version SET version = 1 WHERE schema_name = 'task_cache_schema' AND version < 1;
    """

    def __init__(self, db_path: Union[str, Path], ttl_seconds: float = DEFAULT_TTL_SECONDS,
                 resource_ttls: Optional[Dict[str, float]] = None,
                 clock: Callable[[], float] = time.time):
        """
        Opens (creating if needed) the cache database and applies the schema.

        Args:
            db_path: Path to the SQLite file, or ":memory:".
            ttl_seconds: Default freshness window for cached resources.
            resource_ttls: Optional per-resource TTL overrides, e.g. {"labels": 86400}.
            clock: Source of "now" in epoch seconds. Injected by tests.

        Raises:
            TaskCacheDBError: If the directory cannot be created or initialization fails.
            SchemaError: If the on-disk schema is newer than this code or cannot be migrated.
        """
        if isinstance(db_path, Path):
            self.is_memory_db = False
            self.db_path = db_path.resolve()
        else:
            self.is_memory_db = (db_path == ':memory:')
            self.db_path = Path(db_path).resolve() if not self.is_memory_db else Path(":memory:")
        self.db_path_str = str(self.db_path) if not self.is_memory_db else ':memory:'

        if ttl_seconds is None or ttl_seconds < 0:
            raise InputError("ttl_seconds must be a non-negative number.")
        self.ttl_seconds = float(ttl_seconds)
        self.resource_ttls = dict(resource_ttls or {})
        self._clock = clock

        if not self.is_memory_db:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise TaskCacheDBError(f"Failed to create database directory {self.db_path.parent}: {e}") from e

        logger.info(f"Initializing TaskCacheDB for path: {self.db_path_str}")
        self._local = threading.local()
        try:
            self._initialize_schema()
        except (TaskCacheDBError, sqlite3.Error) as e:
            logger.critical(f"FATAL: DB Initialization failed for {self.db_path_str}: {e}", exc_info=True)
            self.close_connection()
            if isinstance(e, SchemaError):
                raise
            raise TaskCacheDBError(f"Database initialization failed: {e}") from e

    # --- Connection Management ---
    def _get_thread_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, 'conn', None)
        if conn:
            try:
                conn.execute("SELECT 1")
            except (sqlite3.ProgrammingError, sqlite3.OperationalError):
                logger.warning(f"Thread-local connection for {self.db_path_str} became unusable. Reopening.")
                try:
                    conn.close()
                except sqlite3.Error:
                    pass
                conn = None

        if not conn:
            try:
                # Autocommit: statements outside transaction() apply at once, so in_transaction means an explicit BEGIN.
                conn = sqlite3.connect(self.db_path_str, check_same_thread=False, timeout=15, isolation_level=None)
                conn.row_factory = sqlite3.Row
                if not self.is_memory_db:
                    conn.execute("PRAGMA journal_mode=WAL;")
                self._local.conn = conn
                logger.debug(f"Opened SQLite connection to {self.db_path_str} for thread {threading.get_ident()}")
            except sqlite3.Error as e:
                logger.error(f"Failed to connect to database {self.db_path_str}: {e}", exc_info=True)
                self._local.conn = None
                raise TaskCacheDBError(f"Failed to connect to database '{self.db_path_str}': {e}") from e
        return self._local.conn

    def get_connection(self) -> sqlite3.Connection:
        return self._get_thread_connection()

    def close_connection(self):
        """Closes the current thread's connection, rolling back any open transaction first."""
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            try:
                if conn.in_transaction:
                    logger.warning(f"Connection to {self.db_path_str} closed inside a transaction. Rolling back.")
                    conn.rollback()
                if not self.is_memory_db:
                    try:
                        conn.execute("PRAGMA wal_checkpoint(TRUNCATE);")
                    except sqlite3.Error as cp_err:
                        logger.warning(f"WAL checkpoint failed for {self.db_path_str}: {cp_err}")
                conn.close()
            except sqlite3.Error as e:
                logger.warning(f"Error while closing SQLite connection for {self.db_path_str}: {e}")
            finally:
                self._local.conn = None

    # --- Query Execution ---
    def execute_query(self, query: str, params: Optional[Union[tuple, Dict[str, Any]]] = None, *,
                      commit: bool = False, script: bool = False) -> sqlite3.Cursor:
        """
        Executes a single SQL statement (or a script).

        `commit=True` commits only when no `transaction()` block is active on this thread.

        Raises:
            TaskCacheDBError: For any SQLite error, including constraint violations.
        """
        conn = self.get_connection()
        try:
            cursor = conn.cursor()
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(f"Executing SQL (script={script}): {query[:200]}... Params: {str(params)[:200]}")
            if script:
                cursor.executescript(query)
            else:
                cursor.execute(query, params or ())
            if commit and not conn.in_transaction:
                conn.commit()
            return cursor
        except sqlite3.IntegrityError as e:
            logger.warning(f"Integrity constraint violation: {query[:200]}... Error: {e}")
            raise TaskCacheDBError(f"Database constraint violation: {e}") from e
        except sqlite3.Error as e:
            logger.error(f"Query execution failed: {query[:200]}... Error: {e}", exc_info=True)
            raise TaskCacheDBError(f"Query execution failed: {e}") from e

    def execute_many(self, query: str, params_list: List[tuple], *, commit: bool = False) -> Optional[sqlite3.Cursor]:
        conn = self.get_connection()
        if not params_list:
            return None
        try:
            cursor = conn.cursor()
            logger.debug(f"Executing Many: {query[:150]}... with {len(params_list)} sets.")
            cursor.executemany(query, params_list)
            if commit and not conn.in_transaction:
                conn.commit()
            return cursor
        except sqlite3.Error as e:
            logger.error(f"Execute Many failed: {query[:150]}... Error: {e}", exc_info=True)
            raise TaskCacheDBError(f"Execute Many failed: {e}") from e

    # --- Transaction Context ---
    def transaction(self) -> 'TransactionContextManager':
        """
        Returns a context manager for a database transaction.

        Blocks nest: only the outermost block commits, and an exception escaping any
        block rolls the whole transaction back.
        """
        return TransactionContextManager(self)

    # --- Schema ---
    def _get_db_version(self, conn: sqlite3.Connection) -> int:
        try:
            cursor = conn.execute("SELECT version FROM db_schema_version WHERE schema_name = ? LIMIT 1",
                                  (self._SCHEMA_NAME,))
            result = cursor.fetchone()
            return result['version'] if result else 0
        except sqlite3.Error as e:
            if "no such table" in str(e).lower():
                return 0
            raise SchemaError(f"Could not determine schema version for '{self._SCHEMA_NAME}': {e}") from e

    def _initialize_schema(self):
        conn = self.get_connection()
        current_version = self._get_db_version(conn)
        target_version = self._CURRENT_SCHEMA_VERSION
        logger.info(f"Checking DB schema '{self._SCHEMA_NAME}'. Current version: {current_version}. Code supports: {target_version}")

        if current_version == target_version:
            return
        if current_version > target_version:
            raise SchemaError(
                f"Database schema '{self._SCHEMA_NAME}' version ({current_version}) is newer than supported by code ({target_version}).")
        if current_version != 0:
            raise SchemaError(
                f"Migration path undefined for '{self._SCHEMA_NAME}' from version {current_version} to {target_version}.")

        try:
            # executescript commits on its own, so the schema script runs outside transaction().
            conn.executescript(self._SCHEMA_SQL_V1)
        except sqlite3.Error as e:
            raise SchemaError(f"Applying schema v{target_version} failed: {e}") from e

        final_version = self._get_db_version(conn)
        if final_version != target_version:
            raise SchemaError(f"Schema applied but version is {final_version}, expected {target_version}.")
        logger.info(f"Database schema '{self._SCHEMA_NAME}' initialized to version {final_version}.")

    # --- Internal Helpers ---
    def _now_iso(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat(timespec='microseconds').replace('+00:00', 'Z')

    @staticmethod
    def _encode(value: Any) -> str:
        try:
            return json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise InputError(f"Value is not JSON serializable: {e}") from e

    @staticmethod
    def _decode(raw: Optional[str]) -> Any:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise TaskCacheDBError(f"Corrupt JSON document in cache: {e}") from e

    @staticmethod
    def _require_id(item: Dict[str, Any]) -> str:
        if not isinstance(item, dict):
            raise InputError(f"Entity must be a dict, got {type(item).__name__}.")
        item_id = item.get("id")
        if item_id is None or str(item_id) == "":
            raise InputError("Entity is missing an 'id'.")
        return str(item_id)

    # --- Entities ---
    def get_entities(self, entity_type: str, scope_id: str = "") -> List[Dict[str, Any]]:
        """Cached entities of one type in one scope, in the order the server last returned them."""
        cursor = self.execute_query(
            "SELECT data FROM entities WHERE entity_type = ? AND scope_id = ? ORDER BY rowid",
            (entity_type, scope_id))
        return [self._decode(row['data']) for row in cursor.fetchall()]

    def get_all_entities(self, entity_type: str) -> List[Dict[str, Any]]:
        cursor = self.execute_query(
            "SELECT data FROM entities WHERE entity_type = ? ORDER BY rowid", (entity_type,))
        return [self._decode(row['data']) for row in cursor.fetchall()]

    def get_entity(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        cursor = self.execute_query(
            "SELECT data FROM entities WHERE entity_type = ? AND id = ?", (entity_type, entity_id))
        row = cursor.fetchone()
        return self._decode(row['data']) if row else None

    def count_entities(self, entity_type: str, scope_id: str = "") -> int:
        cursor = self.execute_query(
            "SELECT COUNT(*) FROM entities WHERE entity_type = ? AND scope_id = ?", (entity_type, scope_id))
        return cursor.fetchone()[0]

    def upsert_entity(self, entity_type: str, item: Dict[str, Any], scope_id: str = "") -> None:
        entity_id = self._require_id(item)
        self.execute_query(
            """INSERT INTO entities (entity_type, id, scope_id, data, updated_at) VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(entity_type, id) DO UPDATE SET
                 scope_id = excluded.scope_id, data = excluded.data, updated_at = excluded.updated_at""",
            (entity_type, entity_id, scope_id or "", self._encode(item), self._now_iso()),
            commit=True)

    def delete_entity(self, entity_type: str, entity_id: str) -> bool:
        cursor = self.execute_query(
            "DELETE FROM entities WHERE entity_type = ? AND id = ?", (entity_type, entity_id), commit=True)
        return cursor.rowcount > 0

    def replace_entities(self, entity_type: str, scope_id: str, items: Iterable[Dict[str, Any]], *,
                         pinned_ids: Iterable[str] = (), resource_type: Optional[str] = None,
                         sync_cursor: Optional[str] = None) -> int:
        """
        Replaces every cached entity of `entity_type` in `scope_id` with `items` and stamps the
        freshness marker, all in one transaction. On any error nothing changes.

        Rows whose id is in `pinned_ids` are left exactly as they are (kept if present, not
        created if absent) so that entities with unsent local edits keep their local state.

        Returns:
            Number of rows written.
        """
        pinned: Set[str] = {str(p) for p in pinned_ids}
        now_iso = self._now_iso()
        rows = []
        for item in items:
            item_id = self._require_id(item)
            if item_id in pinned:
                continue
            rows.append((entity_type, item_id, scope_id or "", self._encode(item), now_iso))

        with self.transaction():
            if pinned:
                placeholders = ",".join("?" * len(pinned))
                self.execute_query(
                    f"DELETE FROM entities WHERE entity_type = ? AND scope_id = ? AND id NOT IN ({placeholders})",
                    (entity_type, scope_id or "", *sorted(pinned)))
            else:
                self.execute_query("DELETE FROM entities WHERE entity_type = ? AND scope_id = ?",
                                   (entity_type, scope_id or ""))
            self.execute_many(
                """INSERT INTO entities (entity_type, id, scope_id, data, updated_at) VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(entity_type, id) DO UPDATE SET
                     scope_id = excluded.scope_id, data = excluded.data, updated_at = excluded.updated_at""",
                rows)
            self.touch_sync(resource_type or entity_type, scope_id or "", sync_cursor=sync_cursor)
        logger.info(f"Replaced {entity_type} scope '{scope_id}' with {len(rows)} rows ({len(pinned)} pinned).")
        return len(rows)

    # --- Freshness markers ---
    def ttl_for(self, resource_type: str) -> float:
        return float(self.resource_ttls.get(resource_type, self.ttl_seconds))

    def touch_sync(self, resource_type: str, scope_id: str = "", sync_cursor: Optional[str] = None) -> None:
        self.execute_query(
            """INSERT INTO sync_meta (resource_type, scope_id, last_synced, sync_cursor) VALUES (?, ?, ?, ?)
               ON CONFLICT(resource_type, scope_id) DO UPDATE SET
                 last_synced = excluded.last_synced,
                 sync_cursor = COALESCE(excluded.sync_cursor, sync_meta.sync_cursor)""",
            (resource_type, scope_id or "", self._clock(), sync_cursor),
            commit=True)

    def set_sync_cursor(self, resource_type: str, scope_id: str, sync_cursor: str) -> None:
        """Stores a cursor without marking the resource fresh."""
        self.execute_query(
            """INSERT INTO sync_meta (resource_type, scope_id, last_synced, sync_cursor) VALUES (?, ?, 0, ?)
               ON CONFLICT(resource_type, scope_id) DO UPDATE SET sync_cursor = excluded.sync_cursor""",
            (resource_type, scope_id or "", sync_cursor),
            commit=True)

    def last_synced(self, resource_type: str, scope_id: str = "") -> Optional[float]:
        cursor = self.execute_query(
            "SELECT last_synced FROM sync_meta WHERE resource_type = ? AND scope_id = ?",
            (resource_type, scope_id or ""))
        row = cursor.fetchone()
        if row is None or not row['last_synced']:
            return None
        return float(row['last_synced'])

    def get_sync_cursor(self, resource_type: str, scope_id: str = "") -> Optional[str]:
        cursor = self.execute_query(
            "SELECT sync_cursor FROM sync_meta WHERE resource_type = ? AND scope_id = ?",
            (resource_type, scope_id or ""))
        row = cursor.fetchone()
        return row['sync_cursor'] if row else None

    def is_stale(self, resource_type: str, scope_id: str = "") -> bool:
        last = self.last_synced(resource_type, scope_id)
        if last is None:
            return True
        return (self._clock() - last) > self.ttl_for(resource_type)

    # --- Mutation queue ---
    def _mutation_row_to_dict(self, row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
        if row is None:
            return None
        data = dict(row)
        data['payload'] = self._decode(data.get('payload')) or {}
        data['snapshot'] = self._decode(data.get('snapshot'))
        data['force'] = bool(data.pop('force_apply', 0))
        return data

    def enqueue_mutation(self, entity_type: str, entity_id: str, action: str, payload: Dict[str, Any],
                         snapshot: Optional[Dict[str, Any]] = None, idempotency_key: Optional[str] = None) -> int:
        """
        Appends a `pending` mutation to the queue.

        Returns:
            The new mutation id.

        Raises:
            InputError: If `action` or `entity_type` is empty or the payload is not serializable.
            TaskCacheDBError: On storage failure.
        """
        if not action or not entity_type:
            raise InputError("Mutation requires an entity_type and an action.")
        key = idempotency_key or uuid.uuid4().hex
        cursor = self.execute_query(
            """INSERT INTO mutations (entity_type, entity_id, action, payload, snapshot, status, idempotency_key, created_at)
               VALUES (?, ?, ?, ?, ?, 'pending', ?, ?)""",
            (entity_type, entity_id or "", action, self._encode(payload or {}),
             self._encode(snapshot) if snapshot is not None else None, key, self._now_iso()),
            commit=True)
        mutation_id = cursor.lastrowid
        logger.debug(f"Enqueued mutation {mutation_id}: {action} {entity_type} '{entity_id}'")
        return mutation_id

    def get_mutation(self, mutation_id: int) -> Optional[Dict[str, Any]]:
        cursor = self.execute_query("SELECT * FROM mutations WHERE id = ?", (mutation_id,))
        return self._mutation_row_to_dict(cursor.fetchone())

    def next_pending_mutation(self) -> Optional[Dict[str, Any]]:
        cursor = self.execute_query(
            "SELECT * FROM mutations WHERE status = 'pending' ORDER BY created_at ASC, id ASC LIMIT 1")
        return self._mutation_row_to_dict(cursor.fetchone())

    def claim_next_pending_mutation(self) -> Optional[Dict[str, Any]]:
        """
        Atomically moves the oldest pending mutation to `flushing` and bumps its attempt counter.

        Returns None when the queue has no pending mutation or when another mutation is
        already flushing.
        """
        with self.transaction():
            busy = self.execute_query("SELECT id FROM mutations WHERE status = 'flushing' LIMIT 1").fetchone()
            if busy is not None:
                logger.debug(f"Mutation {busy['id']} is already flushing; claim refused.")
                return None
            row = self.execute_query(
                "SELECT id FROM mutations WHERE status = 'pending' ORDER BY created_at ASC, id ASC LIMIT 1").fetchone()
            if row is None:
                return None
            self.execute_query(
                "UPDATE mutations SET status = 'flushing', attempts = attempts + 1 WHERE id = ?", (row['id'],))
            claimed = self.execute_query("SELECT * FROM mutations WHERE id = ?", (row['id'],)).fetchone()
            return self._mutation_row_to_dict(claimed)

    def claim_pending_batch(self, limit: int) -> List[Dict[str, Any]]:
        """
        Returns up to `limit` oldest pending mutations with their attempt counters bumped.
        Status stays `pending`; the caller holds the flush lock while the batch is in flight.
        Returns [] while any mutation is flushing.
        """
        if limit < 1:
            raise InputError("Batch limit must be at least 1.")
        with self.transaction():
            if self.execute_query("SELECT 1 FROM mutations WHERE status = 'flushing' LIMIT 1").fetchone():
                return []
            rows = self.execute_query(
                "SELECT id FROM mutations WHERE status = 'pending' ORDER BY created_at ASC, id ASC LIMIT ?",
                (limit,)).fetchall()
            ids = [r['id'] for r in rows]
            if not ids:
                return []
            self.execute_many("UPDATE mutations SET attempts = attempts + 1 WHERE id = ?", [(i,) for i in ids])
            placeholders = ",".join("?" * len(ids))
            claimed = self.execute_query(
                f"SELECT * FROM mutations WHERE id IN ({placeholders}) ORDER BY created_at ASC, id ASC",
                tuple(ids)).fetchall()
            return [self._mutation_row_to_dict(r) for r in claimed]

    def update_mutation_status(self, mutation_id: int, status: str, note: str = "") -> bool:
        if status not in MUTATION_STATUSES:
            raise InputError(f"Invalid mutation status '{status}'. Expected one of {MUTATION_STATUSES}.")
        cursor = self.execute_query(
            "UPDATE mutations SET status = ?, note = ? WHERE id = ?", (status, note or "", mutation_id), commit=True)
        return cursor.rowcount > 0

    def set_mutation_force(self, mutation_id: int, force: bool) -> bool:
        cursor = self.execute_query(
            "UPDATE mutations SET force_apply = ? WHERE id = ?", (1 if force else 0, mutation_id), commit=True)
        return cursor.rowcount > 0

    def delete_mutation(self, mutation_id: int) -> bool:
        cursor = self.execute_query("DELETE FROM mutations WHERE id = ?", (mutation_id,), commit=True)
        return cursor.rowcount > 0

    def list_mutations(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        if status is not None:
            if status not in MUTATION_STATUSES:
                raise InputError(f"Invalid mutation status '{status}'.")
            cursor = self.execute_query(
                "SELECT * FROM mutations WHERE status = ? ORDER BY created_at ASC, id ASC", (status,))
        else:
            cursor = self.execute_query("SELECT * FROM mutations ORDER BY created_at ASC, id ASC")
        return [self._mutation_row_to_dict(r) for r in cursor.fetchall()]

    def pending_mutation_count(self) -> int:
        """Mutations not yet delivered and not stuck in conflict (pending or flushing)."""
        cursor = self.execute_query("SELECT COUNT(*) FROM mutations WHERE status IN ('pending', 'flushing')")
        return cursor.fetchone()[0]

    def conflicted_mutation_count(self) -> int:
        cursor = self.execute_query("SELECT COUNT(*) FROM mutations WHERE status = 'conflicted'")
        return cursor.fetchone()[0]

    def outstanding_entity_ids(self, entity_type: str) -> Set[str]:
        cursor = self.execute_query(
            "SELECT DISTINCT entity_id FROM mutations WHERE entity_type = ? AND entity_id != ''", (entity_type,))
        return {row['entity_id'] for row in cursor.fetchall()}

    def mutation_status_by_entity(self, entity_type: Optional[str] = None) -> Dict[str, str]:
        """Maps entity id to the most severe status among its mutations (conflicted > flushing > pending)."""
        if entity_type:
            cursor = self.execute_query(
                "SELECT entity_id, status FROM mutations WHERE entity_type = ? AND entity_id != ''", (entity_type,))
        else:
            cursor = self.execute_query("SELECT entity_id, status FROM mutations WHERE entity_id != ''")
        result: Dict[str, str] = {}
        for row in cursor.fetchall():
            current = result.get(row['entity_id'])
            if current is None or _STATUS_RANK[row['status']] > _STATUS_RANK[current]:
                result[row['entity_id']] = row['status']
        return result

    def reset_flushing_mutations(self) -> int:
        """Returns mutations left `flushing` by an interrupted process to `pending`."""
        cursor = self.execute_query("UPDATE mutations SET status = 'pending' WHERE status = 'flushing'", commit=True)
        if cursor.rowcount:
            logger.warning(f"Recovered {cursor.rowcount} mutation(s) left in 'flushing' state.")
        return cursor.rowcount

    # --- Completed task archive ---
    def save_completed_task(self, task: Dict[str, Any], completed_at: Optional[str] = None) -> None:
        task_id = self._require_id(task)
        self.execute_query(
            "INSERT OR REPLACE INTO completed_tasks (id, project_id, data, completed_at) VALUES (?, ?, ?, ?)",
            (task_id, task.get("project_id") or "", self._encode(task), completed_at or self._now_iso()),
            commit=True)

    def delete_completed_task(self, task_id: str) -> bool:
        cursor = self.execute_query("DELETE FROM completed_tasks WHERE id = ?", (task_id,), commit=True)
        return cursor.rowcount > 0

    def get_completed_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        cursor = self.execute_query("SELECT data FROM completed_tasks WHERE id = ?", (task_id,))
        row = cursor.fetchone()
        return self._decode(row['data']) if row else None

    def get_recently_completed(self, limit: int = 50) -> List[Dict[str, Any]]:
        cursor = self.execute_query(
            "SELECT data, completed_at FROM completed_tasks ORDER BY completed_at DESC LIMIT ?", (limit,))
        results = []
        for row in cursor.fetchall():
            task = self._decode(row['data'])
            task.setdefault("completed_at", row['completed_at'])
            results.append(task)
        return results

    # --- Archived projects ---
    def save_archived_project(self, project: Dict[str, Any]) -> None:
        project_id = self._require_id(project)
        self.execute_query(
            "INSERT OR REPLACE INTO archived_projects (id, data, archived_at) VALUES (?, ?, ?)",
            (project_id, self._encode(project), self._now_iso()),
            commit=True)

    def delete_archived_project(self, project_id: str) -> bool:
        cursor = self.execute_query("DELETE FROM archived_projects WHERE id = ?", (project_id,), commit=True)
        return cursor.rowcount > 0

    def get_archived_projects(self) -> List[Dict[str, Any]]:
        cursor = self.execute_query("SELECT data FROM archived_projects ORDER BY archived_at DESC, id ASC")
        return [self._decode(row['data']) for row in cursor.fetchall()]

    # --- Collaborator names ---
    def get_user_names(self) -> Dict[str, str]:
        cursor = self.execute_query("SELECT id, name FROM user_names")
        return {row['id']: row['name'] for row in cursor.fetchall()}

    def upsert_user_names(self, names: Dict[str, str]) -> int:
        """Inserts or renames users. Blank ids or names are skipped. Returns the number of rows written."""
        now_iso = self._now_iso()
        rows = [(str(user_id), str(name), now_iso) for user_id, name in (names or {}).items()
                if str(user_id or "").strip() and str(name or "").strip()]
        self.execute_many(
            """INSERT INTO user_names (id, name, updated_at) VALUES (?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET name = excluded.name, updated_at = excluded.updated_at""",
            rows, commit=True)
        return len(rows)


class TransactionContextManager:
    def __init__(self, db_instance: TaskCacheDB):
        self.db = db_instance
        self.conn: Optional[sqlite3.Connection] = None
        self.is_outermost_transaction = False

    def __enter__(self) -> sqlite3.Connection:
        self.conn = self.db.get_connection()
        if not self.conn.in_transaction:
            # IMMEDIATE takes the write lock up front so read-then-write claims cannot interleave.
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise TaskCacheDBError(f"Could not begin transaction: {e}") from e
            self.is_outermost_transaction = True
            logger.debug(f"Transaction started (outermost) on thread {threading.get_ident()}.")
        return self.conn

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self.conn or not self.is_outermost_transaction:
            return False

        if exc_type:
            logger.error(f"Transaction failed, rolling back: {exc_type.__name__} - {exc_val}")
            try:
                self.conn.rollback()
            except sqlite3.Error as rb_err:
                logger.critical(f"Rollback FAILED on thread {threading.get_ident()}: {rb_err}", exc_info=True)
            return False

        try:
            self.conn.commit()
        except sqlite3.Error as commit_err:
            logger.error(f"Commit FAILED, attempting rollback: {commit_err}", exc_info=True)
            try:
                self.conn.rollback()
            except sqlite3.Error as rb_err:
                logger.critical(f"Rollback after failed commit also FAILED: {rb_err}", exc_info=True)
            raise TaskCacheDBError(f"Commit failed: {commit_err}") from commit_err
        return False

#
# End of Task_Cache_DB.py
########################################################################################################################
