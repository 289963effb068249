#!/usr/bin/env python3
"""
Database models and operations for the feed aggregator.

All SQLite access goes through ``DatabaseQueue``: callers enqueue a named
operation with keyword arguments and await its result, and a single worker
coroutine executes operations one at a time against one connection. Writes
are therefore serialized without any locking in the callers.
"""

from os import path, access, R_OK
from time import time
import json
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Set, Any

from config import config, get_logger
from errors import StorageError
from telemetry import trace_span
from utils import html_to_text

# Module-specific logger
logger = get_logger("models")

ITEM_STATUSES = ('unread', 'read', 'starred')

_FEED_COLUMNS = (
    "id, folder_id, title, description, link, feed_link, "
    "icon IS NOT NULL AS has_icon, size, last_error, last_refreshed"
)
_ITEM_COLUMNS = "i.id, i.feed_id, i.guid, i.title, i.link, i.author, i.date, i.status"


def initialize_database(conn) -> None:
    """Apply the schema from the SQL file (statements are idempotent)."""
    cursor = conn.cursor()
    try:
        schema_sql = _read_schema_file()
        cursor.executescript(schema_sql)
        conn.commit()
        logger.info("Database schema ready")
    except Error as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")

    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")

    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

    with open(schema_path, 'r') as f:
        return f.read()


def _feed_from_row(row) -> Dict[str, Any]:
    feed = dict(row)
    feed['has_icon'] = bool(feed.get('has_icon'))
    return feed


class DatabaseQueue:
    """A queue for database operations to ensure serialized access."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the connection, apply the schema and start the worker."""
        if self.running:
            return

        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        else:
            logger.info(f"Using existing database at {self.db_path}")

        self.conn = connect(self.db_path)
        self.conn.row_factory = Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        initialize_database(self.conn)

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release any waiters so nothing hangs on a stopped queue
        for operation_id, event in self.events.items():
            self.results.setdefault(operation_id, {"error": "database worker stopped"})
            event.set()
        self.events.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith('_') or not callable(method):
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e!r}")
                    self.results[operation_id] = {"error": str(e) or e.__class__.__name__}
                    if self.conn is not None and self.conn.in_transaction:
                        self.conn.rollback()
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
                break
            except Exception as e:
                logger.error(f"Unexpected error in database worker: {e!r}")

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation and return its result.

        Raises:
            StorageError: if the operation is unknown or failed.
        """
        if not self.running:
            raise StorageError(operation_name, "database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, {"error": "no result"})
            if "error" in result:
                raise StorageError(operation_name, result["error"])

            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Folder Operations
    def list_folders(self) -> List[Dict[str, Any]]:
        cursor = self.conn.execute("SELECT id, title, is_expanded FROM folders ORDER BY title COLLATE NOCASE")
        return [{'id': row['id'], 'title': row['title'], 'is_expanded': bool(row['is_expanded'])}
                for row in cursor.fetchall()]

    def create_folder(self, title: str) -> Dict[str, Any]:
        """Create a folder, or return the existing one with the same title."""
        self.conn.execute(
            "INSERT INTO folders (title) VALUES (?) ON CONFLICT (title) DO NOTHING",
            (title,)
        )
        self.conn.commit()
        row = self.conn.execute("SELECT id, title, is_expanded FROM folders WHERE title = ?", (title,)).fetchone()
        return {'id': row['id'], 'title': row['title'], 'is_expanded': bool(row['is_expanded'])}

    def get_folder(self, folder_id: int) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT id, title, is_expanded FROM folders WHERE id = ?", (folder_id,)).fetchone()
        if not row:
            return None
        return {'id': row['id'], 'title': row['title'], 'is_expanded': bool(row['is_expanded'])}

    def rename_folder(self, folder_id: int, title: str) -> bool:
        cursor = self.conn.execute("UPDATE folders SET title = ? WHERE id = ?", (title, folder_id))
        self.conn.commit()
        return cursor.rowcount > 0

    def toggle_folder_expanded(self, folder_id: int, is_expanded: bool) -> bool:
        cursor = self.conn.execute(
            "UPDATE folders SET is_expanded = ? WHERE id = ?", (1 if is_expanded else 0, folder_id)
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def delete_folder(self, folder_id: int) -> bool:
        """Delete a folder; its feeds move to the top level."""
        cursor = self.conn.execute("DELETE FROM folders WHERE id = ?", (folder_id,))
        self.conn.commit()
        return cursor.rowcount > 0

    # Feed Management Operations
    def create_feed(self, title: str, description: str, link: str, feed_link: str,
                    folder_id: Optional[int] = None) -> Dict[str, Any]:
        """Create a feed, or move an existing subscription with the same URL into ``folder_id``."""
        self.conn.execute(
            """
            INSERT INTO feeds (title, description, link, feed_link, folder_id)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (feed_link) DO UPDATE SET folder_id = excluded.folder_id
            """,
            (title or feed_link, description or '', link or '', feed_link, folder_id)
        )
        self.conn.commit()
        row = self.conn.execute(f"SELECT {_FEED_COLUMNS} FROM feeds WHERE feed_link = ?", (feed_link,)).fetchone()
        return _feed_from_row(row)

    def list_feeds(self) -> List[Dict[str, Any]]:
        """List all feeds (without icon bytes), ordered by title."""
        try:
            cursor = self.conn.execute(f"SELECT {_FEED_COLUMNS} FROM feeds ORDER BY title COLLATE NOCASE")
            return [_feed_from_row(row) for row in cursor.fetchall()]
        except Error as e:
            logger.error(f"Error listing feeds: {e}")
            return []

    def list_feeds_missing_icons(self) -> List[Dict[str, Any]]:
        cursor = self.conn.execute(f"SELECT {_FEED_COLUMNS} FROM feeds WHERE icon IS NULL")
        return [_feed_from_row(row) for row in cursor.fetchall()]

    def get_feed(self, feed_id: int) -> Optional[Dict[str, Any]]:
        try:
            row = self.conn.execute(f"SELECT {_FEED_COLUMNS} FROM feeds WHERE id = ?", (feed_id,)).fetchone()
            return _feed_from_row(row) if row else None
        except Error as e:
            logger.error(f"Error getting feed ID {feed_id}: {e}")
            return None

    def get_feed_icon(self, feed_id: int) -> Optional[bytes]:
        row = self.conn.execute("SELECT icon FROM feeds WHERE id = ?", (feed_id,)).fetchone()
        return bytes(row['icon']) if row and row['icon'] is not None else None

    def rename_feed(self, feed_id: int, title: str) -> bool:
        cursor = self.conn.execute("UPDATE feeds SET title = ? WHERE id = ?", (title, feed_id))
        self.conn.commit()
        return cursor.rowcount > 0

    def update_feed_folder(self, feed_id: int, folder_id: Optional[int]) -> bool:
        cursor = self.conn.execute("UPDATE feeds SET folder_id = ? WHERE id = ?", (folder_id, feed_id))
        self.conn.commit()
        return cursor.rowcount > 0

    def fill_feed_metadata(self, feed_id: int, title: Optional[str] = None, link: Optional[str] = None) -> bool:
        """Fill in title/site link learned from the feed document, never overriding user edits."""
        cursor = self.conn.execute(
            """
            UPDATE feeds SET
                title = CASE WHEN ? <> '' AND (title = '' OR title = feed_link) THEN ? ELSE title END,
                link = CASE WHEN ? <> '' AND link = '' THEN ? ELSE link END
            WHERE id = ?
            """,
            (title or '', title or '', link or '', link or '', feed_id)
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def update_feed_icon(self, feed_id: int, icon: Optional[bytes]) -> bool:
        cursor = self.conn.execute("UPDATE feeds SET icon = ? WHERE id = ?", (icon, feed_id))
        self.conn.commit()
        return cursor.rowcount > 0

    def delete_feed(self, feed_id: int) -> bool:
        """Delete a feed; its items (and their search rows) cascade."""
        cursor = self.conn.execute("DELETE FROM feeds WHERE id = ?", (feed_id,))
        self.conn.commit()
        return cursor.rowcount > 0

    def set_feed_size(self, feed_id: int, size: int) -> bool:
        cursor = self.conn.execute("UPDATE feeds SET size = ? WHERE id = ?", (size, feed_id))
        self.conn.commit()
        return cursor.rowcount > 0

    def count_feed_items(self, feed_id: int) -> int:
        row = self.conn.execute("SELECT COUNT(*) FROM items WHERE feed_id = ?", (feed_id,)).fetchone()
        return int(row[0]) if row else 0

    def feed_stats(self) -> List[Dict[str, Any]]:
        """Unread and starred counts per feed."""
        cursor = self.conn.execute(
            """
            SELECT feed_id,
                   SUM(CASE WHEN status = 'unread' THEN 1 ELSE 0 END) AS unread,
                   SUM(CASE WHEN status = 'starred' THEN 1 ELSE 0 END) AS starred
            FROM items GROUP BY feed_id
            """
        )
        return [{'feed_id': row['feed_id'], 'unread': row['unread'], 'starred': row['starred']}
                for row in cursor.fetchall()]

    # Conditional Request State
    def get_http_state(self, feed_id: int) -> Dict[str, Any]:
        """Get the stored ETag/Last-Modified pair for a feed."""
        try:
            row = self.conn.execute(
                "SELECT etag, last_modified, last_refreshed FROM feeds WHERE id = ?", (feed_id,)
            ).fetchone()
            if row:
                return {'etag': row['etag'], 'last_modified': row['last_modified'],
                        'last_refreshed': row['last_refreshed']}
        except Error as e:
            logger.error(f"Error getting HTTP state for feed ID {feed_id}: {e}")
        return {'etag': None, 'last_modified': None, 'last_refreshed': 0}

    def set_http_state(self, feed_id: int, etag: Optional[str] = None, last_modified: Optional[str] = None) -> bool:
        """Store validators from the last successful fetch and stamp last_refreshed."""
        cursor = self.conn.execute(
            "UPDATE feeds SET etag = ?, last_modified = ?, last_refreshed = ? WHERE id = ?",
            (etag, last_modified, int(time()), feed_id)
        )
        self.conn.commit()
        return cursor.rowcount > 0

    # Error Tracking Operations
    def set_feed_error(self, feed_id: int, error: Optional[str]) -> bool:
        """Record (or clear, with None) the last refresh error of a feed."""
        try:
            cursor = self.conn.execute("UPDATE feeds SET last_error = ? WHERE id = ?", (error, feed_id))
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error updating feed error info for feed ID {feed_id}: {e}")
            return False

    def get_feed_errors(self) -> Dict[int, str]:
        cursor = self.conn.execute("SELECT id, last_error FROM feeds WHERE last_error IS NOT NULL")
        return {row['id']: row['last_error'] for row in cursor.fetchall()}

    # Item Management Operations
    def check_existing_guids(self, feed_id: int, guids: List[str]) -> Set[str]:
        """Check which GUIDs already exist in the database for this feed."""
        if not guids:
            return set()

        existing: Set[str] = set()
        # Stay well below SQLITE_MAX_VARIABLE_NUMBER on old builds
        for start in range(0, len(guids), 500):
            chunk = list(guids[start:start + 500])
            placeholders = ','.join(['?' for _ in chunk])
            cursor = self.conn.execute(
                f"SELECT guid FROM items WHERE feed_id = ? AND guid IN ({placeholders})",
                [feed_id] + chunk
            )
            existing.update(row[0] for row in cursor.fetchall())
        return existing

    def create_items(self, items: List[Dict[str, Any]]) -> int:
        """Insert items in order, skipping any (feed_id, guid) already stored.

        Returns:
            The number of rows actually inserted.
        """
        now = int(time())
        inserted = 0
        with self.conn:
            for item in items:
                cursor = self.conn.execute(
                    """
                    INSERT OR IGNORE INTO items
                        (feed_id, guid, title, link, author, content, date, date_arrived, status)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        item['feed_id'],
                        item['guid'],
                        item.get('title') or '',
                        item.get('link') or '',
                        item.get('author') or '',
                        item.get('content') or '',
                        item.get('date') or now,
                        now,
                        item.get('status', 'unread'),
                    )
                )
                inserted += cursor.rowcount
        return inserted

    def get_item(self, item_id: int) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(
            f"SELECT {_ITEM_COLUMNS}, i.content FROM items i WHERE i.id = ?", (item_id,)
        ).fetchone()
        return dict(row) if row else None

    def list_items(self, feed_id: Optional[int] = None, folder_id: Optional[int] = None,
                   status: Optional[str] = None, search: Optional[str] = None,
                   after: Optional[int] = None, limit: int = 20, newest_first: bool = True) -> List[Dict[str, Any]]:
        """List items (without content) matching the filter.

        ``after`` is the id of the last item of the previous page.
        """
        conditions: List[str] = []
        params: List[Any] = []
        if feed_id is not None:
            conditions.append("i.feed_id = ?")
            params.append(feed_id)
        if folder_id is not None:
            conditions.append("i.feed_id IN (SELECT id FROM feeds WHERE folder_id = ?)")
            params.append(folder_id)
        if status is not None:
            conditions.append("i.status = ?")
            params.append(status)
        if search:
            pattern = f"%{search}%"
            conditions.append("i.id IN (SELECT item_id FROM search WHERE title LIKE ? OR content LIKE ?)")
            params.extend([pattern, pattern])
        if after is not None:
            comparison = "<" if newest_first else ">"
            conditions.append(f"(i.date, i.id) {comparison} (SELECT date, id FROM items WHERE id = ?)")
            params.append(after)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        order = "DESC" if newest_first else "ASC"
        cursor = self.conn.execute(
            f"SELECT {_ITEM_COLUMNS} FROM items i {where} ORDER BY i.date {order}, i.id {order} LIMIT ?",
            params + [limit]
        )
        return [dict(row) for row in cursor.fetchall()]

    def update_item_status(self, item_id: int, status: str) -> bool:
        if status not in ITEM_STATUSES:
            raise ValueError(f"invalid item status {status!r}")
        cursor = self.conn.execute("UPDATE items SET status = ? WHERE id = ?", (status, item_id))
        self.conn.commit()
        return cursor.rowcount > 0

    def mark_items_read(self, feed_id: Optional[int] = None, folder_id: Optional[int] = None) -> int:
        query = "UPDATE items SET status = 'read' WHERE status = 'unread'"
        params: List[Any] = []
        if feed_id is not None:
            query += " AND feed_id = ?"
            params.append(feed_id)
        if folder_id is not None:
            query += " AND feed_id IN (SELECT id FROM feeds WHERE folder_id = ?)"
            params.append(folder_id)
        cursor = self.conn.execute(query, params)
        self.conn.commit()
        return cursor.rowcount

    def count_items(self) -> int:
        """Return total number of rows in items table."""
        row = self.conn.execute("SELECT COUNT(*) FROM items").fetchone()
        return int(row[0]) if row else 0

    def delete_old_items(self, retention_days: int) -> int:
        """Delete read items that arrived more than ``retention_days`` ago.

        Unread and starred items are kept. Feed sizes are recomputed.
        """
        cutoff = int(time()) - retention_days * 86400
        with self.conn:
            cursor = self.conn.execute(
                "DELETE FROM items WHERE status = 'read' AND date_arrived < ?", (cutoff,)
            )
            deleted = cursor.rowcount
            if deleted:
                self.conn.execute(
                    "UPDATE feeds SET size = (SELECT COUNT(*) FROM items WHERE items.feed_id = feeds.id)"
                )
        if deleted:
            logger.info(f"Deleted {deleted} read items older than {retention_days} days")
        return deleted

    # Search
    def sync_search(self) -> int:
        """Index items that have no search row yet. Returns the number indexed."""
        rows = self.conn.execute(
            """
            SELECT i.id, i.title, i.content FROM items i
            LEFT JOIN search s ON s.item_id = i.id
            WHERE s.item_id IS NULL
            """
        ).fetchall()
        if not rows:
            return 0
        with self.conn:
            self.conn.executemany(
                "INSERT OR REPLACE INTO search (item_id, title, content) VALUES (?, ?, ?)",
                [(row['id'], html_to_text(row['title']), html_to_text(row['content'])) for row in rows]
            )
        logger.debug(f"Indexed {len(rows)} items for search")
        return len(rows)

    # Settings
    def get_settings(self) -> Dict[str, Any]:
        """Return stored settings overrides (JSON-decoded)."""
        stored: Dict[str, Any] = {}
        for row in self.conn.execute("SELECT key, value FROM settings").fetchall():
            try:
                stored[row['key']] = json.loads(row['value'])
            except ValueError:
                logger.warning(f"Ignoring undecodable setting {row['key']!r}")
        return stored

    def update_settings(self, values: Dict[str, Any]) -> bool:
        with self.conn:
            self.conn.executemany(
                "INSERT INTO settings (key, value) VALUES (?, ?) ON CONFLICT (key) DO UPDATE SET value = excluded.value",
                [(key, json.dumps(value)) for key, value in values.items()]
            )
        return True
