#!/usr/bin/env python3
"""
Database models and operations for the resource ingestor.

This module contains all database-related classes and functions, providing a
clean separation between data access and the fetch/extract pipeline. Every
operation runs on the single DatabaseQueue worker, so writes are serialized.
"""

from os import path, access, R_OK
from time import time
from sqlite3 import connect, Row
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any

from config import get_logger
from errors import DatabaseError
from telemetry import trace_span

# Module-specific logger
logger = get_logger("models")

DEFAULT_SCHEMA_PATH = path.join(path.dirname(path.abspath(__file__)), "schema.sql")
SCHEMA_FILE_SIZE_LIMIT = 10 * 1024 * 1024
# Public methods that are not database operations
WORKER_METHODS = {'start', 'stop', 'execute'}


def initialize_database(conn, schema_path: str = DEFAULT_SCHEMA_PATH) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='links'")
        links_table_exists = cursor.fetchone() is not None

        if not links_table_exists:
            logger.info("Database is new or empty. Initializing schema.")
            schema_sql = _read_schema_file(schema_path)
            cursor.executescript(schema_sql)
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.debug("Database already exists with proper schema")
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file(schema_path: str) -> str:
    """Read the schema from the SQL file."""
    try:
        # Check if file exists and is accessible before attempting to read it
        if not path.isfile(schema_path):
            raise FileNotFoundError(f"Schema file not found at {schema_path}")

        if not access(schema_path, R_OK):
            raise PermissionError(f"No read permission for schema file at {schema_path}")

        # Check file size to prevent reading extremely large files
        file_size = path.getsize(schema_path)
        if file_size > SCHEMA_FILE_SIZE_LIMIT:
            raise ValueError(f"Schema file too large: {file_size} bytes (limit: {SCHEMA_FILE_SIZE_LIMIT} bytes)")

        with open(schema_path, 'r') as f:
            return f.read()
    except Exception as e:
        logger.error(f"Error reading schema file: {e}")
        raise


def _now(now: Optional[int]) -> int:
    return int(time()) if now is None else int(now)


class DatabaseQueue:
    """A queue for database operations to ensure thread safety.

    Operations are the public methods below; callers run them through
    `await db.execute('operation_name', **params)`.
    """

    def __init__(self, db_path: str, schema_path: str = DEFAULT_SCHEMA_PATH):
        self.db_path = db_path
        self.schema_path = schema_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the database and start the worker."""
        if self.running:
            return

        if path.isfile(self.db_path):
            logger.info(f"Using existing database at {self.db_path}")
        else:
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

        self.conn = connect(self.db_path)
        self.conn.row_factory = Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        initialize_database(self.conn, self.schema_path)

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

        # Wake up any waiters so nothing hangs on a stopped queue
        for operation_id, event in self.events.items():
            self.results.setdefault(operation_id, {"error": "Database worker stopped"})
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
                    if operation_name.startswith('_') or operation_name in WORKER_METHODS or not callable(method):
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Database worker cancelled")
                break
            except Exception as e:
                logger.error(f"Unexpected error in database worker: {e}")

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
        """Execute a database operation.

        Raises:
            DatabaseError: If the operation is unknown or failed in the worker.
        """
        if not self.running:
            raise DatabaseError("Database worker is not running", operation=operation_name)

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, {"error": "No result"})
            if "error" in result:
                raise DatabaseError(result["error"], operation=operation_name)

            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # User and collection operations
    def create_user(self, username: str, now: Optional[int] = None) -> int:
        """Create a user along with their bookmarks collection."""
        created_at = _now(now)
        with self.conn:
            cursor = self.conn.execute(
                "INSERT INTO users (username, created_at) VALUES (?, ?)",
                (username, created_at)
            )
            user_id = cursor.lastrowid
            self.conn.execute(
                "INSERT INTO collections (user_id, name, type, created_at) VALUES (?, 'Bookmarks', 'bookmarks', ?)",
                (user_id, created_at)
            )
        return user_id

    def get_bookmarks_collection_id(self, user_id: int) -> Optional[int]:
        row = self.conn.execute(
            "SELECT id FROM collections WHERE user_id = ? AND type = 'bookmarks'",
            (user_id,)
        ).fetchone()
        return row['id'] if row else None

    def create_collection(self, user_id: int, name: str, is_public: bool = False,
                          description: str = '', now: Optional[int] = None) -> int:
        """Create a regular (user-curated) collection."""
        with self.conn:
            cursor = self.conn.execute(
                "INSERT INTO collections (user_id, name, description, type, is_public, created_at) "
                "VALUES (?, ?, ?, 'collection', ?, ?)",
                (user_id, name, description, int(is_public), _now(now))
            )
        return cursor.lastrowid

    def create_feed_collection(self, user_id: int, feed_url: str, name: Optional[str] = None,
                               now: Optional[int] = None) -> int:
        """Create a public collection backed by a syndication feed."""
        with self.conn:
            cursor = self.conn.execute(
                "INSERT INTO collections (user_id, name, type, is_public, feed_url, created_at) "
                "VALUES (?, ?, 'feed', 1, ?, ?)",
                (user_id, name or feed_url, feed_url, _now(now))
            )
        return cursor.lastrowid

    def get_collection(self, collection_id: int) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM collections WHERE id = ?", (collection_id,)).fetchone()
        return dict(row) if row else None

    def follow_collection(self, user_id: int, collection_id: int, now: Optional[int] = None) -> bool:
        with self.conn:
            cursor = self.conn.execute(
                "INSERT OR IGNORE INTO followed_collections (user_id, collection_id, created_at) VALUES (?, ?, ?)",
                (user_id, collection_id, _now(now))
            )
        return cursor.rowcount > 0

    def create_topic(self, label: str) -> int:
        with self.conn:
            self.conn.execute("INSERT OR IGNORE INTO topics (label) VALUES (?)", (label,))
        return self.conn.execute("SELECT id FROM topics WHERE label = ?", (label,)).fetchone()['id']

    def attach_topic_to_collection(self, collection_id: int, topic_id: int) -> bool:
        with self.conn:
            cursor = self.conn.execute(
                "INSERT OR IGNORE INTO collections_to_topics (collection_id, topic_id) VALUES (?, ?)",
                (collection_id, topic_id)
            )
        return cursor.rowcount > 0

    def attach_topic_to_user(self, user_id: int, topic_id: int) -> bool:
        with self.conn:
            cursor = self.conn.execute(
                "INSERT OR IGNORE INTO users_to_topics (user_id, topic_id) VALUES (?, ?)",
                (user_id, topic_id)
            )
        return cursor.rowcount > 0

    # Link operations
    def create_link(self, user_id: int, url: str, title: Optional[str] = None,
                    collection_ids: Optional[List[int]] = None, is_hidden: bool = False,
                    reading_time: int = 0, feed_entry_id: Optional[str] = None,
                    now: Optional[int] = None) -> int:
        """Create an unfetched link and attach it to the given collections."""
        created_at = _now(now)
        with self.conn:
            cursor = self.conn.execute(
                "INSERT INTO links (user_id, url, title, created_at, reading_time, is_hidden, feed_entry_id) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (user_id, url, title or url, created_at, reading_time, int(is_hidden), feed_entry_id)
            )
            link_id = cursor.lastrowid
            for collection_id in collection_ids or []:
                self.conn.execute(
                    "INSERT OR IGNORE INTO links_to_collections (link_id, collection_id, created_at) VALUES (?, ?, ?)",
                    (link_id, collection_id, created_at)
                )
        return link_id

    def get_link(self, link_id: int) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM links WHERE id = ?", (link_id,)).fetchone()
        return dict(row) if row else None

    def import_urls(self, user_id: int, urls: List[str], collection_id: Optional[int] = None,
                    now: Optional[int] = None) -> int:
        """Create unfetched links for URLs the user does not have yet.

        Links go to the given collection, or the user's bookmarks when none is
        given. Returns the number of links created.
        """
        if collection_id is None:
            collection_id = self.get_bookmarks_collection_id(user_id)
        if collection_id is None:
            raise ValueError(f"User {user_id} has no bookmarks collection")

        created_at = _now(now)
        created = 0
        with self.conn:
            for url in dict.fromkeys(urls):
                existing = self.conn.execute(
                    "SELECT id FROM links WHERE user_id = ? AND url = ?", (user_id, url)
                ).fetchone()
                if existing:
                    link_id = existing['id']
                else:
                    cursor = self.conn.execute(
                        "INSERT INTO links (user_id, url, title, created_at) VALUES (?, ?, ?, ?)",
                        (user_id, url, url, created_at)
                    )
                    link_id = cursor.lastrowid
                    created += 1
                self.conn.execute(
                    "INSERT OR IGNORE INTO links_to_collections (link_id, collection_id, created_at) VALUES (?, ?, ?)",
                    (link_id, collection_id, created_at)
                )
        return created

    def list_link_fetch_candidates(self, max_failures: int) -> List[Dict[str, Any]]:
        """List links that may be due: never fetched, or failed without reaching the ceiling.

        The retry scheduler makes the final decision based on the backoff.
        """
        rows = self.conn.execute(
            """
            SELECT * FROM links
            WHERE fetched_at IS NULL
            OR (fetched_error IS NOT NULL AND fetched_count <= ?)
            """,
            (max_failures,)
        ).fetchall()
        return [dict(row) for row in rows]

    def update_link_fetch(self, link_id: int, fetched_at: int, fetched_code: int,
                          fetched_error: Optional[str] = None, title: Optional[str] = None,
                          reading_time: Optional[int] = None, image_url: Optional[str] = None) -> bool:
        """Record the outcome of a link fetch.

        A failure increments the consecutive failure count, a success resets it.
        Extracted fields are only written when provided and non-empty.
        """
        updates = ["fetched_at = ?", "fetched_code = ?", "fetched_error = ?"]
        params: List[Any] = [fetched_at, fetched_code, fetched_error]
        if fetched_error is None:
            updates.append("fetched_count = 0")
        else:
            updates.append("fetched_count = fetched_count + 1")
        if title:
            updates.append("title = ?")
            params.append(title)
        if reading_time is not None:
            updates.append("reading_time = ?")
            params.append(reading_time)
        if image_url:
            updates.append("image_url = ?")
            params.append(image_url)
        params.append(link_id)

        with self.conn:
            cursor = self.conn.execute(f"UPDATE links SET {', '.join(updates)} WHERE id = ?", tuple(params))
        return cursor.rowcount > 0

    def reset_link_failures(self, link_id: int) -> bool:
        """Make a link due again by clearing its fetch history."""
        with self.conn:
            cursor = self.conn.execute(
                "UPDATE links SET fetched_at = NULL, fetched_code = 0, fetched_error = NULL, fetched_count = 0 "
                "WHERE id = ?",
                (link_id,)
            )
        return cursor.rowcount > 0

    # Feed operations
    def list_feed_fetch_candidates(self, max_failures: int) -> List[Dict[str, Any]]:
        """List feed collections below the failure ceiling."""
        rows = self.conn.execute(
            "SELECT * FROM collections WHERE type = 'feed' AND feed_fetched_count <= ?",
            (max_failures,)
        ).fetchall()
        return [dict(row) for row in rows]

    def update_feed_fetch(self, collection_id: int, fetched_at: int, fetched_code: int,
                          fetched_error: Optional[str] = None, feed_hash: Optional[str] = None) -> bool:
        """Record the outcome of a feed fetch (same failure-count rules as links)."""
        updates = ["feed_fetched_at = ?", "feed_fetched_code = ?", "feed_fetched_error = ?"]
        params: List[Any] = [fetched_at, fetched_code, fetched_error]
        if fetched_error is None:
            updates.append("feed_fetched_count = 0")
        else:
            updates.append("feed_fetched_count = feed_fetched_count + 1")
        if feed_hash is not None:
            updates.append("feed_last_hash = ?")
            params.append(feed_hash)
        params.append(collection_id)

        with self.conn:
            cursor = self.conn.execute(f"UPDATE collections SET {', '.join(updates)} WHERE id = ?", tuple(params))
        return cursor.rowcount > 0

    def update_feed_metadata(self, collection_id: int, name: Optional[str] = None,
                             description: Optional[str] = None, feed_site_url: Optional[str] = None) -> bool:
        updates = []
        params: List[Any] = []
        if name:
            updates.append("name = ?")
            params.append(name)
        if description:
            updates.append("description = ?")
            params.append(description)
        if feed_site_url:
            updates.append("feed_site_url = ?")
            params.append(feed_site_url)
        if not updates:
            return False
        params.append(collection_id)
        with self.conn:
            cursor = self.conn.execute(f"UPDATE collections SET {', '.join(updates)} WHERE id = ?", tuple(params))
        return cursor.rowcount > 0

    def update_feed_image(self, collection_id: int, image_fetched_at: int, image_url: Optional[str] = None) -> bool:
        with self.conn:
            cursor = self.conn.execute(
                "UPDATE collections SET image_fetched_at = ?, image_url = COALESCE(?, image_url) WHERE id = ?",
                (image_fetched_at, image_url or None, collection_id)
            )
        return cursor.rowcount > 0

    def list_link_ids_by_urls_for_collection(self, collection_id: int) -> Dict[str, int]:
        """Map the URLs of a collection's links to their ids."""
        rows = self.conn.execute(
            """
            SELECT l.id, l.url FROM links l
            JOIN links_to_collections lc ON lc.link_id = l.id
            WHERE lc.collection_id = ?
            """,
            (collection_id,)
        ).fetchall()
        return {row['url']: row['id'] for row in rows}

    def list_links_by_entry_ids_for_collection(self, collection_id: int) -> Dict[str, Dict[str, Any]]:
        """Map feed entry ids of a collection's links to {'id', 'url'}."""
        rows = self.conn.execute(
            """
            SELECT l.id, l.url, l.feed_entry_id FROM links l
            JOIN links_to_collections lc ON lc.link_id = l.id
            WHERE lc.collection_id = ? AND l.feed_entry_id IS NOT NULL
            """,
            (collection_id,)
        ).fetchall()
        return {row['feed_entry_id']: {'id': row['id'], 'url': row['url']} for row in rows}

    def apply_feed_plan(self, collection_id: int, user_id: int, creates: List[Dict[str, Any]],
                        renames: List[Dict[str, Any]], now: Optional[int] = None) -> Dict[str, int]:
        """Persist a reconciliation plan for one feed in a single transaction.

        creates: dicts with url, title, created_at, feed_entry_id
        renames: dicts with link_id, url, title, created_at

        Either every change is written or none is.
        """
        attached_at = _now(now)
        with self.conn:
            for rename in renames:
                self.conn.execute(
                    "UPDATE links SET url = ?, title = ?, created_at = ?, fetched_at = NULL WHERE id = ?",
                    (rename['url'], rename['title'], rename['created_at'], rename['link_id'])
                )
            for create in creates:
                cursor = self.conn.execute(
                    "INSERT INTO links (user_id, url, title, created_at, feed_entry_id) VALUES (?, ?, ?, ?, ?)",
                    (user_id, create['url'], create['title'], create['created_at'], create['feed_entry_id'])
                )
                self.conn.execute(
                    "INSERT INTO links_to_collections (link_id, collection_id, created_at) VALUES (?, ?, ?)",
                    (cursor.lastrowid, collection_id, attached_at)
                )
        return {'created': len(creates), 'renamed': len(renames)}

    # Fetch log operations
    def log_fetch(self, url: str, host: str, fetch_type: str, created_at: Optional[int] = None) -> bool:
        with self.conn:
            self.conn.execute(
                "INSERT INTO fetch_logs (url, host, type, created_at) VALUES (?, ?, ?, ?)",
                (url, host, fetch_type, _now(created_at))
            )
        return True

    def count_fetches(self, host: str, fetch_type: str, since: int) -> int:
        """Count logged requests to a host for a purpose since a timestamp."""
        row = self.conn.execute(
            "SELECT COUNT(*) FROM fetch_logs WHERE host = ? AND type = ? AND created_at >= ?",
            (host, fetch_type, since)
        ).fetchone()
        return int(row[0]) if row else 0

    def prune_fetch_logs(self, before: int) -> int:
        """Delete fetch log rows older than a timestamp, returning the count."""
        with self.conn:
            cursor = self.conn.execute("DELETE FROM fetch_logs WHERE created_at < ?", (before,))
        deleted = cursor.rowcount
        if deleted > 0:
            logger.info(f"Pruned {deleted} fetch log rows")
        return deleted

    # News operations
    def list_bookmarks_for_news(self, user_id: int) -> List[Dict[str, Any]]:
        """Links in the user's bookmarks collection, randomly ordered."""
        rows = self.conn.execute(
            """
            SELECT l.* FROM links l
            JOIN links_to_collections lc ON lc.link_id = l.id
            JOIN collections c ON c.id = lc.collection_id
            WHERE c.user_id = ? AND l.user_id = ? AND c.type = 'bookmarks'
            GROUP BY l.id
            ORDER BY random()
            """,
            (user_id, user_id)
        ).fetchall()
        return [dict(row) for row in rows]

    def list_followed_for_news(self, user_id: int, limit: int = 500) -> List[Dict[str, Any]]:
        """Visible links of public collections the user follows, minus URLs already seen."""
        rows = self.conn.execute(
            """
            SELECT l.*, c.id AS via_collection_id FROM links l
            JOIN links_to_collections lc ON lc.link_id = l.id
            JOIN collections c ON c.id = lc.collection_id
            JOIN followed_collections fc ON fc.collection_id = c.id
            WHERE fc.user_id = ?
            AND l.is_hidden = 0
            AND c.is_public = 1
            AND l.url NOT IN (SELECT nl.url FROM news_links nl WHERE nl.user_id = ?)
            GROUP BY l.id, c.id
            ORDER BY random()
            LIMIT ?
            """,
            (user_id, user_id, limit)
        ).fetchall()
        return [dict(row) for row in rows]

    def list_topics_for_news(self, user_id: int, limit: int = 500) -> List[Dict[str, Any]]:
        """Visible links of other users in collections tagged with the user's topics."""
        rows = self.conn.execute(
            """
            SELECT l.*, ct.collection_id AS via_collection_id FROM links l
            JOIN links_to_collections lc ON lc.link_id = l.id
            JOIN collections_to_topics ct ON ct.collection_id = lc.collection_id
            WHERE ct.topic_id IN (SELECT ut.topic_id FROM users_to_topics ut WHERE ut.user_id = ?)
            AND l.is_hidden = 0
            AND l.user_id != ?
            AND l.url NOT IN (SELECT nl.url FROM news_links nl WHERE nl.user_id = ?)
            GROUP BY l.id, ct.collection_id
            ORDER BY random()
            LIMIT ?
            """,
            (user_id, user_id, user_id, limit)
        ).fetchall()
        return [dict(row) for row in rows]

    def mark_news_seen(self, user_id: int, entries: List[Dict[str, Any]], now: Optional[int] = None) -> int:
        """Record URLs placed in the user's news queue.

        entries: dicts with url, via_type and via_collection_id
        """
        created_at = _now(now)
        inserted = 0
        with self.conn:
            for entry in entries:
                cursor = self.conn.execute(
                    "INSERT OR IGNORE INTO news_links (user_id, url, via_type, via_collection_id, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (user_id, entry['url'], entry.get('via_type'), entry.get('via_collection_id'), created_at)
                )
                inserted += cursor.rowcount
        return inserted

    # Status
    def get_status_counts(self, max_failures: int) -> Dict[str, int]:
        """Counters for the `status` command."""
        def scalar(sql: str, params: tuple = ()) -> int:
            row = self.conn.execute(sql, params).fetchone()
            return int(row[0]) if row and row[0] is not None else 0

        return {
            'links': scalar("SELECT COUNT(*) FROM links"),
            'links_unfetched': scalar("SELECT COUNT(*) FROM links WHERE fetched_at IS NULL"),
            'links_failing': scalar(
                "SELECT COUNT(*) FROM links WHERE fetched_error IS NOT NULL AND fetched_count <= ?", (max_failures,)
            ),
            'links_abandoned': scalar("SELECT COUNT(*) FROM links WHERE fetched_count > ?", (max_failures,)),
            'feeds': scalar("SELECT COUNT(*) FROM collections WHERE type = 'feed'"),
            'feeds_failing': scalar(
                "SELECT COUNT(*) FROM collections WHERE type = 'feed' AND feed_fetched_error IS NOT NULL"
            ),
            'fetch_logs': scalar("SELECT COUNT(*) FROM fetch_logs"),
        }
