import sqlite3
import json
import asyncio
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from .config import DB_PATH

logger = logging.getLogger(__name__)


class ConnectionPool:
    """
    Thread-keyed SQLite connection pool.

    - One connection per thread (SQLite threading requirement); async code
      reaches the database through asyncio.to_thread, so each worker thread
      gets its own connection
    - Periodic cleanup of connections owned by dead threads
    - Transaction nesting tracked per thread
    """

    def __init__(self, db_path, max_size: int = 50):
        self._db_path = db_path
        self._max_size = max_size

        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._transaction_depth: dict[int, int] = {}
        self._last_cleanup = time.time()
        self._cleanup_interval = 60

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        return conn

    def _maybe_cleanup(self, force: bool = False):
        """Close connections whose owning thread has exited."""
        now = time.time()
        if not force and now - self._last_cleanup < self._cleanup_interval:
            return

        self._last_cleanup = now
        alive_threads = {t.ident for t in threading.enumerate()}
        dead_threads = set(self._connections.keys()) - alive_threads

        for thread_id in dead_threads:
            conn = self._connections.pop(thread_id, None)
            self._transaction_depth.pop(thread_id, None)
            if conn:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")

        if dead_threads:
            logger.debug(f"Connection pool cleanup: removed {len(dead_threads)} dead connections")

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection for the current thread, creating if necessary."""
        thread_id = threading.get_ident()

        with self._lock:
            self._maybe_cleanup()
            conn = self._connections.get(thread_id)
            if conn is None:
                if len(self._connections) >= self._max_size:
                    self._maybe_cleanup(force=True)
                    if len(self._connections) >= self._max_size:
                        raise RuntimeError(
                            f"Connection pool exhausted ({self._max_size} connections)."
                        )
                conn = self._create_connection()
                self._connections[thread_id] = conn
                self._transaction_depth[thread_id] = 0
            return conn

    def get_transaction_depth(self) -> int:
        return self._transaction_depth.get(threading.get_ident(), 0)

    def increment_transaction_depth(self):
        thread_id = threading.get_ident()
        self._transaction_depth[thread_id] = self._transaction_depth.get(thread_id, 0) + 1

    def decrement_transaction_depth(self):
        thread_id = threading.get_ident()
        self._transaction_depth[thread_id] = max(0, self._transaction_depth.get(thread_id, 0) - 1)

    def close_all(self):
        with self._lock:
            for conn in self._connections.values():
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection: {e}")
            self._connections.clear()
            self._transaction_depth.clear()


# Global pool instance
_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def _get_pool() -> ConnectionPool:
    """Get or create the global connection pool."""
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                DB_PATH.parent.mkdir(exist_ok=True, parents=True)
                _pool = ConnectionPool(DB_PATH)
    return _pool


@contextmanager
def get_db(read_only: bool = False):
    """
    Get database connection with proper transaction handling.

    Only the outermost context commits or rolls back; nested contexts on the
    same thread join the outer transaction.
    """
    pool = _get_pool()
    conn = pool.get_connection()

    is_outermost = pool.get_transaction_depth() == 0
    pool.increment_transaction_depth()

    try:
        yield conn
        if is_outermost and not read_only:
            conn.commit()
    except Exception:
        if is_outermost:
            conn.rollback()
        raise
    finally:
        pool.decrement_transaction_depth()


def close_pool():
    """Close the connection pool. Call on application shutdown."""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


def init_db() -> None:
    DB_PATH.parent.mkdir(exist_ok=True, parents=True)
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS movies (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tmdb_id INTEGER UNIQUE,
                title TEXT NOT NULL,
                year INTEGER,
                genres TEXT,        -- JSON list of genre names
                overview TEXT,
                poster_url TEXT,
                rating REAL,        -- 0-10 community rating
                popularity REAL,
                runtime INTEGER,
                source TEXT,
                updated_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_movies_title ON movies(title COLLATE NOCASE);
            CREATE INDEX IF NOT EXISTS idx_movies_year ON movies(year);

            -- Notes the AI emits about a user's taste, recorded off the response path
            CREATE TABLE IF NOT EXISTS learning_notes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                note TEXT NOT NULL,
                created_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_learning_notes_user ON learning_notes(user_id);
        """)


def load_json(val):
    """Safely load a JSON list from a db field."""
    if not val:
        return []
    if isinstance(val, list):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{str(val)[:50]}...': {e}")
        return []


@dataclass
class MovieRecord:
    title: str
    year: int | None = None
    genres: list[str] = field(default_factory=list)
    overview: str | None = None
    poster_url: str | None = None
    rating: float | None = None
    popularity: float | None = None
    runtime: int | None = None
    tmdb_id: int | None = None
    source: str | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "MovieRecord":
        return cls(
            id=row["id"],
            tmdb_id=row["tmdb_id"],
            title=row["title"],
            year=row["year"],
            genres=load_json(row["genres"]),
            overview=row["overview"],
            poster_url=row["poster_url"],
            rating=row["rating"],
            popularity=row["popularity"],
            runtime=row["runtime"],
            source=row["source"],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tmdb_id": self.tmdb_id,
            "title": self.title,
            "year": self.year,
            "genres": list(self.genres),
            "overview": self.overview,
            "poster_url": self.poster_url,
            "rating": self.rating,
            "popularity": self.popularity,
            "runtime": self.runtime,
            "source": self.source,
        }


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def find_movie_by_title(title: str, year: int | None = None) -> MovieRecord | None:
    """
    Case-insensitive title lookup, first match only.

    Substring matches are accepted; an exact title wins over a partial one,
    then a matching year, then popularity.
    """
    if not title or not title.strip():
        return None
    needle = title.strip()

    with get_db(read_only=True) as conn:
        row = conn.execute("""
            SELECT * FROM movies
            WHERE title LIKE ? ESCAPE '\\'
            ORDER BY (lower(title) = lower(?)) DESC,
                     (year IS NOT NULL AND year = ?) DESC,
                     COALESCE(popularity, 0) DESC,
                     id ASC
            LIMIT 1
        """, (f"%{_escape_like(needle)}%", needle, year)).fetchone()

    return MovieRecord.from_row(row) if row else None


def get_movie_by_tmdb_id(tmdb_id: int) -> MovieRecord | None:
    with get_db(read_only=True) as conn:
        row = conn.execute("SELECT * FROM movies WHERE tmdb_id = ?", (tmdb_id,)).fetchone()
    return MovieRecord.from_row(row) if row else None


def upsert_movie(record: MovieRecord) -> int:
    """
    Insert or update a movie and return its row id.

    Rows are matched on tmdb_id when one is known, otherwise on the
    (case-insensitive) title and year.
    """
    now = datetime.now().isoformat()
    values = (
        record.title,
        record.year,
        json.dumps(list(record.genres)),
        record.overview,
        record.poster_url,
        record.rating,
        record.popularity,
        record.runtime,
        record.source,
        now,
    )

    with get_db() as conn:
        existing = None
        if record.tmdb_id is not None:
            existing = conn.execute(
                "SELECT id FROM movies WHERE tmdb_id = ?", (record.tmdb_id,)
            ).fetchone()
        if existing is None:
            existing = conn.execute(
                "SELECT id FROM movies WHERE lower(title) = lower(?) AND year IS ?",
                (record.title, record.year),
            ).fetchone()

        if existing is not None:
            conn.execute("""
                UPDATE movies SET
                    title = ?, year = ?, genres = ?, overview = ?, poster_url = ?,
                    rating = ?, popularity = ?, runtime = ?, source = ?, updated_at = ?,
                    tmdb_id = COALESCE(?, tmdb_id)
                WHERE id = ?
            """, values + (record.tmdb_id, existing["id"]))
            movie_id = existing["id"]
        else:
            cursor = conn.execute("""
                INSERT INTO movies
                    (title, year, genres, overview, poster_url, rating, popularity,
                     runtime, source, updated_at, tmdb_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, values + (record.tmdb_id,))
            movie_id = cursor.lastrowid

    record.id = movie_id
    return movie_id


def count_movies() -> int:
    with get_db(read_only=True) as conn:
        return conn.execute("SELECT COUNT(*) FROM movies").fetchone()[0]


def save_learning_notes(user_id: str, notes: list[str]) -> int:
    """Store AI learning notes for a user. Returns number of rows written."""
    rows = [
        (user_id, str(note).strip(), datetime.now().isoformat())
        for note in notes
        if note and str(note).strip()
    ]
    if not rows:
        return 0
    with get_db() as conn:
        conn.executemany(
            "INSERT INTO learning_notes (user_id, note, created_at) VALUES (?, ?, ?)",
            rows,
        )
    return len(rows)


def load_learning_notes(user_id: str, limit: int = 50) -> list[str]:
    with get_db(read_only=True) as conn:
        rows = conn.execute(
            "SELECT note FROM learning_notes WHERE user_id = ? ORDER BY id DESC LIMIT ?",
            (user_id, limit),
        ).fetchall()
    return [row["note"] for row in rows]


class MovieStore:
    """Async view of the canonical movie store for event-loop callers."""

    async def find(self, title_query: str, year: int | None = None) -> MovieRecord | None:
        return await asyncio.to_thread(find_movie_by_title, title_query, year)

    async def upsert(self, record: MovieRecord) -> int:
        return await asyncio.to_thread(upsert_movie, record)

    async def save_learning_notes(self, user_id: str, notes: list[str]) -> int:
        return await asyncio.to_thread(save_learning_notes, user_id, notes)
