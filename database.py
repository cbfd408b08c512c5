import contextlib
import logging
import sqlite3
import tempfile
from pathlib import Path
from typing import Iterator, List

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

STRUCTURED_DB_NAME = 'newpipe.db'

# Marker row the consuming app checks before it accepts an imported database
ROOM_IDENTITY_ID = 42
ROOM_IDENTITY_HASH = '7591e8039faa74d8c0517dc867af9d3e'

WATCH_STATE_TABLE = 'stream_state'
CANONICAL_WATCH_STATE_SQL = (
    "CREATE TABLE `stream_state` ("
    "`progress_time` INTEGER NOT NULL, "
    "`stream_id` INTEGER NOT NULL, "
    "PRIMARY KEY(`stream_id`), "
    "FOREIGN KEY(`stream_id`) REFERENCES `streams`(`uid`) ON UPDATE CASCADE ON DELETE CASCADE)"
)

SCHEMA_STATEMENTS = [
    "CREATE TABLE IF NOT EXISTS android_metadata (locale TEXT)",
    "CREATE TABLE IF NOT EXISTS subscriptions (uid INTEGER PRIMARY KEY AUTOINCREMENT NOT NULL, service_id INTEGER NOT NULL, url TEXT, name TEXT, avatar_url TEXT, subscriber_count INTEGER, description TEXT, notification_mode INTEGER NOT NULL)",
    "CREATE UNIQUE INDEX IF NOT EXISTS index_subscriptions_service_id_url ON subscriptions (service_id, url)",
    "CREATE TABLE IF NOT EXISTS search_history (creation_date INTEGER, service_id INTEGER NOT NULL, search TEXT, id INTEGER PRIMARY KEY AUTOINCREMENT NOT NULL)",
    "CREATE INDEX IF NOT EXISTS index_search_history_search ON search_history (search)",
    "CREATE TABLE IF NOT EXISTS streams (uid INTEGER PRIMARY KEY AUTOINCREMENT NOT NULL, service_id INTEGER NOT NULL, url TEXT NOT NULL, title TEXT NOT NULL, stream_type TEXT NOT NULL, duration INTEGER NOT NULL, uploader TEXT NOT NULL, uploader_url TEXT, thumbnail_url TEXT, view_count INTEGER, textual_upload_date TEXT, upload_date INTEGER, is_upload_date_approximation INTEGER)",
    "CREATE UNIQUE INDEX IF NOT EXISTS index_streams_service_id_url ON streams (service_id, url)",
    "CREATE TABLE IF NOT EXISTS stream_history (stream_id INTEGER NOT NULL, access_date INTEGER NOT NULL, repeat_count INTEGER NOT NULL, PRIMARY KEY(stream_id, access_date), FOREIGN KEY(stream_id) REFERENCES streams(uid) ON UPDATE CASCADE ON DELETE CASCADE)",
    CANONICAL_WATCH_STATE_SQL.replace("CREATE TABLE", "CREATE TABLE IF NOT EXISTS", 1),
    "CREATE TABLE IF NOT EXISTS playlist_stream_join (playlist_id INTEGER NOT NULL, stream_id INTEGER NOT NULL, join_index INTEGER NOT NULL, PRIMARY KEY(playlist_id, join_index), FOREIGN KEY(stream_id) REFERENCES streams(uid) ON UPDATE CASCADE ON DELETE CASCADE, FOREIGN KEY(playlist_id) REFERENCES playlists(uid) ON UPDATE CASCADE ON DELETE CASCADE)",
    "CREATE INDEX IF NOT EXISTS index_playlist_stream_join_stream_id ON playlist_stream_join (stream_id)",
    "CREATE UNIQUE INDEX IF NOT EXISTS index_playlist_stream_join_playlist_id_join_index ON playlist_stream_join (playlist_id, join_index)",
    "CREATE TABLE IF NOT EXISTS playlists (uid INTEGER PRIMARY KEY AUTOINCREMENT NOT NULL, name TEXT, is_thumbnail_permanent INTEGER NOT NULL, thumbnail_stream_id INTEGER NOT NULL, display_index INTEGER NOT NULL)",
    "CREATE TABLE IF NOT EXISTS remote_playlists (uid INTEGER PRIMARY KEY AUTOINCREMENT NOT NULL, service_id INTEGER NOT NULL, name TEXT, url TEXT, thumbnail_url TEXT, uploader TEXT, display_index INTEGER NOT NULL, stream_count INTEGER)",
    "CREATE TABLE IF NOT EXISTS feed (stream_id INTEGER NOT NULL, subscription_id INTEGER NOT NULL, PRIMARY KEY(stream_id, subscription_id), FOREIGN KEY(stream_id) REFERENCES streams(uid) ON UPDATE CASCADE ON DELETE CASCADE, FOREIGN KEY(subscription_id) REFERENCES subscriptions(uid) ON UPDATE CASCADE ON DELETE CASCADE)",
    "CREATE INDEX IF NOT EXISTS index_feed_subscription_id ON feed (subscription_id)",
    "CREATE TABLE IF NOT EXISTS feed_group_subscription_join (group_id INTEGER NOT NULL, subscription_id INTEGER NOT NULL, PRIMARY KEY(group_id, subscription_id), FOREIGN KEY(group_id) REFERENCES feed_group(uid) ON UPDATE CASCADE ON DELETE CASCADE, FOREIGN KEY(subscription_id) REFERENCES subscriptions(uid) ON UPDATE CASCADE ON DELETE CASCADE)",
    "CREATE INDEX IF NOT EXISTS index_feed_group_subscription_join_subscription_id ON feed_group_subscription_join (subscription_id)",
    "CREATE TABLE IF NOT EXISTS room_master_table (id INTEGER, identity_hash TEXT)",
    "CREATE TABLE IF NOT EXISTS feed_group (uid INTEGER PRIMARY KEY AUTOINCREMENT NOT NULL, name TEXT NOT NULL, icon_id INTEGER NOT NULL, sort_order INTEGER NOT NULL)",
    "CREATE INDEX IF NOT EXISTS index_feed_group_sort_order ON feed_group (sort_order)",
]


def connect_memory() -> sqlite3.Connection:
    """Open an empty in-memory database with explicit transaction control."""
    conn = sqlite3.connect(':memory:', isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


def load_database(data: bytes) -> sqlite3.Connection:
    """Load a SQLite file image into a fresh in-memory connection.

    Raises ``sqlite3.DatabaseError`` when ``data`` is not a SQLite database.
    """
    conn = connect_memory()
    with tempfile.TemporaryDirectory(prefix='npconv_load_') as tmp_dir:
        path = Path(tmp_dir) / 'source.db'
        path.write_bytes(data)
        source = sqlite3.connect(str(path))
        try:
            source.backup(conn)
        except sqlite3.Error:
            conn.close()
            raise
        finally:
            source.close()
    return conn


def export_database(conn: sqlite3.Connection) -> bytes:
    """Serialize ``conn`` back into a SQLite file image."""
    with tempfile.TemporaryDirectory(prefix='npconv_export_') as tmp_dir:
        path = Path(tmp_dir) / 'export.db'
        target = sqlite3.connect(str(path))
        try:
            conn.backup(target)
        finally:
            target.close()
        return path.read_bytes()


@contextlib.contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the block inside ``BEGIN``/``COMMIT``; roll back and re-raise on error."""
    conn.execute('BEGIN')
    try:
        yield conn
    except Exception:
        try:
            conn.execute('ROLLBACK')
        except sqlite3.Error as rollback_exc:
            logger.warning(f"Rollback failed: {rollback_exc}")
        raise
    else:
        conn.execute('COMMIT')


def table_exists(conn: sqlite3.Connection, table_name: str) -> bool:
    """Return ``True`` if the table exists in the connected database."""
    cursor = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
        (table_name,),
    )
    return cursor.fetchone() is not None


def list_tables(conn: sqlite3.Connection) -> List[str]:
    cursor = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
    )
    return [row[0] for row in cursor.fetchall()]


def table_columns(conn: sqlite3.Connection, table_name: str) -> List[str]:
    cursor = conn.execute(f"PRAGMA table_info('{table_name}')")
    return [row[1] for row in cursor.fetchall()]


def create_schema(conn: sqlite3.Connection) -> None:
    """Create every table and index of the structured backup format.

    Runs as a single transaction; any failing statement rolls the whole
    schema back and the error is re-raised.
    """
    logger.info("Creating structured backup schema...")
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        with transaction(conn):
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
            cursor = conn.execute("SELECT COUNT(*) FROM android_metadata")
            if cursor.fetchone()[0] == 0:
                conn.execute("INSERT INTO android_metadata (locale) VALUES ('en_US')")
    except sqlite3.Error as e:
        logger.error(f"Failed to create schema: {e}")
        raise
    logger.info("Schema created.")


def _watch_state_is_canonical(conn: sqlite3.Connection) -> bool:
    cursor = conn.execute(f"PRAGMA foreign_key_list('{WATCH_STATE_TABLE}')")
    has_foreign_key = bool(cursor.fetchall())

    cursor = conn.execute(f"PRAGMA table_info('{WATCH_STATE_TABLE}')")
    rows = cursor.fetchall()
    if len(rows) < 2:
        return False
    names = [row[1] for row in rows]
    primary_key = [row[5] for row in rows]
    columns_ok = (
        names[:2] == ['progress_time', 'stream_id']
        and primary_key[:2] == [0, 1]
        and not any(primary_key[2:])
    )
    return has_foreign_key and columns_ok


def ensure_compatible_schema(conn: sqlite3.Connection) -> bool:
    """Rebuild a legacy ``stream_state`` table into the canonical shape.

    Older producers wrote the table with the columns swapped, a composite
    primary key, or no foreign key to ``streams``. Returns ``True`` when the
    table was rebuilt. Failures are logged as warnings and leave the
    original table in place.
    """
    try:
        if table_exists(conn, WATCH_STATE_TABLE) and _watch_state_is_canonical(conn):
            logger.debug("stream_state schema OK.")
            return False

        logger.info("Patching stream_state schema to the canonical definition...")
        with transaction(conn):
            if table_exists(conn, WATCH_STATE_TABLE):
                conn.execute("DROP TABLE IF EXISTS stream_state_old")
                conn.execute("ALTER TABLE stream_state RENAME TO stream_state_old")
                conn.execute(CANONICAL_WATCH_STATE_SQL)
                try:
                    conn.execute(
                        """
                        INSERT OR REPLACE INTO stream_state (progress_time, stream_id)
                        SELECT progress_time, stream_id FROM stream_state_old
                        WHERE stream_id IN (SELECT uid FROM streams)
                        """
                    )
                except sqlite3.Error as copy_exc:
                    logger.warning(f"Could not copy old stream_state rows: {copy_exc}")
                conn.execute("DROP TABLE stream_state_old")
            else:
                conn.execute(CANONICAL_WATCH_STATE_SQL)
        logger.info("stream_state schema patched.")
        return True
    except sqlite3.Error as e:
        logger.warning(f"Failed to ensure stream_state schema: {e}")
        return False


def describe_watch_state_schema(conn: sqlite3.Connection) -> str:
    """Return a readable dump of the ``stream_state`` definition for debugging."""
    lines = ['PRAGMA table_info("stream_state"):']
    for row in conn.execute(f"PRAGMA table_info('{WATCH_STATE_TABLE}')").fetchall():
        lines.append('  ' + ', '.join(str(value) for value in tuple(row)))
    lines.append('')
    lines.append('PRAGMA foreign_key_list("stream_state"):')
    for row in conn.execute(f"PRAGMA foreign_key_list('{WATCH_STATE_TABLE}')").fetchall():
        lines.append('  ' + ', '.join(str(value) for value in tuple(row)))
    lines.append('')
    lines.append('CREATE statement:')
    cursor = conn.execute(
        "SELECT sql FROM sqlite_master WHERE type='table' AND name=?",
        (WATCH_STATE_TABLE,),
    )
    row = cursor.fetchone()
    lines.append(row[0] if row and row[0] else '(missing)')
    return '\n'.join(lines)


def write_identity_marker(conn: sqlite3.Connection) -> None:
    """Replace the identity row so repeated merges keep exactly one."""
    conn.execute("CREATE TABLE IF NOT EXISTS room_master_table (id INTEGER, identity_hash TEXT)")
    conn.execute("DELETE FROM room_master_table WHERE id = ?", (ROOM_IDENTITY_ID,))
    conn.execute(
        "INSERT INTO room_master_table (id, identity_hash) VALUES (?, ?)",
        (ROOM_IDENTITY_ID, ROOM_IDENTITY_HASH),
    )
