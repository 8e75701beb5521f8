import sqlite3
from contextlib import contextmanager

from .config import DATA_DIR

DB_PATH = DATA_DIR / "comicshelf.db"


def ensure_db_dir() -> None:
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)


def get_conn() -> sqlite3.Connection:
    ensure_db_dir()
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def db() -> sqlite3.Connection:
    conn = get_conn()
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


def init_db() -> None:
    with db() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS comics (
              id INTEGER PRIMARY KEY,
              title TEXT NOT NULL,
              filename TEXT NOT NULL UNIQUE,
              thumbnail TEXT,
              role TEXT NOT NULL DEFAULT 'public',
              page_count INTEGER NOT NULL DEFAULT 0,
              uploaded_at TEXT NOT NULL DEFAULT (datetime('now'))
            );

            CREATE INDEX IF NOT EXISTS comics_title ON comics(title COLLATE NOCASE);
            """
        )
        ensure_comic_blank_page_column(conn)


def ensure_comic_blank_page_column(conn: sqlite3.Connection) -> None:
    cols = [r["name"] for r in conn.execute("PRAGMA table_info(comics)").fetchall()]
    if "has_blank_page" not in cols:
        conn.execute("ALTER TABLE comics ADD COLUMN has_blank_page INTEGER NOT NULL DEFAULT 0")
