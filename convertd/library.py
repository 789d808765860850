"""
SQLite-backed media records.

Only the slice of the library the conversion engine needs lives here: file
location, duration, codecs and the converted output path.
"""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Union

from convertd.codecs import needs_conversion

logger = logging.getLogger("convertd.library")

SCHEMA = """
CREATE TABLE IF NOT EXISTS media (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  file_path TEXT UNIQUE NOT NULL,
  file_name TEXT NOT NULL,
  duration_seconds REAL DEFAULT 0,
  video_codec TEXT,
  audio_codec TEXT,
  converted_path TEXT,
  added_at TEXT DEFAULT CURRENT_TIMESTAMP
);
"""

_COLUMNS = "id, file_path, file_name, duration_seconds, video_codec, audio_codec, converted_path"


@dataclass
class MediaItem:
    id: int
    file_path: str
    file_name: str
    duration_seconds: float = 0.0
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None
    converted_path: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "MediaItem":
        return cls(
            id=row["id"],
            file_path=row["file_path"],
            file_name=row["file_name"],
            duration_seconds=float(row["duration_seconds"] or 0),
            video_codec=(row["video_codec"] or "").lower() or None,
            audio_codec=(row["audio_codec"] or "").lower() or None,
            converted_path=row["converted_path"],
        )

    @property
    def needs_conversion(self) -> bool:
        return needs_conversion(self.video_codec, self.audio_codec)


class MediaLibrary:
    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000;")
        try:
            conn.execute("PRAGMA journal_mode = WAL;")
        except sqlite3.OperationalError:
            pass
        return conn

    @contextmanager
    def session(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.session() as conn:
            conn.executescript(SCHEMA)
            # Older databases predate the converted_path column
            columns = [r["name"] for r in conn.execute("PRAGMA table_info(media)")]
            if "converted_path" not in columns:
                conn.execute("ALTER TABLE media ADD COLUMN converted_path TEXT")
                logger.info("Added converted_path column to media table")

    def add_item(self, file_path: str, *, file_name: Optional[str] = None, duration_seconds: float = 0,
                 video_codec: Optional[str] = None, audio_codec: Optional[str] = None,
                 converted_path: Optional[str] = None) -> int:
        with self.session() as conn:
            cur = conn.execute(
                "INSERT INTO media (file_path, file_name, duration_seconds, video_codec, audio_codec, converted_path) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (file_path, file_name or Path(file_path).name, duration_seconds,
                 video_codec, audio_codec, converted_path),
            )
            return int(cur.lastrowid)

    def get_item(self, item_id: int) -> Optional[MediaItem]:
        with self.session() as conn:
            row = conn.execute(f"SELECT {_COLUMNS} FROM media WHERE id = ?", (item_id,)).fetchone()
        return MediaItem.from_row(row) if row else None

    def list_incompatible(self) -> list[MediaItem]:
        with self.session() as conn:
            rows = conn.execute(f"SELECT {_COLUMNS} FROM media ORDER BY id").fetchall()
        return [item for item in map(MediaItem.from_row, rows) if item.needs_conversion]

    def list_incompatible_without_converted_output(self) -> list[MediaItem]:
        """Incompatible items whose converted file is unset or missing on disk."""
        return [
            item for item in self.list_incompatible()
            if not item.converted_path or not Path(item.converted_path).exists()
        ]

    def set_converted_path(self, item_id: int, path: Optional[str]) -> None:
        with self.session() as conn:
            conn.execute("UPDATE media SET converted_path = ? WHERE id = ?", (path, item_id))

    def clear_converted_path_for(self, path: str) -> None:
        with self.session() as conn:
            conn.execute("UPDATE media SET converted_path = NULL WHERE converted_path = ?", (path,))

    def count_converted(self) -> int:
        with self.session() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM media WHERE converted_path IS NOT NULL").fetchone()
        return int(row["n"])
