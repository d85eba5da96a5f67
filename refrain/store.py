"""SQLite song/fingerprint store."""

import gzip
import json
import secrets
import sqlite3
import string
import time
from datetime import datetime, timezone
from pathlib import Path

import numpy as np

from .config import DB_PATH, PIPELINE_VERSION
from .similarity import Song

SCHEMA = """
CREATE TABLE IF NOT EXISTS songs (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL,
    file_hash   TEXT,
    window_ms   REAL,
    overlap     REAL,
    added_at    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS fingerprints (
    song_id     TEXT PRIMARY KEY REFERENCES songs(id),
    vector      BLOB NOT NULL,
    length      INTEGER NOT NULL,
    version     INTEGER NOT NULL
);
"""

_ID_ALPHABET = string.digits + string.ascii_lowercase


def new_song_id() -> str:
    """Opaque id: epoch millis + 7 random base36 chars."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(7))
    return f"{int(time.time() * 1000)}_{suffix}"


def _pack(fingerprint: np.ndarray) -> bytes:
    """Gzip-compress an int32 fingerprint to bytes."""
    return gzip.compress(np.asarray(fingerprint, dtype=np.int32).tobytes())


def _unpack(blob: bytes) -> np.ndarray:
    """Decompress bytes back to an int32 fingerprint."""
    return np.frombuffer(gzip.decompress(blob), dtype=np.int32)


class Store:
    def __init__(self, path: Path = DB_PATH):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)
        self._conn.commit()

    def close(self):
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *_):
        self.close()

    # ------------------------------------------------------------------
    # Songs
    # ------------------------------------------------------------------

    def add_song(
        self,
        name: str,
        fingerprint: np.ndarray,
        song_id: str | None = None,
        file_hash: str | None = None,
        window_ms: float | None = None,
        overlap: float | None = None,
    ) -> str:
        """Insert a song record and its fingerprint. Returns the song id."""
        song_id = song_id or new_song_id()
        now = datetime.now(timezone.utc).isoformat()
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO songs (id, name, file_hash, window_ms, overlap, added_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (song_id, name, file_hash, window_ms, overlap, now),
            )
            self._conn.execute(
                "INSERT INTO fingerprints (song_id, vector, length, version) VALUES (?, ?, ?, ?)",
                (song_id, _pack(fingerprint), len(fingerprint), PIPELINE_VERSION),
            )
        return song_id

    def get_song(self, song_id: str) -> Song | None:
        row = self._conn.execute(
            """
            SELECT s.id, s.name, f.vector FROM songs s
            JOIN fingerprints f ON f.song_id = s.id
            WHERE s.id = ?
            """,
            (song_id,),
        ).fetchone()
        return Song(row["id"], row["name"], _unpack(row["vector"])) if row else None

    def all_songs(self) -> list[Song]:
        """Every current-version song, in insertion order."""
        rows = self._conn.execute(
            """
            SELECT s.id, s.name, f.vector FROM songs s
            JOIN fingerprints f ON f.song_id = s.id
            WHERE f.version = ?
            ORDER BY s.rowid
            """,
            (PIPELINE_VERSION,),
        ).fetchall()
        return [Song(row["id"], row["name"], _unpack(row["vector"])) for row in rows]

    def has_file_hash(self, file_hash: str) -> bool:
        """True if a current-version fingerprint exists for this file content."""
        row = self._conn.execute(
            """
            SELECT 1 FROM songs s JOIN fingerprints f ON f.song_id = s.id
            WHERE s.file_hash = ? AND f.version = ?
            """,
            (file_hash, PIPELINE_VERSION),
        ).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # Flat-file interchange: {"songs": [{"name", "id", "frequencies"}]}
    # ------------------------------------------------------------------

    def export_json(self, path: Path) -> int:
        songs = self.all_songs()
        payload = {
            "songs": [
                {"name": s.name, "id": s.id, "frequencies": s.fingerprint.tolist()}
                for s in songs
            ]
        }
        Path(path).write_text(json.dumps(payload, indent=2))
        return len(songs)

    def import_json(self, path: Path) -> int:
        """Add songs from a flat JSON database, skipping ids already present."""
        data = json.loads(Path(path).read_text())
        added = 0
        for entry in data.get("songs", []):
            song_id = str(entry["id"]) if entry.get("id") else None
            if song_id and self.get_song(song_id) is not None:
                continue
            self.add_song(entry["name"], np.asarray(entry["frequencies"], dtype=np.int32), song_id=song_id)
            added += 1
        return added

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self) -> dict:
        total = self._conn.execute("SELECT COUNT(*) FROM songs").fetchone()[0]
        current, values = self._conn.execute(
            "SELECT COUNT(*), COALESCE(SUM(length), 0) FROM fingerprints WHERE version = ?",
            (PIPELINE_VERSION,),
        ).fetchone()
        return {
            "total_songs": total,
            "fingerprinted": current,
            "fingerprint_values": values,
        }
