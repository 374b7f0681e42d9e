import json
import sqlite3
import time
from typing import List

from murmurd.errors import StoreError

# A message sent to our own user id is stored once per direction
SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    key TEXT NOT NULL,
    direction TEXT NOT NULL,
    envelope TEXT NOT NULL,
    stored_at INTEGER NOT NULL,
    UNIQUE (key, direction)
)
"""


class MessageStore:
    """Ordered message history keyed by envelope location.

    ``path`` may be ``":memory:"`` for a store that lives only as long as the
    process. sqlite errors surface as StoreError.
    """

    def __init__(self, path=":memory:"):
        self.path = path
        try:
            self._conn = sqlite3.connect(path)
            self._conn.execute(SCHEMA)
            self._conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Could not open message store {path}: {e}") from e

    def put(self, key, direction, envelope) -> bool:
        """Store an envelope; returns False if it was already stored in that direction."""
        try:
            with self._conn:
                cur = self._conn.execute(
                    "INSERT OR IGNORE INTO messages (key, direction, envelope, stored_at) VALUES (?, ?, ?, ?)",
                    (key, direction, json.dumps(envelope), int(time.time() * 1000)),
                )
        except sqlite3.Error as e:
            raise StoreError(f"Could not store message {key}: {e}") from e
        return cur.rowcount == 1

    def all(self) -> List[dict]:
        try:
            rows = self._conn.execute(
                "SELECT key, direction, envelope FROM messages ORDER BY seq"
            ).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Could not read message history: {e}") from e
        return [_to_message(key, direction, envelope) for key, direction, envelope in rows]

    def purge(self):
        try:
            with self._conn:
                self._conn.execute("DELETE FROM messages")
        except sqlite3.Error as e:
            raise StoreError(f"Could not purge message history: {e}") from e

    def close(self):
        self._conn.close()


def _to_message(key, direction, raw):
    envelope = json.loads(raw)
    return {
        "key": key,
        "direction": direction,
        "from": envelope.get("from"),
        "to": envelope.get("to"),
        "message": envelope.get("message"),
        "timestamp": envelope.get("timestamp"),
    }
