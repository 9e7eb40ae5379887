"""
SQLite database module for RecallAR.
Handles storage and retrieval of known people, their face embeddings
and the conversations logged with them.
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import numpy as np

from config import DEFAULT_DB_PATH
from matching import Identity

logger = logging.getLogger(__name__)

# Thread-local storage for database connections
_local = threading.local()

# Database file path, overridden by configure()
DB_PATH: Path = DEFAULT_DB_PATH

PERSON_COLUMNS = """
    id, name, relation, embedding IS NOT NULL AS has_embedding,
    created_at, updated_at
"""


def configure(path: Path):
    """Point the module at another database file (settings, tests)."""
    global DB_PATH
    close_connection()
    DB_PATH = Path(path)


def get_connection() -> sqlite3.Connection:
    """Get a thread-local database connection."""
    if getattr(_local, "path", None) != DB_PATH:
        close_connection()
    if not hasattr(_local, "connection"):
        conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        _local.connection = conn
        _local.path = DB_PATH
    return _local.connection


def close_connection():
    """Close this thread's connection, if any."""
    conn = getattr(_local, "connection", None)
    if conn is not None:
        conn.close()
        del _local.connection
    _local.path = None


def _now() -> str:
    return datetime.now().isoformat()


def init_database():
    """
    Initialize the database schema.
    Creates the people and conversations tables if they don't exist.
    """
    conn = get_connection()
    cursor = conn.cursor()

    # Embeddings stored as JSON-serialized arrays for simplicity
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS people (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            relation TEXT NOT NULL,
            photo BLOB NOT NULL,
            photo_type TEXT NOT NULL DEFAULT 'image/jpeg',
            embedding TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS conversations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            person_id INTEGER NOT NULL REFERENCES people(id) ON DELETE CASCADE,
            raw_text TEXT NOT NULL,
            summary TEXT NOT NULL,
            date TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
    """)

    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_people_name ON people(name)
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_conversations_person
        ON conversations(person_id, date)
    """)

    conn.commit()
    logger.info("Database initialized at %s", DB_PATH)


# ============================================================================
# People
# ============================================================================

def add_person(
    name: str,
    relation: str,
    photo: bytes,
    photo_type: str = "image/jpeg",
    embedding: Optional[np.ndarray] = None
) -> int:
    """
    Add a new person to the database and return the new id.
    The embedding may be missing when no face was found in the photo.
    """
    conn = get_connection()
    cursor = conn.cursor()

    embedding_json = None
    if embedding is not None:
        embedding_json = json.dumps(np.asarray(embedding, dtype=float).tolist())

    now = _now()
    cursor.execute("""
        INSERT INTO people (name, relation, photo, photo_type, embedding, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """, (name, relation, photo, photo_type, embedding_json, now, now))
    conn.commit()

    person_id = cursor.lastrowid
    logger.info("Added person: %s (%s, embedding=%s)", name, person_id, embedding is not None)
    return person_id


def update_person(
    person_id: int,
    name: Optional[str] = None,
    relation: Optional[str] = None
) -> bool:
    """Update name and/or relation. Embeddings are never rewritten."""
    person = get_person(person_id)
    if person is None:
        return False

    conn = get_connection()
    conn.execute("""
        UPDATE people
        SET name = ?, relation = ?, updated_at = ?
        WHERE id = ?
    """, (
        name if name is not None else person["name"],
        relation if relation is not None else person["relation"],
        _now(),
        person_id
    ))
    conn.commit()
    logger.info("Updated person: %s", person_id)
    return True


def get_person(person_id: int) -> Optional[dict]:
    """Get a person by ID (without photo or embedding)."""
    conn = get_connection()
    row = conn.execute(
        f"SELECT {PERSON_COLUMNS} FROM people WHERE id = ?", (person_id,)
    ).fetchone()
    return _person_dict(row) if row else None


def get_person_photo(person_id: int) -> Optional[tuple]:
    """Return (photo_bytes, content_type) for a person."""
    conn = get_connection()
    row = conn.execute(
        "SELECT photo, photo_type FROM people WHERE id = ?", (person_id,)
    ).fetchone()
    if row is None:
        return None
    return bytes(row["photo"]), row["photo_type"]


def get_all_people() -> List[dict]:
    """Get all people (without photos or embeddings)."""
    conn = get_connection()
    rows = conn.execute(f"SELECT {PERSON_COLUMNS} FROM people ORDER BY id").fetchall()
    return [_person_dict(row) for row in rows]


def list_identities_with_embeddings() -> List[Identity]:
    """
    Get all people who have embeddings.
    Used to build the embedding snapshot of an AR session.
    """
    conn = get_connection()
    rows = conn.execute(
        "SELECT id, name, relation, embedding FROM people "
        "WHERE embedding IS NOT NULL ORDER BY id"
    ).fetchall()

    return [
        Identity(
            id=row["id"],
            name=row["name"],
            relation=row["relation"],
            embedding=np.array(json.loads(row["embedding"]), dtype=np.float64),
        )
        for row in rows
    ]


def delete_person(person_id: int) -> bool:
    """Delete a person and all of their conversations."""
    conn = get_connection()
    cursor = conn.cursor()

    cursor.execute("DELETE FROM conversations WHERE person_id = ?", (person_id,))
    cursor.execute("DELETE FROM people WHERE id = ?", (person_id,))
    success = cursor.rowcount > 0
    conn.commit()

    if success:
        logger.info("Deleted person: %s", person_id)
    return success


def _person_dict(row: sqlite3.Row) -> dict:
    person = dict(row)
    person["has_embedding"] = bool(person["has_embedding"])
    return person


# ============================================================================
# Conversations
# ============================================================================

def add_conversation(person_id: int, raw_text: str, summary: str) -> int:
    """Log a conversation with a person and return its id."""
    conn = get_connection()
    cursor = conn.cursor()

    now = _now()
    cursor.execute("""
        INSERT INTO conversations (person_id, raw_text, summary, date, created_at)
        VALUES (?, ?, ?, ?, ?)
    """, (person_id, raw_text, summary, now, now))
    conn.commit()

    logger.info("Added conversation for person %s", person_id)
    return cursor.lastrowid


def get_conversation(conversation_id: int) -> Optional[dict]:
    conn = get_connection()
    row = conn.execute(
        "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
    ).fetchone()
    return dict(row) if row else None


def get_conversations_for_person(person_id: int) -> List[dict]:
    """All conversations with a person, newest first."""
    conn = get_connection()
    rows = conn.execute("""
        SELECT * FROM conversations
        WHERE person_id = ?
        ORDER BY date DESC, id DESC
    """, (person_id,)).fetchall()
    return [dict(row) for row in rows]


def get_latest_conversation(person_id: int) -> Optional[dict]:
    conn = get_connection()
    row = conn.execute("""
        SELECT * FROM conversations
        WHERE person_id = ?
        ORDER BY date DESC, id DESC
        LIMIT 1
    """, (person_id,)).fetchone()
    return dict(row) if row else None


def get_latest_conversation_summary(person_id: int) -> Optional[str]:
    conversation = get_latest_conversation(person_id)
    if conversation is None:
        return None
    return conversation["summary"] or None


def delete_conversation(conversation_id: int) -> bool:
    conn = get_connection()
    cursor = conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
    success = cursor.rowcount > 0
    conn.commit()
    return success


def get_stats() -> dict:
    """Totals plus the five most recently logged conversations."""
    conn = get_connection()
    total_people = conn.execute("SELECT COUNT(*) FROM people").fetchone()[0]
    total_conversations = conn.execute("SELECT COUNT(*) FROM conversations").fetchone()[0]
    recent = conn.execute("""
        SELECT * FROM conversations
        ORDER BY created_at DESC, id DESC
        LIMIT 5
    """).fetchall()

    return {
        "total_people": total_people,
        "total_conversations": total_conversations,
        "recent_conversations": [dict(row) for row in recent],
    }


class SQLiteIdentityStore:
    """Read-only view of the database used by AR sessions."""

    def list_identities_with_embeddings(self) -> List[Identity]:
        return list_identities_with_embeddings()

    def get_latest_conversation_summary(self, identity_id: int) -> Optional[str]:
        return get_latest_conversation_summary(identity_id)
