"""SQLite record of images generated from the chain editor."""

import json
import logging
import sqlite3
import time
import uuid
from pathlib import Path

from pydantic import BaseModel

from chainlab.core.models import GenerationParameters

logger = logging.getLogger(__name__)


class HistoryItem(BaseModel):
    id: str
    image_url: str
    prompt: str
    params: GenerationParameters
    created_at: int


class LocalHistory:
    """Manage the local generation history using SQLite.

    Items are stored with their prompt and parameters so a past result can be
    reproduced.  Listing returns the newest item first.
    """

    def __init__(self, db_path: Path):
        """Initialize the history database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_db()
        logger.info(f"Initialized history database at {self.db_path}")

    def _initialize_db(self) -> None:
        """Create database schema if it doesn't exist."""
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS generations (
                    id TEXT PRIMARY KEY,
                    image_url TEXT NOT NULL,
                    prompt TEXT,
                    params TEXT,
                    created_at INTEGER
                )
                """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_generations_created_at
                ON generations(created_at DESC)
                """)
            conn.commit()

    def add(self, image_url: str, prompt: str, params: GenerationParameters) -> HistoryItem:
        """Record a generated image.

        Args:
            image_url: Image reference (data URL or remote URL)
            prompt: Compiled prompt used for the image
            params: Parameters used for the image

        Returns:
            The stored item
        """
        item = HistoryItem(
            id=str(uuid.uuid4()),
            image_url=image_url,
            prompt=prompt,
            params=params,
            created_at=int(time.time() * 1000),
        )
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO generations (id, image_url, prompt, params, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    item.id,
                    item.image_url,
                    item.prompt,
                    json.dumps(params.model_dump(by_alias=True)),
                    item.created_at,
                ),
            )
            conn.commit()
        logger.info(f"Added generation to history: {item.id}")
        return item

    def get_all(self) -> list[HistoryItem]:
        """Get all history items, newest first."""
        try:
            with sqlite3.connect(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute("""
                    SELECT id, image_url, prompt, params, created_at
                    FROM generations ORDER BY created_at DESC, rowid DESC
                    """)
                rows = cursor.fetchall()
        except sqlite3.Error as e:
            logger.error(f"Error reading history: {e}")
            return []

        items = []
        for item_id, image_url, prompt, params, created_at in rows:
            items.append(
                HistoryItem(
                    id=item_id,
                    image_url=image_url,
                    prompt=prompt or "",
                    params=GenerationParameters.model_validate(json.loads(params or "{}")),
                    created_at=created_at or 0,
                )
            )
        return items

    def delete(self, item_id: str) -> bool:
        """Delete one item.

        Returns:
            True if an item was removed, False if it did not exist
        """
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM generations WHERE id = ?", (item_id,))
            conn.commit()
            return cursor.rowcount > 0

    def clear(self) -> None:
        """Remove every item."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("DELETE FROM generations")
            conn.commit()
        logger.info("Cleared generation history")
