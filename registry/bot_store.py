"""
Bot Store — SQLite storage for bot configurations.

Responsibility:
- Store bots, their intents, intent handlers and quick actions
- Load one bot with its enabled intents per chat request
- Administrative create/update/delete operations

Handler rows are validated on the way in and on the way out: a
type/content mismatch is a configuration error, never a chat-time surprise.
"""

import json
import logging
import os
import sqlite3
import uuid
from typing import Any, Optional

from pydantic import ValidationError

from shared.errors import HandlerConfigError
from shared.models import BotConfig, HandlerConfig, HandlerType, IntentConfig, QuickActionConfig

logger = logging.getLogger(__name__)

DB_PATH = "bots.db"


def build_handler(
    handler_id: str,
    handler_type: str | HandlerType,
    content: str | None = None,
    guidelines: str | None = None,
) -> HandlerConfig:
    """Validated HandlerConfig; invariant violations raise HandlerConfigError."""
    try:
        return HandlerConfig(id=handler_id, type=handler_type, content=content, guidelines=guidelines)
    except ValidationError as e:
        errors = e.errors()
        detail = errors[0].get("msg", str(e)) if errors else str(e)
        raise HandlerConfigError(detail) from e


class BotStore:
    """SQLite-backed store for bots and their intent configuration."""

    def __init__(self, db_path: str | None = None):
        self.db_path = db_path or os.getenv("BOT_DB_PATH", DB_PATH)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_conn() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS bots (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    greeting_message TEXT NOT NULL DEFAULT '',
                    guidelines TEXT,
                    strict_intent_detection BOOLEAN NOT NULL DEFAULT 0,
                    allowed_origins TEXT NOT NULL DEFAULT '[]', -- JSON list
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS intents (
                    id TEXT PRIMARY KEY,
                    bot_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    required_fields TEXT,  -- comma separated
                    is_enabled BOOLEAN NOT NULL DEFAULT 1,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY(bot_id) REFERENCES bots(id) ON DELETE CASCADE,
                    UNIQUE(bot_id, name)
                );

                CREATE TABLE IF NOT EXISTS intent_handlers (
                    id TEXT PRIMARY KEY,
                    intent_id TEXT UNIQUE NOT NULL,
                    type TEXT NOT NULL,  -- NONFUNCTIONAL, FUNCTIONAL, MODELRESPONSE
                    content TEXT,
                    guidelines TEXT,
                    FOREIGN KEY(intent_id) REFERENCES intents(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS quick_actions (
                    id TEXT PRIMARY KEY,
                    bot_id TEXT UNIQUE NOT NULL,
                    config TEXT NOT NULL, -- opaque JSON forwarded to the client
                    FOREIGN KEY(bot_id) REFERENCES bots(id) ON DELETE CASCADE
                );
            """)

    # ─── Bots ─────────────────────────────────────────────────

    def create_bot(
        self,
        name: str,
        greeting_message: str = "",
        guidelines: str = "",
        strict_intent_detection: bool = False,
        allowed_origins: list[str] | None = None,
        bot_id: str | None = None,
    ) -> str:
        bot_id = bot_id or str(uuid.uuid4())
        with self._get_conn() as conn:
            conn.execute(
                "INSERT INTO bots (id, name, greeting_message, guidelines, strict_intent_detection, allowed_origins) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (bot_id, name, greeting_message, guidelines, int(strict_intent_detection), json.dumps(allowed_origins or [])),
            )
        logger.info("Created bot: %s (%s)", name, bot_id)
        return bot_id

    def update_bot_strict_intent_detection(self, bot_id: str, strict_intent_detection: bool) -> bool:
        with self._get_conn() as conn:
            cursor = conn.execute(
                "UPDATE bots SET strict_intent_detection = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (int(strict_intent_detection), bot_id),
            )
        return cursor.rowcount > 0

    def list_bots(self) -> list[dict[str, Any]]:
        """All bots with their intent counts, newest first."""
        with self._get_conn() as conn:
            rows = conn.execute("""
                SELECT b.id, b.name, b.strict_intent_detection, b.allowed_origins,
                       COUNT(i.id) AS intent_count,
                       COALESCE(SUM(i.is_enabled), 0) AS enabled_intent_count
                FROM bots b
                LEFT JOIN intents i ON i.bot_id = b.id
                GROUP BY b.id
                ORDER BY b.created_at DESC, b.name
            """).fetchall()
        bots = []
        for row in rows:
            item = dict(row)
            item["strict_intent_detection"] = bool(item["strict_intent_detection"])
            item["allowed_origins"] = json.loads(item["allowed_origins"] or "[]")
            bots.append(item)
        return bots

    def delete_bot(self, bot_id: str) -> bool:
        """Delete a bot; intents, handlers and quick actions cascade."""
        with self._get_conn() as conn:
            cursor = conn.execute("DELETE FROM bots WHERE id = ?", (bot_id,))
        if cursor.rowcount:
            logger.info("Deleted bot: %s", bot_id)
        return cursor.rowcount > 0

    # ─── Intents ──────────────────────────────────────────────

    def create_intent(
        self,
        bot_id: str,
        name: str,
        handler_type: str | HandlerType,
        description: str = "",
        required_fields: str | None = None,
        is_enabled: bool = True,
        content: str | None = None,
        guidelines: str | None = None,
    ) -> str:
        """Create an intent together with its handler. Returns the intent id."""
        handler_type = HandlerType(handler_type)
        # Only the payload that belongs to the handler type is kept.
        if handler_type == HandlerType.MODELRESPONSE:
            content = None
        else:
            guidelines = None
        intent_id = str(uuid.uuid4())
        handler = build_handler(str(uuid.uuid4()), handler_type, content, guidelines)

        with self._get_conn() as conn:
            if conn.execute("SELECT 1 FROM bots WHERE id = ?", (bot_id,)).fetchone() is None:
                raise ValueError(f"Bot not found: {bot_id}")
            if conn.execute("SELECT 1 FROM intents WHERE bot_id = ? AND name = ?", (bot_id, name)).fetchone():
                raise ValueError(f"Intent name already exists: {name}")
            conn.execute(
                "INSERT INTO intents (id, bot_id, name, description, required_fields, is_enabled) VALUES (?, ?, ?, ?, ?, ?)",
                (intent_id, bot_id, name, description, required_fields, int(is_enabled)),
            )
            conn.execute(
                "INSERT INTO intent_handlers (id, intent_id, type, content, guidelines) VALUES (?, ?, ?, ?, ?)",
                (handler.id, intent_id, handler.type.value, handler.content, handler.guidelines),
            )
        logger.info("Created intent: %s -> %s (%s)", bot_id, name, handler_type.value)
        return intent_id

    def delete_intent(self, intent_id: str) -> bool:
        with self._get_conn() as conn:
            cursor = conn.execute("DELETE FROM intents WHERE id = ?", (intent_id,))
        return cursor.rowcount > 0

    # ─── Quick actions ────────────────────────────────────────

    def set_quick_actions(self, bot_id: str, config: str | list | dict | None) -> None:
        """Replace the bot's quick actions; ``None`` removes them."""
        with self._get_conn() as conn:
            if config is None:
                conn.execute("DELETE FROM quick_actions WHERE bot_id = ?", (bot_id,))
                return
            config_text = config if isinstance(config, str) else json.dumps(config, ensure_ascii=False)
            existing = conn.execute("SELECT id FROM quick_actions WHERE bot_id = ?", (bot_id,)).fetchone()
            if existing:
                conn.execute("UPDATE quick_actions SET config = ? WHERE id = ?", (config_text, existing["id"]))
            else:
                conn.execute(
                    "INSERT INTO quick_actions (id, bot_id, config) VALUES (?, ?, ?)",
                    (str(uuid.uuid4()), bot_id, config_text),
                )

    # ─── Chat-time load ───────────────────────────────────────

    def load_bot_with_enabled_intents(self, bot_id: str) -> Optional[BotConfig]:
        """Bot configuration with only its enabled intents, or None."""
        with self._get_conn() as conn:
            bot_row = conn.execute("SELECT * FROM bots WHERE id = ?", (bot_id,)).fetchone()
            if bot_row is None:
                return None
            intent_rows = conn.execute("""
                SELECT i.id, i.name, i.description, i.required_fields, i.is_enabled,
                       h.id AS handler_id, h.type AS handler_type, h.content, h.guidelines
                FROM intents i
                LEFT JOIN intent_handlers h ON h.intent_id = i.id
                WHERE i.bot_id = ? AND i.is_enabled = 1
                ORDER BY i.created_at, i.rowid
            """, (bot_id,)).fetchall()
            quick_row = conn.execute("SELECT id, config FROM quick_actions WHERE bot_id = ?", (bot_id,)).fetchone()

        intents = []
        for row in intent_rows:
            handler = None
            if row["handler_id"]:
                handler = build_handler(row["handler_id"], row["handler_type"], row["content"], row["guidelines"])
            intents.append(
                IntentConfig(
                    id=row["id"],
                    name=row["name"],
                    description=row["description"] or "",
                    required_fields=row["required_fields"],
                    is_enabled=bool(row["is_enabled"]),
                    handler=handler,
                )
            )

        return BotConfig(
            id=bot_row["id"],
            name=bot_row["name"],
            greeting_message=bot_row["greeting_message"] or "",
            guidelines=bot_row["guidelines"] or "",
            strict_intent_detection=bool(bot_row["strict_intent_detection"]),
            allowed_origins=json.loads(bot_row["allowed_origins"] or "[]"),
            intents=intents,
            quick_actions=QuickActionConfig(id=quick_row["id"], config=quick_row["config"]) if quick_row else None,
        )
