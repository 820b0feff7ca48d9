import json
import logging
import os
import sqlite3
import threading

logger = logging.getLogger("PromptDump")

from .constants import LLM_CONFIG_KEY
from .paths import get_local_storage_path
from .schema import LOCAL_STORAGE_SQL
from .utils import now_iso


class LocalStorage:
    """On-device string key/value store.

    Values are plain strings, like browser localStorage; callers that need
    structured data go through get_json/set_json. Nothing here is locked
    across processes, so two writers to the same key simply race and the last
    write wins.
    """

    _instance = None
    _lock = threading.Lock()

    @classmethod
    def get_default(cls):
        with cls._lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    def __init__(self, path=None):
        self.path = path or get_local_storage_path()
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        self._init_db()

    def _connect(self):
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        return conn

    def _init_db(self):
        conn = self._connect()
        try:
            conn.executescript(LOCAL_STORAGE_SQL)
            conn.commit()
        finally:
            conn.close()

    def get_item(self, key):
        conn = self._connect()
        try:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
            return row["value"] if row else None
        finally:
            conn.close()

    def set_item(self, key, value):
        conn = self._connect()
        try:
            conn.execute(
                "INSERT OR REPLACE INTO kv(key, value, updated_at) VALUES(?, ?, ?)",
                (key, str(value), now_iso()),
            )
            conn.commit()
        finally:
            conn.close()

    def remove_item(self, key):
        conn = self._connect()
        try:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()

    def keys(self):
        conn = self._connect()
        try:
            return [r["key"] for r in conn.execute("SELECT key FROM kv ORDER BY key").fetchall()]
        finally:
            conn.close()

    def get_json(self, key, default=None):
        raw = self.get_item(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("local key %s holds invalid JSON, ignoring it", key)
            return default

    def set_json(self, key, value):
        self.set_item(key, json.dumps(value, ensure_ascii=False))

    # ── LLM config helpers ──

    def get_llm_config(self) -> dict:
        from .llm import DEFAULT_LLM_CONFIG

        stored = self.get_json(LLM_CONFIG_KEY)
        if isinstance(stored, dict):
            return {**DEFAULT_LLM_CONFIG, **stored}
        return dict(DEFAULT_LLM_CONFIG)

    def set_llm_config(self, config: dict):
        self.set_json(LLM_CONFIG_KEY, config)
