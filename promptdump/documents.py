import itertools
import json
import logging
import os
import re
import sqlite3
import threading
import uuid

logger = logging.getLogger("PromptDump")

from .constants import SCHEMA_VERSION
from .paths import get_db_path
from .schema import SCHEMA_SQL
from .utils import json_dumps, now_iso

PREFIX_END = "\uf8ff"

_field_re = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ArrayUnion:
    """Update sentinel: append items not already present."""

    def __init__(self, *items):
        self.items = list(items)

    def apply(self, current):
        out = list(current) if isinstance(current, list) else []
        for item in self.items:
            if item not in out:
                out.append(item)
        return out


class ArrayRemove:
    """Update sentinel: drop every occurrence of the items."""

    def __init__(self, *items):
        self.items = list(items)

    def apply(self, current):
        if not isinstance(current, list):
            return []
        return [x for x in current if x not in self.items]


class Subscription:
    def __init__(self, unsubscribe=None, name=""):
        self._unsubscribe = unsubscribe
        self.name = name
        self.active = True

    def cancel(self):
        if not self.active:
            return
        self.active = False
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def __repr__(self):
        state = "active" if self.active else "cancelled"
        return f"<Subscription {self.name} {state}>"


class _Listener:
    def __init__(self, collection, field, value, on_next, on_error):
        self.collection = collection
        self.field = field
        self.value = value
        self.on_next = on_next
        self.on_error = on_error


def _json_path(field):
    if not _field_re.match(field or ""):
        raise ValueError(f"invalid field name: {field!r}")
    return f"json_extract(data_json, '$.{field}')"


class DocumentStore:
    """JSON document collections in SQLite with live equality queries."""

    _instance = None
    _lock = threading.Lock()

    @classmethod
    def get_default(cls):
        with cls._lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    def __init__(self, db_path=None):
        self.db_path = db_path or get_db_path()
        os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
        self._listeners = {}
        self._listener_ids = itertools.count(1)
        self._listeners_lock = threading.Lock()
        self._init_db()

    def _connect(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA busy_timeout = 5000")
        return conn

    def _init_db(self):
        conn = self._connect()
        try:
            conn.executescript(SCHEMA_SQL)
            conn.execute(
                "INSERT OR REPLACE INTO meta(key,value) VALUES('schema_version', ?)",
                (SCHEMA_VERSION,),
            )
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _row_to_doc(row):
        try:
            data = json.loads(row["data_json"] or "{}")
        except json.JSONDecodeError:
            logger.warning("corrupt document %s/%s", row["collection"], row["id"])
            data = {}
        if not isinstance(data, dict):
            data = {}
        data["id"] = row["id"]
        return data

    @staticmethod
    def _strip_id(data):
        data = dict(data or {})
        data.pop("id", None)
        return data

    # ── point reads & writes ──

    def get(self, collection, doc_id):
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM documents WHERE collection = ? AND id = ?",
                (collection, str(doc_id)),
            ).fetchone()
            return self._row_to_doc(row) if row else None
        finally:
            conn.close()

    def add(self, collection, data):
        doc_id = uuid.uuid4().hex
        now = now_iso()
        conn = self._connect()
        try:
            conn.execute(
                "INSERT INTO documents(collection,id,data_json,created_at,updated_at) VALUES(?,?,?,?,?)",
                (collection, doc_id, json_dumps(self._strip_id(data)), now, now),
            )
            conn.commit()
        finally:
            conn.close()
        logger.debug("add %s/%s", collection, doc_id)
        self._notify(collection)
        return doc_id

    def set(self, collection, doc_id, data, merge=False):
        doc_id = str(doc_id)
        now = now_iso()
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            payload = self._strip_id(data)
            if merge:
                row = conn.execute(
                    "SELECT * FROM documents WHERE collection = ? AND id = ?",
                    (collection, doc_id),
                ).fetchone()
                if row:
                    current = self._strip_id(self._row_to_doc(row))
                    current.update(self._resolve_changes(current, payload))
                    payload = current
                else:
                    payload = self._resolve_changes({}, payload)
            else:
                payload = self._resolve_changes({}, payload)
            conn.execute(
                """
                INSERT INTO documents(collection,id,data_json,created_at,updated_at)
                VALUES(?,?,?,?,?)
                ON CONFLICT(collection,id) DO UPDATE SET
                  data_json=excluded.data_json,
                  updated_at=excluded.updated_at
                """,
                (collection, doc_id, json_dumps(payload), now, now),
            )
            conn.commit()
        finally:
            conn.close()
        self._notify(collection)

    def update(self, collection, doc_id, changes):
        doc_id = str(doc_id)
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT * FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            ).fetchone()
            if not row:
                conn.rollback()
                raise KeyError(f"{collection}/{doc_id} not found")
            current = self._strip_id(self._row_to_doc(row))
            current.update(self._resolve_changes(current, self._strip_id(changes)))
            conn.execute(
                "UPDATE documents SET data_json=?, updated_at=? WHERE collection=? AND id=?",
                (json_dumps(current), now_iso(), collection, doc_id),
            )
            conn.commit()
        finally:
            conn.close()
        self._notify(collection)

    def delete(self, collection, doc_id):
        conn = self._connect()
        try:
            cur = conn.execute(
                "DELETE FROM documents WHERE collection = ? AND id = ?",
                (collection, str(doc_id)),
            )
            conn.commit()
            deleted = cur.rowcount
        finally:
            conn.close()
        if deleted:
            self._notify(collection)
        return deleted > 0

    @staticmethod
    def _resolve_changes(current, changes):
        out = {}
        for key, value in (changes or {}).items():
            if isinstance(value, (ArrayUnion, ArrayRemove)):
                out[key] = value.apply(current.get(key))
            else:
                out[key] = value
        return out

    # ── queries ──

    def where_equal(self, collection, field, value):
        conn = self._connect()
        try:
            return self._query_equal(conn, collection, field, value)
        finally:
            conn.close()

    def _query_equal(self, conn, collection, field, value):
        rows = conn.execute(
            f"SELECT * FROM documents WHERE collection = ? AND {_json_path(field)} = ? ORDER BY created_at ASC, rowid ASC",
            (collection, value),
        ).fetchall()
        logger.debug("where %s.%s rows=%d", collection, field, len(rows))
        return [self._row_to_doc(r) for r in rows]

    def where_prefix(self, collection, field, prefix, limit=5):
        path = _json_path(field)
        conn = self._connect()
        try:
            rows = conn.execute(
                f"""
                SELECT * FROM documents
                WHERE collection = ? AND {path} >= ? AND {path} <= ?
                ORDER BY {path} ASC
                LIMIT ?
                """,
                (collection, prefix, prefix + PREFIX_END, int(limit)),
            ).fetchall()
            return [self._row_to_doc(r) for r in rows]
        finally:
            conn.close()

    # ── live queries ──

    def on_snapshot(self, collection, field, value, on_next, on_error=None):
        _json_path(field)
        listener = _Listener(collection, field, value, on_next, on_error)
        with self._listeners_lock:
            listener_id = next(self._listener_ids)
            self._listeners[listener_id] = listener

        def _unsubscribe():
            with self._listeners_lock:
                self._listeners.pop(listener_id, None)

        subscription = Subscription(_unsubscribe, name=f"{collection}.{field}=={value}")
        self._deliver(listener_id, listener)
        return subscription

    def listener_count(self):
        with self._listeners_lock:
            return len(self._listeners)

    def _notify(self, collection):
        with self._listeners_lock:
            targets = [(lid, lst) for lid, lst in self._listeners.items() if lst.collection == collection]
        for listener_id, listener in targets:
            self._deliver(listener_id, listener)

    def _deliver(self, listener_id, listener):
        try:
            conn = self._connect()
            try:
                docs = self._query_equal(conn, listener.collection, listener.field, listener.value)
            finally:
                conn.close()
        except sqlite3.Error as exc:
            logger.warning("snapshot query failed for %s: %s", listener.collection, exc)
            if listener.on_error is not None:
                listener.on_error(exc)
            return

        with self._listeners_lock:
            if listener_id not in self._listeners:
                return
        listener.on_next(tuple(docs))
