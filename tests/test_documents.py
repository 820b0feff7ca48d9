import sqlite3
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from promptdump.documents import ArrayRemove, ArrayUnion, DocumentStore
from promptdump.local_storage import LocalStorage


class DocumentStoreTests(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = str(Path(self.temp_dir.name) / "promptdump.db")
        patcher = mock.patch("promptdump.documents.get_db_path", return_value=self.db_path)
        self.addCleanup(patcher.stop)
        patcher.start()
        self.store = DocumentStore()

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_add_and_get(self):
        doc_id = self.store.add("prompts", {"text": "a cat", "user_id": "u1"})

        doc = self.store.get("prompts", doc_id)
        self.assertEqual(doc["id"], doc_id)
        self.assertEqual(doc["text"], "a cat")
        self.assertIsNone(self.store.get("prompts", "missing"))
        self.assertTrue(Path(self.db_path).exists())

    def test_set_merge_keeps_other_fields(self):
        self.store.set("users", "u1", {"username": "alice", "bio": "hi"})
        self.store.set("users", "u1", {"bio": "hello"}, merge=True)
        self.assertEqual(self.store.get("users", "u1")["username"], "alice")
        self.assertEqual(self.store.get("users", "u1")["bio"], "hello")

        self.store.set("users", "u1", {"bio": "replaced"})
        self.assertNotIn("username", self.store.get("users", "u1"))

    def test_array_sentinels(self):
        self.store.set("users", "u1", {"following": ["a"]})

        self.store.update("users", "u1", {"following": ArrayUnion("b")})
        self.store.update("users", "u1", {"following": ArrayUnion("b")})
        self.assertEqual(self.store.get("users", "u1")["following"], ["a", "b"])

        self.store.update("users", "u1", {"following": ArrayRemove("a")})
        self.store.update("users", "u1", {"following": ArrayRemove("zzz")})
        self.assertEqual(self.store.get("users", "u1")["following"], ["b"])

        self.store.set("users", "u2", {"liked_prompts": ArrayUnion("p1")}, merge=True)
        self.assertEqual(self.store.get("users", "u2")["liked_prompts"], ["p1"])

    def test_update_missing_document(self):
        with self.assertRaises(KeyError):
            self.store.update("users", "nobody", {"bio": "x"})

    def test_delete(self):
        doc_id = self.store.add("prompts", {"text": "x"})
        self.assertTrue(self.store.delete("prompts", doc_id))
        self.assertFalse(self.store.delete("prompts", doc_id))

    def test_where_prefix_is_ordered_and_limited(self):
        for uid, handle in [("1", "bob"), ("2", "alicia"), ("3", "alice"), ("4", "al")]:
            self.store.set("users", uid, {"username": handle})

        found = self.store.where_prefix("users", "username", "ali")
        self.assertEqual([d["username"] for d in found], ["alice", "alicia"])

        limited = self.store.where_prefix("users", "username", "al", limit=2)
        self.assertEqual([d["username"] for d in limited], ["al", "alice"])

    def test_where_equal_rejects_bad_field(self):
        with self.assertRaises(ValueError):
            self.store.where_equal("users", "username') OR 1=1 --", "x")

    def test_on_snapshot_delivers_initial_and_live_results(self):
        self.store.add("prompts", {"text": "mine", "user_id": "u1"})
        self.store.add("prompts", {"text": "theirs", "user_id": "u2"})
        seen = []

        sub = self.store.on_snapshot("prompts", "user_id", "u1", seen.append)
        self.assertEqual([[d["text"] for d in docs] for docs in seen], [["mine"]])

        self.store.add("prompts", {"text": "second", "user_id": "u1"})
        self.assertEqual([d["text"] for d in seen[-1]], ["mine", "second"])
        self.assertEqual(self.store.listener_count(), 1)

        sub.cancel()
        sub.cancel()
        self.assertFalse(sub.active)
        self.assertEqual(self.store.listener_count(), 0)
        count = len(seen)
        self.store.add("prompts", {"text": "third", "user_id": "u1"})
        self.assertEqual(len(seen), count)

    def test_on_snapshot_reports_query_errors(self):
        errors = []
        sub = self.store.on_snapshot("prompts", "user_id", "u1", lambda docs: None, on_error=errors.append)
        self.addCleanup(sub.cancel)

        with mock.patch.object(self.store, "_query_equal", side_effect=sqlite3.OperationalError("disk I/O error")):
            self.store.add("prompts", {"text": "x", "user_id": "u1"})
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], sqlite3.OperationalError)


class LocalStorageTests(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp_dir.cleanup)
        self.storage = LocalStorage(str(Path(self.temp_dir.name) / "local_storage.db"))

    def test_items_and_json(self):
        self.assertIsNone(self.storage.get_item("k"))
        self.storage.set_item("k", "v")
        self.assertEqual(self.storage.get_item("k"), "v")

        self.storage.set_json("list", [{"text": "猫"}])
        self.assertEqual(self.storage.get_json("list"), [{"text": "猫"}])
        self.assertEqual(self.storage.keys(), ["k", "list"])

        self.storage.remove_item("k")
        self.assertEqual(self.storage.get_json("k", default=[]), [])

    def test_invalid_json_falls_back_to_default(self):
        self.storage.set_item("broken", "{not json")
        with self.assertLogs("PromptDump", level="WARNING"):
            self.assertEqual(self.storage.get_json("broken", default=[]), [])

    def test_llm_config_defaults(self):
        config = self.storage.get_llm_config()
        self.assertFalse(config["enabled"])
        self.assertEqual(config["base_url"], "http://localhost:1234")

        self.storage.set_llm_config({"enabled": True, "model": "qwen"})
        config = self.storage.get_llm_config()
        self.assertTrue(config["enabled"])
        self.assertEqual(config["model"], "qwen")
        self.assertEqual(config["timeout"], 30)
