import sqlite3
import unittest

from promptdump.documents import Subscription
from promptdump.sync import SyncAdapter, SyncState, ViewingContext


class _FakeBackend:
    def __init__(self, favorites=None, fail_favorites=False):
        self.subscriptions = []
        self.favorites = favorites or []
        self.fail_favorites = fail_favorites
        self.fetched = []

    def subscribe(self, owner_id, on_next, on_error=None):
        sub = Subscription(name=owner_id)
        self.subscriptions.append((owner_id, on_next, on_error, sub))
        return sub

    async def fetch_prompts(self, ids):
        self.fetched.append(list(ids))
        if self.fail_favorites:
            raise sqlite3.OperationalError("offline")
        return [p for p in self.favorites if p["id"] in ids]


def _prompt(prompt_id, created_at, owner="u1"):
    return {"id": prompt_id, "text": prompt_id, "created_at": created_at, "user_id": owner, "tags": []}


class SyncAdapterTests(unittest.IsolatedAsyncioTestCase):
    async def test_snapshots_are_sorted_newest_first(self):
        backend = _FakeBackend()
        sync = SyncAdapter()
        await sync.open(backend, "u1")
        self.assertEqual(sync.state, SyncState.LOADING)
        self.assertTrue(sync.loading)

        _owner, on_next, _on_error, _sub = backend.subscriptions[0]
        on_next((_prompt("old", 1), _prompt("new", 3), _prompt("mid", 2)))

        self.assertEqual(sync.state, SyncState.READY)
        self.assertEqual([p["id"] for p in sync.prompts], ["new", "mid", "old"])

    async def test_switching_context_drops_late_snapshots(self):
        backend = _FakeBackend()
        sync = SyncAdapter()
        await sync.open(backend, "u1")
        await sync.open(backend, "u2")

        first, second = backend.subscriptions
        self.assertFalse(first[3].active)
        self.assertTrue(second[3].active)
        self.assertIs(sync.subscription, second[3])

        first[1]((_prompt("stale", 5, owner="u1"),))
        self.assertEqual(sync.prompts, ())
        self.assertEqual(sync.state, SyncState.LOADING)

        second[1]((_prompt("fresh", 1, owner="u2"),))
        self.assertEqual([p["id"] for p in sync.prompts], ["fresh"])

    async def test_error_keeps_last_list(self):
        backend = _FakeBackend()
        sync = SyncAdapter()
        await sync.open(backend, "u1")
        _owner, on_next, on_error, _sub = backend.subscriptions[0]
        on_next((_prompt("a", 1),))

        on_error(sqlite3.OperationalError("database is locked"))

        self.assertEqual(sync.state, SyncState.READY)
        self.assertEqual([p["id"] for p in sync.prompts], ["a"])
        self.assertIsInstance(sync.error, sqlite3.OperationalError)

    async def test_no_owner_is_idle(self):
        backend = _FakeBackend()
        sync = SyncAdapter()
        await sync.open(backend, None)
        self.assertEqual(sync.state, SyncState.IDLE)
        self.assertEqual(backend.subscriptions, [])

    async def test_favorites_fetch_liked_ids_in_one_batch(self):
        backend = _FakeBackend(favorites=[_prompt("p1", 1, owner="u2"), _prompt("p2", 2, owner="u3")])
        sync = SyncAdapter()
        await sync.open(backend, "u1")
        await sync.open(backend, "u1", category="Favorites", liked_ids=["p1", "p2", "gone"])

        self.assertFalse(backend.subscriptions[0][3].active)
        self.assertIsNone(sync.subscription)
        self.assertEqual(backend.fetched, [["p1", "p2", "gone"]])
        self.assertEqual([p["id"] for p in sync.prompts], ["p2", "p1"])
        self.assertEqual(sync.state, SyncState.READY)

    async def test_favorites_without_likes_skip_the_fetch(self):
        backend = _FakeBackend()
        sync = SyncAdapter()
        await sync.open(backend, "u1", category="Favorites")
        self.assertEqual(backend.fetched, [])
        self.assertEqual(sync.prompts, ())
        self.assertEqual(sync.state, SyncState.READY)

    async def test_favorites_failure_stops_loading(self):
        backend = _FakeBackend(fail_favorites=True)
        sync = SyncAdapter()
        await sync.open(backend, "u1", category="Favorites", liked_ids=["p1"])
        self.assertEqual(sync.state, SyncState.READY)
        self.assertIsNotNone(sync.error)

    async def test_on_change_and_close(self):
        changes = []
        backend = _FakeBackend()
        sync = SyncAdapter(on_change=lambda adapter: changes.append(adapter.state))
        await sync.open(backend, "u1")
        backend.subscriptions[0][1](())
        self.assertEqual(changes, [SyncState.LOADING, SyncState.READY])

        sync.close()
        self.assertFalse(backend.subscriptions[0][3].active)
        backend.subscriptions[0][1]((_prompt("late", 1),))
        self.assertEqual(sync.prompts, ())

    def test_viewing_context_equality(self):
        self.assertEqual(ViewingContext("u1", "All"), ViewingContext("u1", None))
        self.assertNotEqual(ViewingContext("u1", "All"), ViewingContext("u1", "Favorites"))
        self.assertTrue(ViewingContext("u1", "Favorites").is_favorites)
