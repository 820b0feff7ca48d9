import asyncio
import itertools
import logging
import sqlite3
import uuid

logger = logging.getLogger("PromptDump")

from .constants import GUEST_STORAGE_KEY, PROMPTS_COLLECTION, USERS_COLLECTION
from .documents import ArrayRemove, ArrayUnion, Subscription
from .records import normalize_profile, normalize_prompt

# Failures of the storage boundary itself; callers turn these into alerts.
STORE_ERRORS = (sqlite3.Error, OSError)


class PromptBackend:
    """Storage seam shared by guest and cloud mode.

    The view-state actions only talk to this interface; which implementation
    sits behind it is decided by the mode flag on AppState.
    """

    mode = ""

    def subscribe(self, owner_id, on_next, on_error=None):
        raise NotImplementedError

    async def save_prompt(self, record, prompt_id=None):
        raise NotImplementedError

    async def delete_prompt(self, prompt_id):
        raise NotImplementedError

    async def get_prompt(self, prompt_id):
        raise NotImplementedError

    async def fetch_prompts(self, ids):
        raise NotImplementedError

    async def get_profile(self, uid):
        raise NotImplementedError

    async def set_profile(self, uid, data, merge=True):
        raise NotImplementedError

    async def add_to_list(self, uid, field, value):
        raise NotImplementedError

    async def remove_from_list(self, uid, field, value):
        raise NotImplementedError

    async def find_profiles_by_prefix(self, prefix, limit=5):
        raise NotImplementedError

    async def find_profile_by_handle(self, handle):
        raise NotImplementedError


class GuestBackend(PromptBackend):
    mode = "guest"

    def __init__(self, local_storage):
        self.local_storage = local_storage
        self._listeners = {}
        self._listener_ids = itertools.count(1)

    def load_prompts(self):
        stored = self.local_storage.get_json(GUEST_STORAGE_KEY, default=[])
        if not isinstance(stored, list):
            logger.warning("guest storage is not a list, starting empty")
            return []
        return [normalize_prompt(p) for p in stored if isinstance(p, dict)]

    def _write(self, prompts):
        self.local_storage.set_json(GUEST_STORAGE_KEY, prompts)
        logger.debug("guest storage rewritten, %d prompts", len(prompts))
        self._notify(prompts)

    def _notify(self, prompts):
        for listener in list(self._listeners.values()):
            listener([dict(p) for p in prompts])

    def subscribe(self, owner_id, on_next, on_error=None):
        # The guest key only ever holds the guest's own prompts, so owner_id
        # does not narrow anything here.
        listener_id = next(self._listener_ids)

        def _listener(prompts):
            on_next(tuple(prompts))

        self._listeners[listener_id] = _listener
        _listener(self.load_prompts())
        return Subscription(lambda: self._listeners.pop(listener_id, None), name=f"guest:{owner_id}")

    async def save_prompt(self, record, prompt_id=None):
        prompts = self.load_prompts()
        if prompt_id:
            found = False
            for i, p in enumerate(prompts):
                if p["id"] == prompt_id:
                    prompts[i] = {**record, "id": prompt_id}
                    found = True
            if not found:
                raise KeyError(f"prompt {prompt_id} not found")
        else:
            prompt_id = uuid.uuid4().hex
            prompts.insert(0, {**record, "id": prompt_id})
        self._write(prompts)
        return prompt_id

    async def delete_prompt(self, prompt_id):
        prompts = self.load_prompts()
        remaining = [p for p in prompts if p["id"] != prompt_id]
        self._write(remaining)
        return len(remaining) != len(prompts)

    async def get_prompt(self, prompt_id):
        for p in self.load_prompts():
            if p["id"] == prompt_id:
                return p
        return None

    async def fetch_prompts(self, ids):
        # Guests have no profile to like with.
        return []

    async def get_profile(self, uid):
        return None

    async def set_profile(self, uid, data, merge=True):
        raise PermissionError("Log in to edit a profile")

    async def add_to_list(self, uid, field, value):
        raise PermissionError("Log in to follow or like")

    async def remove_from_list(self, uid, field, value):
        raise PermissionError("Log in to follow or like")

    async def find_profiles_by_prefix(self, prefix, limit=5):
        return []

    async def find_profile_by_handle(self, handle):
        return None


class CloudBackend(PromptBackend):
    mode = "cloud"

    def __init__(self, documents):
        self.documents = documents

    def subscribe(self, owner_id, on_next, on_error=None):
        def _on_docs(docs):
            on_next(tuple(normalize_prompt(d) for d in docs))

        return self.documents.on_snapshot(
            PROMPTS_COLLECTION, "user_id", owner_id, _on_docs, on_error=on_error
        )

    async def save_prompt(self, record, prompt_id=None):
        data = {k: v for k, v in record.items() if k != "id"}
        if prompt_id:
            self.documents.update(PROMPTS_COLLECTION, prompt_id, data)
            return prompt_id
        return self.documents.add(PROMPTS_COLLECTION, data)

    async def delete_prompt(self, prompt_id):
        return self.documents.delete(PROMPTS_COLLECTION, prompt_id)

    async def get_prompt(self, prompt_id):
        doc = self.documents.get(PROMPTS_COLLECTION, prompt_id)
        return normalize_prompt(doc) if doc else None

    async def fetch_prompts(self, ids):
        results = await asyncio.gather(*(self.get_prompt(i) for i in ids))
        return [p for p in results if p is not None]

    async def get_profile(self, uid):
        doc = self.documents.get(USERS_COLLECTION, uid)
        return normalize_profile(doc, uid=uid) if doc else None

    async def set_profile(self, uid, data, merge=True):
        data = {k: v for k, v in data.items() if k != "uid"}
        self.documents.set(USERS_COLLECTION, uid, {**data, "uid": uid}, merge=merge)

    async def add_to_list(self, uid, field, value):
        self.documents.update(USERS_COLLECTION, uid, {field: ArrayUnion(value)})

    async def remove_from_list(self, uid, field, value):
        self.documents.update(USERS_COLLECTION, uid, {field: ArrayRemove(value)})

    async def find_profiles_by_prefix(self, prefix, limit=5):
        docs = self.documents.where_prefix(USERS_COLLECTION, "username", prefix, limit=limit)
        return [normalize_profile(d, uid=d["id"]) for d in docs]

    async def find_profile_by_handle(self, handle):
        docs = self.documents.where_equal(USERS_COLLECTION, "username", handle)
        return normalize_profile(docs[0], uid=docs[0]["id"]) if docs else None
