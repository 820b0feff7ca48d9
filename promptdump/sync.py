import logging
from enum import Enum

logger = logging.getLogger("PromptDump")

from .backends import STORE_ERRORS
from .constants import CATEGORY_ALL, CATEGORY_FAVORITES
from .filters import sort_newest_first


class SyncState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"


class ViewingContext:
    __slots__ = ("owner_id", "category")

    def __init__(self, owner_id, category=CATEGORY_ALL):
        self.owner_id = owner_id
        self.category = category or CATEGORY_ALL

    @property
    def is_favorites(self):
        return self.category == CATEGORY_FAVORITES

    def __eq__(self, other):
        if not isinstance(other, ViewingContext):
            return NotImplemented
        return (self.owner_id, self.category) == (other.owner_id, other.category)

    def __hash__(self):
        return hash((self.owner_id, self.category))

    def __repr__(self):
        return f"ViewingContext(owner_id={self.owner_id!r}, category={self.category!r})"


class SyncAdapter:
    """Mirror one viewing context from a backend into a local prompt list.

    At most one subscription is alive at a time. Every open() bumps a
    generation counter and callbacks carry the generation they were created
    for, so a late snapshot from a torn-down context is dropped instead of
    overwriting the current list.
    """

    def __init__(self, on_change=None):
        self.on_change = on_change
        self.state = SyncState.IDLE
        self.context = None
        self.prompts = ()
        self.error = None
        self.snapshot_count = 0
        self._subscription = None
        self._generation = 0

    @property
    def loading(self):
        return self.state == SyncState.LOADING

    @property
    def subscription(self):
        return self._subscription

    def close(self):
        if self._subscription is not None:
            logger.debug("closing subscription %r", self._subscription)
            self._subscription.cancel()
            self._subscription = None
        self._generation += 1

    async def open(self, backend, owner_id, category=CATEGORY_ALL, liked_ids=()):
        self.close()
        generation = self._generation
        self.context = ViewingContext(owner_id, category)
        self.error = None
        self.snapshot_count = 0

        if self.context.is_favorites:
            self.state = SyncState.LOADING
            self._changed()
            await self._load_favorites(generation, backend, list(liked_ids or ()))
            return

        if owner_id is None:
            self.state = SyncState.IDLE
            self._changed()
            return

        self.state = SyncState.LOADING
        self._changed()
        subscription = backend.subscribe(
            owner_id,
            on_next=lambda docs: self._on_snapshot(generation, docs),
            on_error=lambda exc: self._on_error(generation, exc),
        )
        if generation == self._generation:
            self._subscription = subscription
        else:
            subscription.cancel()

    async def _load_favorites(self, generation, backend, liked_ids):
        if not liked_ids:
            self._on_snapshot(generation, ())
            return
        try:
            prompts = await backend.fetch_prompts(liked_ids)
        except STORE_ERRORS as exc:
            logger.warning("favorites fetch failed: %s", exc)
            self._on_error(generation, exc)
            return
        self._on_snapshot(generation, prompts)

    def _on_snapshot(self, generation, docs):
        if generation != self._generation:
            logger.debug("dropping stale snapshot (generation %d)", generation)
            return
        self.prompts = tuple(sort_newest_first(docs))
        self.snapshot_count += 1
        self.state = SyncState.READY
        self._changed()

    def _on_error(self, generation, exc):
        if generation != self._generation:
            return
        # Keep whatever was displayed last; only stop loading.
        self.error = exc
        self.state = SyncState.READY
        self._changed()

    def _changed(self):
        if self.on_change is not None:
            self.on_change(self)
