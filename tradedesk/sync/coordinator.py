"""Optimistic last-writer-wins sync between a book, its local cache and
the remote per-user document."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Callable, TypeVar

from tradedesk.config.constants import ChangeOrigin, SyncState
from tradedesk.config.settings import SyncSettings
from tradedesk.core.book import now_ms
from tradedesk.sync.versioning import LastWriterWins, VersionPolicy, document_version

if TYPE_CHECKING:
    from tradedesk.core.book import Book
    from tradedesk.data.repository import LocalCache
    from tradedesk.sync.remote import DocumentStore, Unsubscribe

logger = logging.getLogger(__name__)

T = TypeVar("T")
StateListener = Callable[[SyncState], None]


class SyncCoordinator:
    """Keeps one book in step with the remote document of one user.

    * Local mutations stamp a new version, are cached immediately and
      pushed to the remote after ``debounce_seconds`` of quiet (each new
      mutation restarts the timer).
    * A remote snapshot replaces the book wholesale when the version policy
      says it is newer than the local version; otherwise it is dropped.
    * While a push is in flight the state is ``SAVING`` and remote pushes
      are ignored: they are the echo of the write itself.
    * ``guarded(mutation)`` pulls and reconciles before a mutation so two
      devices are less likely to overwrite each other. A pull never
      interrupts a push: it waits for the push to finish first.
    * Edits that a failed push left behind keep the coordinator out of
      ``SYNCED`` until a later push delivers them.

    Parameters
    ----------
    book:
        The store this coordinator synchronizes. It is only touched through
        ``to_document`` and ``replace_from_document``.
    store:
        Remote document store.
    cache:
        Local durable cache; optional.
    settings:
        Debounce window.
    policy:
        Version comparison, ``LastWriterWins`` by default.
    """

    def __init__(
        self,
        book: "Book",
        store: "DocumentStore",
        cache: "LocalCache | None" = None,
        settings: SyncSettings | None = None,
        policy: VersionPolicy | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._book = book
        self._store = store
        self._cache = cache
        self._settings = settings or SyncSettings()
        self._policy = policy or LastWriterWins()
        self._clock = clock or now_ms

        self._state = SyncState.OFFLINE
        self._user_id: str | None = None
        self._local_version = 0
        self._synced_version = 0
        self._debounce_task: asyncio.Task | None = None  # type: ignore[type-arg]
        self._local_writes: set[asyncio.Task] = set()  # type: ignore[type-arg]
        self._resave = False
        self._save_done = asyncio.Event()
        self._save_done.set()
        self._remove_book_listener: Callable[[], None] | None = None
        self._unsubscribe: "Unsubscribe | None" = None
        self._state_listeners: list[StateListener] = []

    # -- Status --------------------------------------------------------------

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def namespace(self) -> str:
        return self._book.namespace

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def local_version(self) -> int:
        """``lastUpdated`` of the current local state."""
        return self._local_version

    @property
    def synced_version(self) -> int:
        """Last version known to be identical on the remote."""
        return self._synced_version

    @property
    def has_pending_write(self) -> bool:
        """True while the remote lacks part of the local state, including
        edits left behind by a failed push."""
        return (
            self._debounce_task is not None
            or self._resave
            or self._local_version > self._synced_version
        )

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        self._state_listeners.append(listener)
        return lambda: self._state_listeners.remove(listener)

    def _set_state(self, state: SyncState) -> None:
        if state == self._state:
            return
        logger.debug("%s sync: %s -> %s", self.namespace, self._state.value, state.value)
        self._state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Sync state listener failed")

    # -- Lifecycle -----------------------------------------------------------

    async def start(self, user_id: str) -> SyncState:
        """Restore the local cache, reconcile once with the remote, subscribe.

        Calling it again for the same user is a no-op; a different user
        stops the current session first.
        """
        if self._user_id == user_id:
            return self._state
        if self._user_id is not None:
            await self.stop()

        await self._restore_local()
        self._user_id = user_id
        self._remove_book_listener = self._book.add_listener(self._on_book_change)
        logger.info("Starting %s sync for user %s (local version %d)", self.namespace, user_id, self._local_version)

        self._set_state(SyncState.SYNCING)
        document = await self._store.load(user_id, self.namespace)
        if document is not None:
            applied = await self._reconcile(document)
            if not applied and self._local_version > document_version(document):
                # This device holds edits the remote has not seen yet.
                await self._push()
            else:
                self._synced_version = max(self._synced_version, document_version(document))
                self._set_state(SyncState.SYNCED)
        elif self._store.last_error:
            logger.warning("Initial load of %s failed: %s", self.namespace, self._store.last_error)
            self._set_state(SyncState.ERROR)
        elif self._local_version > 0:
            # Nothing stored remotely yet: seed it with what this device has.
            await self._push()
        else:
            self._set_state(SyncState.SYNCED)

        self._unsubscribe = self._store.subscribe(user_id, self.namespace, self._on_remote)
        return self._state

    async def stop(self, flush: bool = True) -> None:
        """End the session: push a pending write (unless *flush* is False),
        unsubscribe and go OFFLINE. The book keeps its state."""
        queued = self._debounce_task is not None
        self._cancel_debounce()
        if flush and self._user_id is not None:
            await self._wait_for_save()
            queued = queued or self._resave or self._debounce_task is not None
            self._cancel_debounce()
            if queued:
                await self._push()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._remove_book_listener is not None:
            self._remove_book_listener()
            self._remove_book_listener = None
        await self.drain()
        self._resave = False
        self._user_id = None
        self._set_state(SyncState.OFFLINE)

    async def logout(self) -> None:
        """Drop the session and every trace of it on this device."""
        logger.info("Logging out of %s sync", self.namespace)
        await self.stop(flush=False)
        self._book.reset()
        if self._cache is not None:
            await self._cache.clear(self.namespace)
        self._local_version = 0
        self._synced_version = 0

    async def drain(self) -> None:
        """Wait for outstanding local-cache writes."""
        while self._local_writes:
            await asyncio.gather(*list(self._local_writes), return_exceptions=True)

    # -- Outbound ------------------------------------------------------------

    def _on_book_change(self, book: "Book", origin: ChangeOrigin) -> None:
        if origin != ChangeOrigin.LOCAL:
            return
        self._local_version = max(self._clock(), self._local_version + 1)
        self._write_local(self._book.to_document(self._local_version))
        if self._state == SyncState.SAVING:
            self._resave = True
            return
        self._schedule_push()

    def _schedule_push(self) -> None:
        self._cancel_debounce()
        self._set_state(SyncState.SYNCING)
        self._debounce_task = asyncio.create_task(self._debounced_push())

    async def _debounced_push(self) -> None:
        await asyncio.sleep(self._settings.debounce_seconds)
        self._debounce_task = None
        await self._push()

    def _cancel_debounce(self) -> None:
        if self._debounce_task is not None:
            self._debounce_task.cancel()
            self._debounce_task = None

    async def retry(self) -> bool:
        """Push the current state now, e.g. after an ``ERROR``."""
        self._cancel_debounce()
        await self._wait_for_save()
        self._cancel_debounce()
        return await self._push()

    async def flush(self) -> bool:
        """Push immediately if the remote lacks local edits."""
        self._cancel_debounce()
        await self._wait_for_save()
        self._cancel_debounce()
        if not self.has_pending_write:
            return True
        return await self._push()

    async def _wait_for_save(self) -> None:
        while self._state == SyncState.SAVING:
            await self._save_done.wait()

    async def _push(self) -> bool:
        if self._user_id is None:
            return False
        self._resave = False
        version = self._local_version
        document = self._book.to_document(version)
        self._save_done.clear()
        self._set_state(SyncState.SAVING)
        try:
            return await self._save(version, document)
        finally:
            self._save_done.set()

    async def _save(self, version: int, document: dict[str, Any]) -> bool:
        try:
            ok = await self._store.save(self._user_id, self.namespace, document)
        except Exception:
            logger.exception("Unexpected failure saving %s", self.namespace)
            ok = False

        if not ok:
            logger.warning("Sync of %s failed: %s", self.namespace, self._store.last_error or "unknown error")
            self._set_state(SyncState.ERROR)
            return False

        self._synced_version = version
        if self._cache is not None:
            await self._cache.set_synced_at(self.namespace, version)
        logger.info("Synced %s (version %d)", self.namespace, version)
        if self._resave:
            self._schedule_push()
        else:
            self._set_state(SyncState.SYNCED)
        return True

    # -- Inbound -------------------------------------------------------------

    def _on_remote(self, document: dict[str, Any]) -> None:
        if self._user_id is None:
            return
        if self._state == SyncState.SAVING:
            logger.debug("Ignoring %s push while saving", self.namespace)
            return
        self._apply_if_newer(document)

    def _apply_if_newer(self, document: dict[str, Any]) -> bool:
        remote_version = document_version(document)
        if not self._policy.should_apply(self._local_version, remote_version):
            logger.debug(
                "Keeping local %s (local %d >= remote %d)",
                self.namespace,
                self._local_version,
                remote_version,
            )
            return False

        self._cancel_debounce()
        self._resave = False
        self._book.replace_from_document(document, ChangeOrigin.REMOTE)
        self._local_version = remote_version
        self._synced_version = remote_version
        self._write_local(self._book.to_document(remote_version), synced_at=remote_version)
        logger.info("Applied remote %s snapshot (version %d)", self.namespace, remote_version)
        self._set_state(SyncState.SYNCED)
        return True

    async def _reconcile(self, document: dict[str, Any]) -> bool:
        # The load was awaited: the local version may have moved since.
        applied = self._apply_if_newer(document)
        await self.drain()
        return applied

    async def pull(self) -> bool:
        """Load the remote document and apply it if newer. True if applied.

        An in-flight push is awaited first. Local edits the remote has not
        received are pushed afterwards unless the pull replaced them.
        """
        await self._wait_for_save()
        if self._user_id is None:
            return False
        self._set_state(SyncState.SYNCING)
        document = await self._store.load(self._user_id, self.namespace)
        if self._state == SyncState.SAVING:
            # A debounced push started during the load and supersedes it.
            logger.debug("Dropping %s pull overtaken by a push", self.namespace)
            return False
        if document is None and self._store.last_error:
            logger.warning("Pull of %s failed: %s", self.namespace, self._store.last_error)
            self._set_state(SyncState.ERROR)
            return False
        if document is not None and await self._reconcile(document):
            return True
        if self._state == SyncState.SAVING:
            return False
        if self._debounce_task is None and self.has_pending_write:
            self._schedule_push()
        elif not self.has_pending_write:
            self._set_state(SyncState.SYNCED)
        return False

    async def guarded(self, mutation: Callable[[], T]) -> T:
        """Run *mutation* after a pull-and-reconcile.

        Offline, the mutation runs against local state directly.
        """
        if self._user_id is not None:
            await self.pull()
        return mutation()

    # -- Local cache ---------------------------------------------------------

    async def _restore_local(self) -> None:
        if self._cache is None:
            return
        document = await self._cache.load_local(self.namespace)
        synced_at = await self._cache.get_synced_at(self.namespace)
        self._synced_version = synced_at
        if document is None:
            self._local_version = max(self._local_version, synced_at)
            return
        self._book.replace_from_document(document, ChangeOrigin.REMOTE)
        self._local_version = max(document_version(document), synced_at)
        logger.info("Restored %s from local cache (version %d)", self.namespace, self._local_version)

    def _write_local(self, document: dict[str, Any], synced_at: int | None = None) -> None:
        if self._cache is None:
            return
        task = asyncio.create_task(self._save_local(document, synced_at))
        self._local_writes.add(task)
        task.add_done_callback(self._local_writes.discard)

    async def _save_local(self, document: dict[str, Any], synced_at: int | None) -> None:
        await self._cache.save_local(self.namespace, document)
        if synced_at is not None:
            await self._cache.set_synced_at(self.namespace, synced_at)
