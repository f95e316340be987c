"""
Message Sync Loop

Polls the message store for the active view, decrypts new records in
batches, and keeps an ordered, de-duplicated list of ChatMessages.

Every poll and send is tagged with the generation it was issued under.
Switching views bumps the generation, so anything still in flight for the
previous view is discarded on arrival instead of being written into the
new view's state.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from crypto.agreement import derive_shared_key
from crypto.primitives import (
    CryptoError,
    DecryptionFailedError,
    InvalidPeerKeyError,
    decrypt_envelope,
    encrypt_envelope,
)
from .api import IdentityDirectory, MessageStore, TransportError
from .models import ChatMessage, Decrypted, Failed, MessageRecord
from .storage import Identity

logger = logging.getLogger(__name__)


class KeySource(ABC):
    """Produces the symmetric key for one view."""

    @abstractmethod
    async def resolve(self) -> bytes:
        ...


class RoomKeySource(KeySource):
    """The room key taken from the link fragment, held in memory only."""

    def __init__(self, room_key: bytes):
        self._room_key = room_key

    async def resolve(self) -> bytes:
        return self._room_key


class ConversationKeySource(KeySource):
    """
    Re-derives the pairwise key on every call.

    The peer's public key is looked up fresh each time, and the derived key
    is handed to the caller without being kept.
    """

    def __init__(self, identity: Identity, directory: IdentityDirectory, peer_id: str):
        self.identity = identity
        self.directory = directory
        self.peer_id = peer_id

    async def resolve(self) -> bytes:
        peer_key = await self.directory.get_public_key(self.peer_id)
        if not peer_key:
            raise InvalidPeerKeyError(f"User {self.peer_id} has not published a public key")
        return derive_shared_key(self.identity.private_key, peer_key)


@dataclass
class ChatTarget:
    """
    One room or conversation view.

    Attributes:
        ref: Room code or conversation id
        store: Message store for this mode
        key_source: Where the symmetric key comes from
        sender_id: Sent with each message in room mode; None lets the server decide
        label: Human-readable name for display
    """
    ref: str
    store: MessageStore
    key_source: KeySource
    sender_id: Optional[str] = None
    label: str = ""

    @classmethod
    def room(cls, code: str, room_key: bytes, store: MessageStore) -> 'ChatTarget':
        return cls(ref=code, store=store, key_source=RoomKeySource(room_key),
                   sender_id=str(uuid.uuid4()), label=f"room {code[:8]}")

    @classmethod
    def conversation(cls, conversation_id: str, peer_id: str, identity: Identity,
                     directory: IdentityDirectory, store: MessageStore,
                     label: str = "") -> 'ChatTarget':
        return cls(ref=conversation_id, store=store,
                   key_source=ConversationKeySource(identity, directory, peer_id),
                   label=label or peer_id)


class SyncState(Enum):
    IDLE = "idle"
    POLLING = "polling"
    DECRYPTING = "decrypting"
    STOPPED = "stopped"


class MessageSync:
    """
    Keeps the active view's messages in sync with the server.
    """

    def __init__(self, poll_interval: float = 2.0,
                 on_update: Optional[Callable[[List[ChatMessage]], None]] = None,
                 on_error: Optional[Callable[[Exception], None]] = None):
        """
        Initialize the sync loop.

        Args:
            poll_interval: Seconds between polls
            on_update: Called with newly added messages, in order
            on_error: Called when a key error stops the loop
        """
        self.poll_interval = poll_interval
        self.on_update = on_update
        self.on_error = on_error
        self.target: Optional[ChatTarget] = None
        self.state = SyncState.IDLE
        self.error: Optional[Exception] = None
        self._generation = 0
        self._messages: Dict[int, ChatMessage] = {}
        self._cursor: Optional[int] = None
        self._task: Optional[asyncio.Task] = None
        self._poll_lock = asyncio.Lock()

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def messages(self) -> List[ChatMessage]:
        """The active view's messages ordered by creation time"""
        return sorted(self._messages.values(), key=ChatMessage.sort_key)

    def switch(self, target: Optional[ChatTarget]):
        """
        Make `target` the active view and start polling it.

        Must be called from a running event loop. Passing None leaves the
        current view without opening another.
        """
        self._generation += 1
        if self._task is not None:
            self._task.cancel()
            self._task = None

        self.target = target
        self._messages = {}
        self._cursor = None
        self.error = None
        self.state = SyncState.IDLE
        self._poll_lock = asyncio.Lock()

        if target is not None:
            logger.debug("Switched to %s (generation %d)", target.label or target.ref, self._generation)
            self._task = asyncio.create_task(self._run(self._generation))

    async def close(self):
        """Stop polling and wait for the poll task to wind down"""
        task = self._task
        self.switch(None)
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def refresh(self) -> bool:
        """Poll the active view immediately, e.g. when it regains focus"""
        return await self.poll_once()

    async def _run(self, generation: int):
        while generation == self._generation:
            try:
                await self.poll_once()
            except TransportError as e:
                logger.warning("Poll failed: %s", e)
            except CryptoError as e:
                self._stop_with_error(generation, e)
                return
            except Exception:
                logger.exception("Unexpected error polling %s", self.target.label if self.target else "?")
            await asyncio.sleep(self.poll_interval)

    def _stop_with_error(self, generation: int, error: Exception):
        if generation != self._generation:
            return
        logger.error("Stopping sync for %s: %s", self.target.label if self.target else "?", error)
        self.state = SyncState.STOPPED
        self.error = error
        if self.on_error:
            self.on_error(error)

    def _is_stale(self, generation: int, stage: str) -> bool:
        if generation == self._generation:
            return False
        logger.debug("Discarding %s result from generation %d", stage, generation)
        return True

    async def poll_once(self) -> bool:
        """
        Fetch, decrypt, and merge one batch for the active view.

        Returns:
            True if a result was applied, False if there was no view or the
            view changed while the poll was in flight

        Raises:
            TransportError: If the fetch fails
            CryptoError: If the view's key cannot be resolved
        """
        async with self._poll_lock:
            target = self.target
            generation = self._generation
            if target is None or self.state is SyncState.STOPPED:
                return False

            self.state = SyncState.POLLING
            try:
                records = await target.store.list(target.ref, after=self._cursor)
                if self._is_stale(generation, "poll"):
                    return False

                fresh = self._unseen(records)
                added: List[ChatMessage] = []
                if fresh:
                    self.state = SyncState.DECRYPTING
                    key = await target.key_source.resolve()
                    if self._is_stale(generation, "key"):
                        return False
                    batch = await asyncio.gather(*(self._decrypt(record, key) for record in fresh))
                    if self._is_stale(generation, "decrypt"):
                        return False
                    added = self._merge(batch)

                if records:
                    newest = max(record.id for record in records)
                    self._cursor = newest if self._cursor is None else max(self._cursor, newest)

                if added:
                    failed = sum(1 for m in added if not m.is_decrypted)
                    logger.debug("Applied %d new messages (%d undecryptable)", len(added), failed)
                    self._notify(added)
                return True
            finally:
                if generation == self._generation and self.state is not SyncState.STOPPED:
                    self.state = SyncState.IDLE

    def _unseen(self, records: List[MessageRecord]) -> List[MessageRecord]:
        seen = set(self._messages)
        fresh = []
        for record in records:
            if record.id not in seen:
                seen.add(record.id)
                fresh.append(record)
        return fresh

    async def _decrypt(self, record: MessageRecord, key: bytes) -> ChatMessage:
        try:
            return ChatMessage(record, Decrypted(decrypt_envelope(record.envelope, key)))
        except DecryptionFailedError as e:
            logger.info("Message %s could not be decrypted", record.id)
            return ChatMessage(record, Failed(str(e)))

    def _merge(self, batch: List[ChatMessage]) -> List[ChatMessage]:
        added = []
        for message in batch:
            if message.id not in self._messages:
                self._messages[message.id] = message
                added.append(message)
        added.sort(key=ChatMessage.sort_key)
        return added

    def _notify(self, added: List[ChatMessage]):
        if self.on_update:
            self.on_update(added)

    async def send(self, plaintext: str) -> ChatMessage:
        """
        Encrypt and post a message to the active view.

        Each call encrypts afresh, so retrying after a failure never reuses
        an IV.

        Raises:
            TransportError: If the post fails; the caller should restore the input
            CryptoError: If the view's key cannot be resolved
        """
        target = self.target
        if target is None:
            raise RuntimeError("No active chat")
        generation = self._generation

        key = await target.key_source.resolve()
        envelope = encrypt_envelope(plaintext, key)

        record = await target.store.create(target.ref, envelope, sender_id=target.sender_id)
        message = ChatMessage(record, Decrypted(plaintext))
        if not self._is_stale(generation, "send"):
            added = self._merge([message])
            if added:
                self._notify(added)
        return message

    @property
    def own_sender_id(self) -> Optional[str]:
        return self.target.sender_id if self.target else None
