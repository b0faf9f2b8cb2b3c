import asyncio
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Sequence

import structlog

from estate_messaging.database.base import StoreGateway
from estate_messaging.errors import MessagingError, NotAuthorized, UploadError
from estate_messaging.repositories.conversation_repository import ConversationRepository
from estate_messaging.repositories.message_repository import MessageRepository
from estate_messaging.schemas.messaging import (
    AttachmentFile,
    Conversation,
    Identity,
    Message,
    MessagingSnapshot,
)
from estate_messaging.services.read_state import ReadStateTracker
from estate_messaging.services.reconciler import ChangeReconciler
from estate_messaging.utils.blob_store import BlobStore

logger = structlog.get_logger()

SnapshotListener = Callable[[MessagingSnapshot], None]


class MessagingService:
    """Use cases of one connected client.

    Owns the client's snapshot (conversation list, current conversation and
    its messages). Only the use-case methods below and the change reconciler,
    through :meth:`refresh_all`, write to it, and every write goes through
    :meth:`_apply`. A failed call leaves the snapshot as it found it.
    """

    def __init__(
        self,
        identity: Optional[Identity],
        gateway: StoreGateway,
        blob_store: BlobStore,
        retry_seconds: Optional[float] = None,
    ) -> None:
        self.identity = identity
        self._blob_store = blob_store
        self.conversations = ConversationRepository(gateway)
        self.tracker = ReadStateTracker(gateway, self.conversations)
        self.messages = MessageRepository(gateway, self.conversations, self.tracker)
        self._state = MessagingSnapshot()
        self._listeners: List[SnapshotListener] = []
        self._send_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        # bumped on every fetch so late answers can be recognised and dropped
        self._list_generation = 0
        self._messages_generation = 0
        # bumped whenever the current conversation changes
        self._selection = 0
        self.reconciler: Optional[ChangeReconciler] = None
        if identity is not None:
            self.reconciler = ChangeReconciler(identity.id, gateway, self.refresh_all, retry_seconds)

    # snapshot

    @property
    def snapshot(self) -> MessagingSnapshot:
        return self._state.model_copy(deep=True)

    def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _apply(self, **changes) -> None:
        self._state = self._state.model_copy(update=changes)
        snapshot = self.snapshot
        for listener in list(self._listeners):
            listener(snapshot)

    def _require_user(self) -> str:
        if self.identity is None:
            raise NotAuthorized("No active session")
        return self.identity.id

    # realtime

    def start_realtime(self) -> None:
        if self.reconciler is not None:
            self.reconciler.start()

    async def close(self) -> None:
        if self.reconciler is not None:
            await self.reconciler.stop()

    # reads

    async def load(self) -> List[Conversation]:
        self._require_user()
        self._apply(loading=True)
        try:
            return await self.refresh_conversations()
        finally:
            self._apply(loading=False)

    async def refresh_conversations(self) -> List[Conversation]:
        user_id = self._require_user()
        self._list_generation += 1
        generation = self._list_generation
        conversations = await self.conversations.list_for_user(user_id)
        if generation != self._list_generation:
            logger.debug("stale_conversation_list_dropped", user_id=user_id)
            return conversations

        changes = {"conversations": conversations}
        current = self._state.current_conversation
        if current is not None:
            fresh = next((c for c in conversations if c.id == current.id), None)
            changes["current_conversation"] = fresh
            if fresh is None:
                # removed by the other participant
                self._selection += 1
                changes["messages"] = []
        self._apply(**changes)
        return conversations

    async def refresh_messages(self, conversation_id: str) -> Optional[List[Message]]:
        self._require_user()
        self._messages_generation += 1
        generation, selection = self._messages_generation, self._selection
        messages = await self.messages.list_for_conversation(conversation_id)
        current = self._state.current_conversation
        stale = generation != self._messages_generation or selection != self._selection
        if stale or current is None or current.id != conversation_id:
            logger.debug("stale_messages_dropped", conversation_id=conversation_id)
            return None
        self._apply(messages=messages)
        return messages

    async def refresh_all(self) -> None:
        await self.refresh_conversations()
        current = self._state.current_conversation
        if current is not None:
            await self.refresh_messages(current.id)

    # use cases

    async def open_conversation(self, conversation: Conversation) -> Optional[List[Message]]:
        """Select ``conversation``, load its messages, then mark it read.

        Returns None when another conversation was opened before the messages
        arrived; the late result is dropped and nothing is marked read.
        """
        user_id = self._require_user()
        if user_id not in conversation.participants:
            raise NotAuthorized(f"{user_id} is not a participant of {conversation.id}")
        previous = self._state
        self._selection += 1
        self._messages_generation += 1
        selection = self._selection
        messages = await self.messages.list_for_conversation(conversation.id)
        if selection != self._selection:
            logger.debug("stale_open_dropped", conversation_id=conversation.id)
            return None
        self._apply(current_conversation=conversation, messages=messages)

        if conversation.unread_count > 0:
            try:
                await self.messages.mark_read(conversation.id, user_id)
            except MessagingError:
                self._apply(
                    current_conversation=previous.current_conversation,
                    messages=previous.messages,
                )
                raise
            try:
                await self.refresh_all()
            except MessagingError as exc:
                logger.warning("post_read_refresh_failed", conversation_id=conversation.id, error=str(exc))
        return self._state.messages

    async def open_conversation_by_id(self, conversation_id: str) -> Optional[List[Message]]:
        user_id = self._require_user()
        doc = await self.conversations.ensure_participant(conversation_id, user_id)
        return await self.open_conversation(Conversation.from_document(doc, viewer_id=user_id))

    async def send(
        self,
        conversation_id: str,
        content: str,
        files: Optional[Sequence[AttachmentFile]] = None,
    ) -> Message:
        sender_id = self._require_user()
        # one send per conversation at a time keeps last_message_at in order
        async with self._send_locks[conversation_id]:
            # no uploads for senders outside the conversation
            await self.conversations.ensure_participant(conversation_id, sender_id)
            urls = await self._upload_all(files or [])
            message = await self.messages.append(conversation_id, sender_id, content, urls)
            try:
                await self.tracker.record_new_message(message)
            except MessagingError:
                await self._discard(message)
                raise
            logger.info("message_sent", conversation_id=conversation_id, message_id=message.id)

            try:
                await self.refresh_messages(conversation_id)
                await self.refresh_conversations()
            except MessagingError as exc:
                # the message is stored; show it now and let the reconciler catch up
                logger.warning("post_send_refresh_failed", conversation_id=conversation_id, error=str(exc))
                self._show_sent(message)
            return message

    async def start(
        self,
        other_user_id: str,
        subject: Optional[str] = None,
        initial_message: Optional[str] = None,
        property_id: Optional[str] = None,
    ) -> Conversation:
        """Create (or reuse) a conversation and optionally send a first message.

        Creation and the first send are separate units of work: when the send
        fails the conversation stays, and the error is only logged.
        """
        user_id = self._require_user()
        conversation = await self.conversations.create_or_get(user_id, other_user_id, property_id, subject)

        current = self._state.current_conversation
        changes = {"current_conversation": conversation}
        if current is None or current.id != conversation.id:
            self._selection += 1
            changes["messages"] = []
        self._apply(**changes)

        if initial_message:
            try:
                await self.send(conversation.id, initial_message)
            except MessagingError as exc:
                logger.warning("initial_message_failed", conversation_id=conversation.id, error=str(exc))
        else:
            try:
                await self.refresh_messages(conversation.id)
                await self.refresh_conversations()
            except MessagingError as exc:
                logger.warning("post_start_refresh_failed", conversation_id=conversation.id, error=str(exc))

        for fresh in self._state.conversations:
            if fresh.id == conversation.id:
                return fresh
        return conversation

    async def remove(self, conversation_id: str) -> None:
        user_id = self._require_user()
        self._apply(deleting=True)
        try:
            await self.conversations.delete(conversation_id, user_id)
        finally:
            self._apply(deleting=False)

        changes = {"conversations": [c for c in self._state.conversations if c.id != conversation_id]}
        current = self._state.current_conversation
        if current is not None and current.id == conversation_id:
            self._selection += 1
            changes["current_conversation"] = None
            changes["messages"] = []
        self._apply(**changes)
        self._send_locks.pop(conversation_id, None)

    # helpers

    def _show_sent(self, message: Message) -> None:
        def bumped(conversation: Conversation) -> Conversation:
            if conversation.id != message.conversation_id:
                return conversation
            last = max(conversation.last_message_at, message.created_at)
            return conversation.model_copy(update={"last_message_at": last})

        changes = {"conversations": [bumped(c) for c in self._state.conversations]}
        current = self._state.current_conversation
        if current is not None and current.id == message.conversation_id:
            changes["current_conversation"] = bumped(current)
            if all(m.id != message.id for m in self._state.messages):
                changes["messages"] = [*self._state.messages, message]
        self._apply(**changes)

    async def _upload_all(self, files: Sequence[AttachmentFile]) -> List[str]:
        if not files:
            return []
        results = await asyncio.gather(
            *(self._blob_store.upload(f) for f in files),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, UploadError):
                raise result
            if isinstance(result, BaseException):
                raise UploadError(str(result)) from result
        return list(results)

    async def _discard(self, message: Message) -> None:
        try:
            await self.messages.remove(message.id)
        except MessagingError as exc:
            logger.error("message_rollback_failed", message_id=message.id, error=str(exc))
        else:
            logger.info("message_rolled_back", message_id=message.id)
