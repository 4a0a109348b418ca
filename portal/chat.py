import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import pydantic

from portal.database import JsonDocumentStore
from portal.errors import CorruptStoreError, NotJoinedError, PortalError, ValidationError
from portal.metrics import CHAT_CONNECTIONS, CHAT_MESSAGES
from portal.schemas import ChatMessage, PresenceEntry, now_iso

logger = logging.getLogger(__name__)

Send = Callable[[dict[str, Any]], Awaitable[None]]

CHAT_TOPIC = "chat"


def envelope(event: str, data: Any) -> dict[str, Any]:
    return {"event": event, "data": data}


class Broadcaster:
    """In-memory publish/subscribe: topic -> subscriber id -> send callable."""

    def __init__(self) -> None:
        self._topics: dict[str, dict[str, Send]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, topic: str, subscriber_id: str, send: Send) -> None:
        async with self._lock:
            self._topics.setdefault(topic, {})[subscriber_id] = send

    async def unsubscribe(self, topic: str, subscriber_id: str) -> bool:
        async with self._lock:
            subscribers = self._topics.get(topic)
            if subscribers is None or subscriber_id not in subscribers:
                return False
            del subscribers[subscriber_id]
            if not subscribers:
                self._topics.pop(topic, None)
            return True

    def subscribers(self, topic: str) -> list[str]:
        return list(self._topics.get(topic, {}))

    async def publish(self, topic: str, message: dict[str, Any]) -> list[str]:
        """Deliver to every subscriber in turn; return ids whose send failed."""
        async with self._lock:
            targets = list(self._topics.get(topic, {}).items())

        failures: list[str] = []
        for subscriber_id, send in targets:
            try:
                await send(message)
            except Exception as e:
                logger.warning(f"Dropping subscriber {subscriber_id} on {topic}: {e!r}")
                failures.append(subscriber_id)
        return failures


class ChatService:
    """One chat room: presence map, message history and fan-out.

    Messages are broadcast in the order ``send`` calls are processed, to every
    connection including the sender. Presence snapshots are broadcast whole
    on every join and leave.
    """

    def __init__(
        self,
        history_store: JsonDocumentStore,
        portal_store: JsonDocumentStore,
        broadcaster: Optional[Broadcaster] = None,
        history_limit: Optional[int] = None,
    ):
        self.history_store = history_store
        self.portal_store = portal_store
        self.broadcaster = broadcaster or Broadcaster()
        self.history_limit = history_limit
        self._presence: dict[str, PresenceEntry] = {}
        self._send_lock = asyncio.Lock()

    def online_users(self) -> list[PresenceEntry]:
        return list(self._presence.values())

    async def history(self) -> list[ChatMessage]:
        document = await self.history_store.read()
        messages = document["messages"]
        if self.history_limit is not None:
            messages = messages[-self.history_limit:] if self.history_limit > 0 else []
        history = []
        for record in messages:
            try:
                history.append(ChatMessage.model_validate(record))
            except pydantic.ValidationError as e:
                logger.warning(f"Skipping malformed chat history record: {e.error_count()} errors")
        return history

    async def connect(self, connection_id: str, send: Send) -> None:
        """Hand a connection the message history, then subscribe it.

        Runs under the send lock so no message lands between the history
        snapshot and the subscription.
        """
        async with self._send_lock:
            try:
                history = await self.history()
            except CorruptStoreError as e:
                logger.error(f"Chat history unreadable, sending empty history: {e.message}")
                history = []
            await send(envelope("chatHistory", [m.model_dump() for m in history]))
            await self.broadcaster.subscribe(CHAT_TOPIC, connection_id, send)
        CHAT_CONNECTIONS.inc()
        logger.info(f"Chat connection {connection_id} opened")

    async def join(self, connection_id: str, identity: str, profile: Optional[dict[str, Any]] = None) -> PresenceEntry:
        if not isinstance(identity, str) or not identity.strip():
            raise ValidationError("join requires an identity")
        if profile is not None and not isinstance(profile, dict):
            raise ValidationError("profile must be an object")
        identity = identity.strip()
        if profile is None:
            profile = await self._stored_profile(identity)

        entry = PresenceEntry(identity=identity, profile=profile)
        self._presence[connection_id] = entry
        logger.info(f"{identity} joined chat on {connection_id}")
        await self._broadcast_user_list()
        return entry

    async def _stored_profile(self, identity: str) -> Optional[dict[str, Any]]:
        try:
            document = await self.portal_store.read()
        except CorruptStoreError as e:
            logger.error(f"Could not load profile for {identity}: {e.message}")
            return None
        return document["profiles"].get(identity)

    async def send(self, connection_id: str, text: Any) -> ChatMessage:
        entry = self._presence.get(connection_id)
        if entry is None:
            CHAT_MESSAGES.labels(status="dropped").inc()
            raise NotJoinedError(f"Message from {connection_id} before join")
        if not isinstance(text, str) or not text.strip():
            CHAT_MESSAGES.labels(status="dropped").inc()
            raise ValidationError("message text must be a non-empty string")

        async with self._send_lock:
            message = ChatMessage(user=entry.identity, text=text, time=now_iso(), profile=entry.profile)
            try:
                await self._persist_message(message)
            except (CorruptStoreError, OSError) as e:
                # History loss is tolerated; the room still sees the message
                CHAT_MESSAGES.labels(status="unpersisted").inc()
                logger.error(f"Failed to persist chat message from {entry.identity}: {e}")
            failures = await self.broadcaster.publish(CHAT_TOPIC, envelope("message", message.model_dump()))

        CHAT_MESSAGES.labels(status="delivered").inc()
        await self._drop(failures)
        return message

    async def _persist_message(self, message: ChatMessage) -> None:
        users = [e.model_dump() for e in self.online_users()]

        def append(document: dict) -> None:
            document["messages"].append(message.model_dump())
            document["users"] = users

        await self.history_store.mutate(append)

    async def leave(self, connection_id: str) -> None:
        subscribed = await self.broadcaster.unsubscribe(CHAT_TOPIC, connection_id)
        entry = self._presence.pop(connection_id, None)
        if subscribed:
            CHAT_CONNECTIONS.dec()
        if not subscribed and entry is None:
            return
        logger.info(f"Chat connection {connection_id} closed ({entry.identity if entry else 'never joined'})")
        if entry is not None:
            await self._broadcast_user_list()
            await self._persist_users()

    async def _persist_users(self) -> None:
        users = [e.model_dump() for e in self.online_users()]

        def replace(document: dict) -> None:
            document["users"] = users

        try:
            await self.history_store.mutate(replace)
        except (CorruptStoreError, OSError) as e:
            logger.error(f"Failed to persist presence snapshot: {e}")

    async def _broadcast_user_list(self) -> None:
        snapshot = [e.model_dump() for e in self.online_users()]
        failures = await self.broadcaster.publish(CHAT_TOPIC, envelope("userList", snapshot))
        await self._drop(failures)

    async def _drop(self, connection_ids: list[str]) -> None:
        for connection_id in connection_ids:
            await self.leave(connection_id)

    async def handle(self, connection_id: str, frame: str) -> None:
        """Dispatch one client frame. Bad frames are logged, never fatal."""
        try:
            payload = json.loads(frame)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring non-JSON frame from {connection_id}")
            return
        if not isinstance(payload, dict):
            logger.warning(f"Ignoring malformed frame from {connection_id}")
            return

        event = payload.get("event")
        data = payload.get("data")
        try:
            if event == "join":
                if not isinstance(data, dict):
                    raise ValidationError("join data must be an object")
                identity = data.get("identity") or data.get("email")
                await self.join(connection_id, identity, data.get("profile"))
            elif event == "message":
                await self.send(connection_id, data)
            else:
                logger.warning(f"Ignoring unknown event {event!r} from {connection_id}")
        except PortalError as e:
            logger.warning(f"Chat event {event!r} from {connection_id} rejected: {e.message}")
