"""Local, periodically reconciled view of one conversation's messages."""

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple

import structlog

from ..domain.models import Message, ReplyContext

logger = structlog.get_logger()

Listener = Callable[["MessageFeed"], None]

REPLY_SNIPPET_LENGTH = 80


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=timezone.utc)


def same_payload(local: Message, remote: Message) -> bool:
    """Fallback match for a server message that does not echo a client id."""
    return (
        local.sender_id == remote.sender_id
        and local.content == remote.content
        and local.reply_to == remote.reply_to
        and [a.name for a in local.attachments] == [a.name for a in remote.attachments]
    )


class MessageFeed:
    """Messages of one conversation as the UI renders them.

    The feed has two parts. The synced prefix mirrors the last server
    response and is written only by ``merge``. The local suffix holds
    messages composed on this device that the server has not listed yet
    (pending, failed, or confirmed but not synced) and is written only by
    the composer. Optimistic edits and deletions are overlays on top of
    both, dropped once the server reflects them.

    Ordering: messages already in the synced prefix keep their relative
    order across merges; new server messages are appended after them in
    server order; the local suffix always renders last.
    """

    def __init__(self, conversation_id: str, reconcile_window: float = 30.0) -> None:
        self.conversation_id = conversation_id
        self.reconcile_window = timedelta(seconds=reconcile_window)
        self._synced: List[Message] = []
        self._local: List[Message] = []
        self._edits: Dict[str, Tuple[str, datetime]] = {}
        self._deletions: Dict[str, datetime] = {}
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    def _overlay(self, message: Message) -> Message:
        update = {}
        if message.id in self._edits:
            content, edited_at = self._edits[message.id]
            update.update(content=content, edited=True, edited_at=edited_at)
        if message.id in self._deletions and not message.is_deleted:
            update["deleted_at"] = self._deletions[message.id]
        return message.model_copy(update=update) if update else message

    @property
    def messages(self) -> List[Message]:
        synced_ids = {m.id for m in self._synced}
        rendered = [self._overlay(m) for m in self._synced]
        rendered.extend(self._overlay(m) for m in self._local if m.id not in synced_ids)
        return rendered

    @property
    def synced(self) -> List[Message]:
        return list(self._synced)

    @property
    def local(self) -> List[Message]:
        return list(self._local)

    def get(self, message_id: str) -> Optional[Message]:
        """Look up a rendered message by server id or client id."""
        for message in self.messages:
            if message.id == message_id or (message.client_id and message.client_id == message_id):
                return message
        return None

    def reply_context(self, message: Message) -> Optional[ReplyContext]:
        """Resolve ``reply_to`` against the current list.

        A target that is missing or deleted yields no context; this never
        raises.
        """
        if not message.reply_to:
            return None
        target = self.get(message.reply_to)
        if target is None or target.is_deleted:
            return None
        snippet = target.content or (target.attachments[0].name if target.attachments else "")
        return ReplyContext(
            message_id=target.id,
            sender_id=target.sender_id,
            snippet=snippet[:REPLY_SNIPPET_LENGTH],
        )

    # Local suffix, written by the composer

    def append_local(self, message: Message) -> None:
        self._local.append(message)
        self._notify()

    def local_entry(self, client_id: str) -> Optional[Message]:
        for message in self._local:
            if message.client_id == client_id:
                return message
        return None

    def replace_local(self, client_id: str, message: Message) -> bool:
        for index, existing in enumerate(self._local):
            if existing.client_id == client_id:
                self._local[index] = message
                self._notify()
                return True
        return False

    def confirm_local(self, client_id: str, confirmed: Message) -> bool:
        """Swap a pending entry for its server-confirmed version.

        If a sync already listed the server copy, the local entry is just
        dropped so the message never appears twice.
        """
        if any(m.id == confirmed.id for m in self._synced):
            return self.remove_local(client_id)
        return self.replace_local(client_id, confirmed)

    def remove_local(self, client_id: str) -> bool:
        before = len(self._local)
        self._local = [m for m in self._local if m.client_id != client_id]
        if len(self._local) != before:
            self._notify()
            return True
        return False

    # Optimistic overlays

    def apply_edit(self, message_id: str, content: str, edited_at: datetime) -> None:
        self._edits[message_id] = (content, edited_at)
        self._notify()

    def clear_edit(self, message_id: str, content: Optional[str] = None) -> None:
        """Drop an edit overlay; with ``content``, only if it is still that edit."""
        overlay = self._edits.get(message_id)
        if overlay is None or (content is not None and overlay[0] != content):
            return
        del self._edits[message_id]
        self._notify()

    def apply_deletion(self, message_id: str, deleted_at: datetime) -> None:
        self._deletions[message_id] = deleted_at
        self._notify()

    def clear_deletion(self, message_id: str) -> None:
        if self._deletions.pop(message_id, None) is not None:
            self._notify()

    # Synced prefix, written by the synchronizer tick

    def merge(self, server_messages: List[Message]) -> List[Message]:
        """Fold a server response into the feed; returns newly appended messages."""
        incoming: Dict[str, Message] = {}
        for message in server_messages:
            incoming.setdefault(message.id, message)

        merged: List[Message] = []
        seen: Set[str] = set()
        for current in self._synced:
            fresh = incoming.get(current.id)
            if fresh is None:
                continue
            merged.append(fresh)
            seen.add(fresh.id)

        appended: List[Message] = []
        for message in server_messages:
            if message.id in seen:
                continue
            seen.add(message.id)
            merged.append(incoming[message.id])
            appended.append(incoming[message.id])

        self._synced = merged
        self._reconcile_local(appended)
        self._expire_overlays(incoming)
        if appended:
            logger.debug(
                "feed_merged",
                conversation_id=self.conversation_id,
                appended=len(appended),
                total=len(merged),
            )
        self._notify()
        return appended

    def _reconcile_local(self, appended: List[Message]) -> None:
        """Drop local entries the server now lists.

        A confirmed entry matches by server id and a pending entry by the
        echoed client id. Failing both, a pending entry matches a newly
        appended server message with the same sender, content, reply
        target and attachment names created within ``reconcile_window``
        of it. Each server message absorbs at most one local entry,
        earliest local entry first.
        """
        synced_ids = {m.id for m in self._synced}
        echoed = {m.client_id for m in self._synced if m.client_id}
        candidates = [m for m in appended if not m.client_id]
        remaining: List[Message] = []

        for local in self._local:
            if local.id in synced_ids or (local.client_id and local.client_id in echoed):
                continue
            if local.is_pending:
                match = self._heuristic_match(local, candidates)
                if match is not None:
                    candidates.remove(match)
                    logger.debug(
                        "pending_matched_by_content",
                        client_id=local.client_id,
                        message_id=match.id,
                    )
                    continue
            remaining.append(local)
        self._local = remaining

    def _heuristic_match(self, local: Message, candidates: List[Message]) -> Optional[Message]:
        for remote in candidates:
            if not same_payload(local, remote):
                continue
            if abs(_aware(remote.created_at) - _aware(local.created_at)) <= self.reconcile_window:
                return remote
        return None

    def _expire_overlays(self, incoming: Dict[str, Message]) -> None:
        for message_id, (content, _) in list(self._edits.items()):
            fresh = incoming.get(message_id)
            if fresh is not None and fresh.content == content:
                del self._edits[message_id]
        for message_id in list(self._deletions):
            fresh = incoming.get(message_id)
            gone = fresh is None and not any(m.id == message_id for m in self._local)
            if gone or (fresh is not None and fresh.is_deleted):
                del self._deletions[message_id]
