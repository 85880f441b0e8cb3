"""
Thread reconstruction for inbox views.

Turns a user's flat message list into root -> replies threads with an
aggregated unread flag. Pure projection: nothing here queries or mutates
the store, and malformed reply chains degrade to extra roots instead of
raising, so an inbox always renders.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Collection, Dict, Iterable, List, Mapping, Optional, Tuple

from messaging.core.logging import get_logger, log_extra

logger = get_logger(__name__)


@dataclass
class Thread:
    """A root message and every visible message transitively replying to it."""

    root: Any
    replies: List[Any] = field(default_factory=list)
    is_unread: bool = False
    last_activity: Optional[datetime] = None
    # reply id -> id of the message it hangs under in this view
    parents: Dict[int, int] = field(default_factory=dict)

    @property
    def messages(self) -> List[Any]:
        return [self.root, *self.replies]

    def __contains__(self, message_id: int) -> bool:
        return any(message.id == message_id for message in self.messages)


def _timestamp(message: Any) -> datetime:
    """Naive UTC creation time; SQLite hands back naive values, callers may not."""
    ts = message.created_at
    if ts is None:
        return datetime.min
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def _order_key(message: Any) -> Tuple[datetime, int]:
    # Insertion sequence breaks timestamp ties
    return _timestamp(message), message.id


def _nearest_visible_parent(
    message: Any,
    by_id: Mapping[int, Any],
    ancestry: Mapping[int, Optional[int]],
) -> Optional[int]:
    """
    Follow ``in_reply_to`` past messages this user cannot see.

    Returns the closest ancestor present in ``by_id``, or None when the
    chain runs out (deleted or unknown parent) or loops through hidden
    messages.
    """
    seen = {message.id}
    parent = message.in_reply_to
    while parent is not None:
        if parent in seen:
            logger.warning(
                "Reply chain loops back on itself, promoting to root",
                **log_extra(message_id=message.id, revisited=parent),
            )
            return None
        if parent in by_id:
            return parent
        seen.add(parent)
        parent = ancestry.get(parent)
    return None


def _resolve_roots(
    ordered: List[Any],
    parent_of: Dict[int, Optional[int]],
) -> Dict[int, int]:
    """
    Map every message id to its thread root id in one memoised pass.

    A cycle among visible messages is cut at its oldest member, which
    becomes an orphan root; ``parent_of`` is updated in place.
    """
    rank = {message.id: index for index, message in enumerate(ordered)}
    root_of: Dict[int, int] = {}

    for message in ordered:
        if message.id in root_of:
            continue

        path: List[int] = []
        on_path: Dict[int, int] = {}
        node: Optional[int] = message.id
        while node is not None and node not in root_of and node not in on_path:
            on_path[node] = len(path)
            path.append(node)
            node = parent_of[node]

        if node is None:
            root = path[-1]
        elif node in root_of:
            root = root_of[node]
        else:
            cycle = path[on_path[node]:]
            root = min(cycle, key=rank.__getitem__)
            parent_of[root] = None
            logger.warning(
                "Reply cycle detected, treating oldest message as orphan root",
                **log_extra(cycle=cycle, root=root),
            )

        for member in path:
            root_of[member] = root

    return root_of


def build_threads(
    messages: Iterable[Any],
    unread_ids: Collection[int] = (),
    ancestry: Optional[Mapping[int, Optional[int]]] = None,
) -> List[Thread]:
    """
    Assemble threads from a flat, recipient-scoped message list.

    Args:
        messages: Objects exposing ``id``, ``in_reply_to`` and ``created_at``
        unread_ids: Ids of messages the viewing user has not read
        ancestry: Parent links (id -> in_reply_to) for messages outside the
            visible set, used to hang replies under their nearest visible
            ancestor

    Returns:
        Threads ordered by most recent activity, newest first. Replies in
        each thread are newest first as well.
    """
    ordered = sorted(messages, key=_order_key)
    if not ordered:
        return []

    by_id = {message.id: message for message in ordered}
    ancestry = ancestry or {}
    unread = set(unread_ids)

    parent_of = {
        message.id: _nearest_visible_parent(message, by_id, ancestry)
        for message in ordered
    }
    root_of = _resolve_roots(ordered, parent_of)

    members: Dict[int, List[Any]] = {}
    for message in ordered:
        members.setdefault(root_of[message.id], []).append(message)

    threads = []
    for root_id, thread_messages in members.items():
        replies = [message for message in thread_messages if message.id != root_id]
        replies.sort(key=_order_key, reverse=True)
        newest = max(thread_messages, key=_order_key)
        threads.append(Thread(
            root=by_id[root_id],
            replies=replies,
            is_unread=any(message.id in unread for message in thread_messages),
            last_activity=newest.created_at,
            parents={reply.id: parent_of[reply.id] for reply in replies},
        ))

    threads.sort(key=lambda thread: _order_key(max(thread.messages, key=_order_key)), reverse=True)

    logger.debug(
        "Built threads",
        **log_extra(messages=len(ordered), threads=len(threads)),
    )
    return threads


def find_thread(threads: Iterable[Thread], message_id: int) -> Optional[Thread]:
    """Return the thread containing ``message_id``, if any."""
    for thread in threads:
        if message_id in thread:
            return thread
    return None
