"""
Message store: messages, attachments and per-recipient delivery records.

A send writes the message row, its attachments and every delivery record
in one transaction. Deleting is per user: a recipient drops only their own
delivery record, a sender only hides the message from their own view. The
message row itself is purged once nobody can see it any more and no reply
points at it.
"""
from datetime import datetime, timezone
from typing import Any, Collection, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import and_, func, insert, or_, select, update
from sqlalchemy.orm import Session, selectinload

from messaging.core import metrics
from messaging.core.config import Settings
from messaging.core.errors import ForbiddenError, NotFoundError, ValidationError
from messaging.core.logging import get_logger, log_extra
from messaging.models.message import (
    Message,
    MessageAttachment,
    MessageRecipient,
    MessageType,
)
from messaging.models.user import UserRole
from messaging.services.delivery import (
    Addressing,
    BySpecificUser,
    BySpecificUsers,
    DeliveryResolver,
    Resolution,
)
from messaging.services.notify import Notifier, NullNotifier
from messaging.services.threads import Thread, build_threads, find_thread

logger = get_logger(__name__)

REPLY_PREFIX = "Re: "

FOLDERS = ("inbox", "sent", "all")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageStore:
    """Durable CRUD for messages and their delivery records."""

    def __init__(
        self,
        db: Session,
        resolver: DeliveryResolver,
        settings: Settings,
        notifier: Optional[Notifier] = None,
    ):
        self.db = db
        self.resolver = resolver
        self.settings = settings
        self.notifier = notifier or NullNotifier()

    # -- writes -----------------------------------------------------------

    def create_message(
        self,
        sender_id: int,
        subject: Optional[str],
        content: str,
        addressing: Optional[Addressing] = None,
        attachments: Sequence[Mapping[str, Any]] = (),
        in_reply_to: Optional[int] = None,
        *,
        sender_role: str = UserRole.REGISTERED,
        template: Any = None,
        commit: bool = True,
    ) -> Message:
        """
        Persist a message and fan it out to its recipients.

        Replies may leave ``subject`` blank (it becomes ``Re: <root subject>``)
        and may omit ``addressing``, in which case the reply goes back to the
        parent's sender, or, when the parent's sender is replying, to the
        parent's recipients.

        With ``commit=False`` the rows are only flushed; the caller owns the
        transaction and must call ``notify`` after committing.

        Raises:
            ValidationError: empty content or subject, attachment limits,
                or no resolvable recipients
            NotFoundError: ``in_reply_to`` names no message
            ForbiddenError: replying to a message the sender cannot see, or
                addressing an audience the sender may not use
        """
        if not content or not content.strip():
            raise ValidationError("content is required")
        self._validate_attachments(attachments)

        parent = None
        if in_reply_to is not None:
            parent = self.db.get(Message, in_reply_to)
            if parent is None:
                raise NotFoundError(f"message {in_reply_to} not found")
            self._ensure_access(parent, sender_id)
            if not subject or not subject.strip():
                subject = self._reply_subject(parent)
        elif not subject or not subject.strip():
            raise ValidationError("subject is required")

        if addressing is not None:
            resolution = self.resolver.resolve(addressing, sender_id=sender_id, sender_role=sender_role)
        elif parent is not None:
            resolution = self._reply_audience(parent, sender_id, sender_role)
        else:
            raise ValidationError("a recipient is required")

        message = Message(
            sender_id=sender_id,
            subject=subject.strip(),
            content=content,
            message_type=resolution.message_type.value,
            target=resolution.target,
            in_reply_to=in_reply_to,
            template_id=getattr(template, "id", None),
            template_version=getattr(template, "version", None),
        )

        try:
            self.db.add(message)
            self.db.flush()
            for position, attachment in enumerate(attachments):
                self.db.add(MessageAttachment(
                    message_id=message.id,
                    position=position,
                    filename=attachment["filename"],
                    url=attachment["url"],
                    content_type=attachment.get("content_type") or "application/octet-stream",
                    size=attachment.get("size") or 0,
                ))
            self._fan_out(message, resolution)
            if commit:
                self.db.commit()
            else:
                self.db.flush()
        except Exception:
            self.db.rollback()
            raise

        metrics.increment("messages_created_total", message_type=resolution.message_type.value)
        metrics.increment("recipients_fanned_out_total", len(resolution))
        logger.info(
            "Message created",
            **log_extra(
                message_id=message.id,
                sender_id=sender_id,
                message_type=resolution.message_type.value,
                in_reply_to=in_reply_to,
                recipients=len(resolution),
                attachments=len(attachments),
            ),
        )

        if commit:
            self.notify(message, resolution.recipient_ids)
        return message

    def notify(self, message: Message, recipient_ids: Sequence[int]) -> None:
        """Hand a committed message to the notifier; failures never undo the send."""
        try:
            self.notifier.notify(message, recipient_ids)
        except Exception:
            logger.exception("Notifier failed", **log_extra(message_id=message.id))

    def mark_read(self, message_id: int, user_id: int) -> MessageRecipient:
        """
        Mark the user's delivery record as read. Idempotent.

        The conditional update only ever moves unread -> read, so concurrent
        calls for the same pair cannot clobber each other.

        Raises:
            NotFoundError: the user holds no delivery record for the message
        """
        result = self.db.execute(
            update(MessageRecipient)
            .where(
                MessageRecipient.message_id == message_id,
                MessageRecipient.recipient_id == user_id,
                MessageRecipient.read.is_(False),
            )
            .values(read=True, read_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        record = self._recipient_record(message_id, user_id)
        if record is None:
            raise NotFoundError(f"message {message_id} has no delivery for user {user_id}")

        if result.rowcount:
            metrics.increment("messages_marked_read_total")
            logger.debug("Message marked read", **log_extra(message_id=message_id, user_id=user_id))
        return record

    def delete_for_user(self, message_id: int, user_id: int) -> None:
        """
        Remove the message from one user's view.

        Raises:
            NotFoundError: no such message, or the user already deleted it
            ForbiddenError: the user was never a party to the message
        """
        message = self.db.get(Message, message_id)
        if message is None:
            raise NotFoundError(f"message {message_id} not found")

        record = self._recipient_record(message_id, user_id)
        sender_view = message.sender_id == user_id and not message.sender_deleted
        if record is None and not sender_view:
            if message.sender_id == user_id:
                raise NotFoundError(f"message {message_id} not found")
            raise ForbiddenError(f"user {user_id} has no access to message {message_id}")

        if record is not None:
            self.db.delete(record)
        if sender_view:
            message.sender_deleted = True
        self.db.flush()

        purged = self._purge_unreachable(message)
        self.db.commit()

        metrics.increment("messages_deleted_total", outcome="purged" if purged else "hidden")
        logger.info(
            "Message deleted for user",
            **log_extra(message_id=message_id, user_id=user_id, purged=purged),
        )

    # -- reads ------------------------------------------------------------

    def get_message(self, message_id: int, user_id: int) -> Message:
        """
        Raises:
            NotFoundError: no such message
            ForbiddenError: user is neither sender nor recipient
        """
        message = self.db.get(Message, message_id)
        if message is None:
            raise NotFoundError(f"message {message_id} not found")
        self._ensure_access(message, user_id)
        return message

    def list_messages_for_user(
        self,
        user_id: int,
        folder: str = "all",
        only_unread: bool = False,
    ) -> List[Message]:
        """
        The user's messages, newest first, unthreaded.

        ``folder`` picks received messages (``inbox``), the user's own
        (``sent``) or both (``all``). ``only_unread`` keeps the messages the
        user has an unread delivery record for, so it never matches a sent
        message on its own.
        """
        if folder not in FOLDERS:
            raise ValidationError(f"unknown folder: {folder}")

        received = select(MessageRecipient.message_id).where(MessageRecipient.recipient_id == user_id)
        sent = and_(Message.sender_id == user_id, Message.sender_deleted.is_(False))
        if folder == "inbox":
            criterion = Message.id.in_(received)
        elif folder == "sent":
            criterion = sent
        else:
            criterion = or_(sent, Message.id.in_(received))

        query = (
            self.db.query(Message)
            .options(selectinload(Message.attachments))
            .filter(criterion)
        )
        if only_unread:
            query = query.filter(Message.id.in_(
                received.where(MessageRecipient.read.is_(False))
            ))
        return query.order_by(Message.created_at.desc(), Message.id.desc()).all()

    def read_states(self, user_id: int, messages: Iterable[Message]) -> Dict[int, bool]:
        """Read flag per message for this user; a sender has read what they wrote."""
        messages = list(messages)
        records = dict(
            self.db.query(MessageRecipient.message_id, MessageRecipient.read)
            .filter(
                MessageRecipient.recipient_id == user_id,
                MessageRecipient.message_id.in_([message.id for message in messages]),
            )
            .all()
        ) if messages else {}
        return {
            message.id: bool(records.get(message.id, message.sender_id == user_id))
            for message in messages
        }

    def ancestry(self, message_ids: Collection[int], known: Collection[int] = ()) -> Dict[int, Optional[int]]:
        """
        Parent links for ``message_ids`` and their ancestors up to the roots.

        Messages in ``known`` are not looked up. Ids missing from the table
        (purged messages) are simply absent from the result.
        """
        known = set(known)
        links: Dict[int, Optional[int]] = {}
        frontier = set(message_ids) - known
        while frontier:
            rows = self.db.query(Message.id, Message.in_reply_to).filter(Message.id.in_(frontier)).all()
            frontier = set()
            for message_id, parent_id in rows:
                links[message_id] = parent_id
                if parent_id is not None and parent_id not in links and parent_id not in known:
                    frontier.add(parent_id)
        return links

    def inbox(self, user_id: int, folder: str = "all", only_unread: bool = False) -> List[Thread]:
        """The user's messages assembled into threads, most recent activity first."""
        messages = self.list_messages_for_user(user_id, folder, only_unread)
        visible = {message.id for message in messages}
        hidden_parents = {
            message.in_reply_to
            for message in messages
            if message.in_reply_to is not None and message.in_reply_to not in visible
        }
        states = self.read_states(user_id, messages)
        return build_threads(
            messages,
            unread_ids={message_id for message_id, read in states.items() if not read},
            ancestry=self.ancestry(hidden_parents, known=visible),
        )

    def get_thread(self, message_id: int, user_id: int) -> Thread:
        """The thread in the user's inbox that contains ``message_id``."""
        self.get_message(message_id, user_id)
        thread = find_thread(self.inbox(user_id), message_id)
        if thread is None:
            raise NotFoundError(f"message {message_id} not found")
        return thread

    def unread_count(self, user_id: int) -> int:
        return self.db.query(func.count(MessageRecipient.id)).filter(
            MessageRecipient.recipient_id == user_id,
            MessageRecipient.read.is_(False),
        ).scalar() or 0

    def stats(self) -> Dict[str, Any]:
        """Aggregate counts across the whole store."""
        total_messages = self.db.query(func.count(Message.id)).scalar() or 0
        total_deliveries = self.db.query(func.count(MessageRecipient.id)).scalar() or 0
        unread_deliveries = self.db.query(func.count(MessageRecipient.id)).filter(
            MessageRecipient.read.is_(False)
        ).scalar() or 0
        senders_count = self.db.query(func.count(func.distinct(Message.sender_id))).scalar() or 0
        top_senders = (
            self.db.query(Message.sender_id, func.count(Message.id).label("count"))
            .group_by(Message.sender_id)
            .order_by(func.count(Message.id).desc(), Message.sender_id)
            .limit(10)
            .all()
        )
        by_type = dict(
            self.db.query(Message.message_type, func.count(Message.id))
            .group_by(Message.message_type)
            .all()
        )
        return {
            "total_messages": total_messages,
            "total_deliveries": total_deliveries,
            "unread_deliveries": unread_deliveries,
            "senders_count": senders_count,
            "messages_per_sender": [
                {"sender_id": sender_id, "count": count} for sender_id, count in top_senders
            ],
            "messages_per_type": by_type,
            "first_message_at": self.db.query(func.min(Message.created_at)).scalar(),
            "last_message_at": self.db.query(func.max(Message.created_at)).scalar(),
        }

    # -- helpers ----------------------------------------------------------

    def _recipient_record(self, message_id: int, user_id: int) -> Optional[MessageRecipient]:
        return self.db.query(MessageRecipient).filter(
            MessageRecipient.message_id == message_id,
            MessageRecipient.recipient_id == user_id,
        ).one_or_none()

    def _ensure_access(self, message: Message, user_id: int) -> None:
        if message.sender_id == user_id and not message.sender_deleted:
            return
        if self._recipient_record(message.id, user_id) is None:
            raise ForbiddenError(f"user {user_id} has no access to message {message.id}")

    def _validate_attachments(self, attachments: Sequence[Mapping[str, Any]]) -> None:
        if len(attachments) > self.settings.max_attachments:
            raise ValidationError(f"at most {self.settings.max_attachments} attachments are allowed")
        for attachment in attachments:
            if not attachment.get("filename") or not attachment.get("url"):
                raise ValidationError("attachments need a filename and url")
            if (attachment.get("size") or 0) > self.settings.max_attachment_bytes:
                raise ValidationError(
                    f"attachment '{attachment['filename']}' exceeds {self.settings.max_attachment_bytes} bytes"
                )

    def _reply_subject(self, parent: Message) -> str:
        root = parent
        seen = {root.id}
        while root.in_reply_to is not None and root.in_reply_to not in seen:
            ancestor = self.db.get(Message, root.in_reply_to)
            if ancestor is None:
                break
            seen.add(ancestor.id)
            root = ancestor
        if root.subject.startswith(REPLY_PREFIX):
            return root.subject
        return REPLY_PREFIX + root.subject

    def _reply_audience(self, parent: Message, sender_id: int, sender_role: str) -> Resolution:
        if parent.sender_id != sender_id:
            if parent.sender_id == self.settings.system_sender_id:
                raise ValidationError(
                    f"message {parent.id} has no sender to reply to; an explicit recipient is required"
                )
            return self.resolver.resolve(
                BySpecificUser(parent.sender_id), sender_id=sender_id, sender_role=sender_role
            )

        recipient_ids = tuple(sorted(
            record.recipient_id for record in parent.recipients if record.recipient_id != sender_id
        ))
        if not recipient_ids:
            raise ValidationError("the original message has no remaining recipients to reply to")
        return self.resolver.resolve(
            BySpecificUsers(recipient_ids, MessageType(parent.message_type), parent.target),
            sender_id=sender_id,
            sender_role=sender_role,
        )

    def _fan_out(self, message: Message, resolution: Resolution) -> None:
        now = _utcnow()
        batch_size = self.settings.fanout_batch_size
        ids = resolution.recipient_ids
        for start in range(0, len(ids), batch_size):
            self.db.execute(
                insert(MessageRecipient),
                [
                    {
                        "message_id": message.id,
                        "recipient_id": recipient_id,
                        "read": False,
                        "delivered_at": now,
                        "target": resolution.target,
                    }
                    for recipient_id in ids[start:start + batch_size]
                ],
            )

    def _purge_unreachable(self, message: Message) -> bool:
        """Delete messages nobody can see and nothing replies to, walking up the chain."""
        purged = False
        while message is not None and message.sender_deleted:
            has_recipients = self.db.query(MessageRecipient.id).filter(
                MessageRecipient.message_id == message.id
            ).first() is not None
            has_replies = self.db.query(Message.id).filter(
                Message.in_reply_to == message.id
            ).first() is not None
            if has_recipients or has_replies:
                break

            parent_id = message.in_reply_to
            self.db.delete(message)
            self.db.flush()
            purged = True
            message = self.db.get(Message, parent_id) if parent_id is not None else None
        return purged
