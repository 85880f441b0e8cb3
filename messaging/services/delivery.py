"""
Delivery resolution: expand an addressing mode into concrete recipients.

Addressing is one of a closed set of variants. Role audiences and dynamic
predicates come from fixed registries keyed by name, so untrusted input can
only select an audience, never describe one.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, Optional, Tuple, Union

from sqlalchemy import true
from sqlalchemy.sql.elements import ColumnElement

from messaging.core.config import Settings
from messaging.core.errors import ForbiddenError, ValidationError
from messaging.core.logging import get_logger, log_extra
from messaging.models.message import MessageType
from messaging.models.user import UserProfile, UserRole
from messaging.services.directory import UserDirectory

logger = get_logger(__name__)


@dataclass(frozen=True)
class BySpecificUser:
    user_id: int


@dataclass(frozen=True)
class BySpecificUsers:
    """An audience that was already resolved, e.g. one rendering of a template send."""

    user_ids: Tuple[int, ...]
    message_type: MessageType = MessageType.DIRECT
    target: Optional[str] = None


@dataclass(frozen=True)
class ByRole:
    audience: str


@dataclass(frozen=True)
class ByDynamicQuery:
    predicate: str


Addressing = Union[BySpecificUser, BySpecificUsers, ByRole, ByDynamicQuery]


@dataclass(frozen=True)
class Resolution:
    """Deduplicated recipients plus how the message was addressed."""

    recipient_ids: Tuple[int, ...]
    message_type: MessageType
    target: Optional[str] = None

    def __len__(self) -> int:
        return len(self.recipient_ids)


Criterion = Callable[[datetime, Settings], ColumnElement]


@dataclass(frozen=True)
class BroadcastClass:
    message_type: MessageType
    criterion: Criterion
    admin_only: bool = True


BROADCAST_CLASSES: Dict[str, BroadcastClass] = {
    "all": BroadcastClass(
        MessageType.BROADCAST_ALL,
        lambda now, settings: true(),
    ),
    "registered": BroadcastClass(
        MessageType.BROADCAST_REGISTERED,
        lambda now, settings: UserProfile.role.in_([UserRole.REGISTERED, UserRole.PAID]),
    ),
    "badge_holders": BroadcastClass(
        MessageType.BROADCAST_BADGE_HOLDERS,
        lambda now, settings: UserProfile.has_membership_badge.is_(True),
    ),
    # Anyone may write to the administrators
    "admin": BroadcastClass(
        MessageType.BROADCAST_ADMINS,
        lambda now, settings: UserProfile.role == UserRole.ADMIN,
        admin_only=False,
    ),
}


def _sponsorship_expiring(now: datetime, settings: Settings) -> ColumnElement:
    horizon = now + timedelta(days=settings.sponsorship_expiry_days)
    return UserProfile.subscription_end_date.between(now, horizon)


def _newly_registered(now: datetime, settings: Settings) -> ColumnElement:
    return UserProfile.created_at >= now - timedelta(days=settings.new_user_days)


def _new_paid(now: datetime, settings: Settings) -> ColumnElement:
    since = now - timedelta(days=settings.new_paid_days)
    return (UserProfile.role == UserRole.PAID) & (UserProfile.subscription_start_date >= since)


DYNAMIC_PREDICATES: Dict[str, Criterion] = {
    "sponsorship_expiring_7days": _sponsorship_expiring,
    "newly_registered_users": _newly_registered,
    "new_paid_users": _new_paid,
    "badge_holders": BROADCAST_CLASSES["badge_holders"].criterion,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryResolver:
    """Resolves addressing against the user directory at send time."""

    def __init__(
        self,
        directory: UserDirectory,
        settings: Settings,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.directory = directory
        self.settings = settings
        self.clock = clock

    def resolve(
        self,
        addressing: Addressing,
        sender_id: int,
        sender_role: str = UserRole.REGISTERED,
    ) -> Resolution:
        """
        Expand ``addressing`` into a snapshot of recipient ids.

        Raises:
            ValidationError: unknown audience or predicate, invalid direct
                target, no recipients, or more than the configured cap
            ForbiddenError: non-admin addressing an admin-only audience
        """
        if isinstance(addressing, BySpecificUser):
            resolution = Resolution((self._direct_target(addressing.user_id, sender_id),), MessageType.DIRECT)
        elif isinstance(addressing, BySpecificUsers):
            resolution = Resolution(
                self._known_users(addressing.user_ids),
                addressing.message_type,
                addressing.target,
            )
        elif isinstance(addressing, ByRole):
            broadcast = BROADCAST_CLASSES.get(addressing.audience)
            if broadcast is None:
                raise ValidationError(f"unknown broadcast class: {addressing.audience}")
            if broadcast.admin_only:
                self._require_admin(sender_role, addressing.audience)
            criterion = broadcast.criterion(self.clock(), self.settings)
            resolution = Resolution(
                self._collect(criterion, sender_id),
                broadcast.message_type,
                addressing.audience,
            )
        elif isinstance(addressing, ByDynamicQuery):
            predicate = DYNAMIC_PREDICATES.get(addressing.predicate)
            if predicate is None:
                raise ValidationError(f"unknown audience predicate: {addressing.predicate}")
            self._require_admin(sender_role, addressing.predicate)
            resolution = Resolution(
                self._collect(predicate(self.clock(), self.settings), sender_id),
                MessageType.DYNAMIC_AUDIENCE,
                addressing.predicate,
            )
        else:
            raise ValidationError(f"unsupported addressing: {addressing!r}")

        if not resolution.recipient_ids:
            raise ValidationError("no recipients match the addressing")

        logger.info(
            "Resolved recipients",
            **log_extra(
                message_type=resolution.message_type.value,
                target=resolution.target,
                recipients=len(resolution),
            ),
        )
        return resolution

    def _require_admin(self, sender_role: str, audience: str) -> None:
        if sender_role != UserRole.ADMIN:
            raise ForbiddenError(f"only administrators may address '{audience}'")

    def _direct_target(self, user_id: int, sender_id: int) -> int:
        if user_id == sender_id and not self.settings.allow_self_messages:
            raise ValidationError("cannot send a message to yourself")
        user = self.directory.get(user_id)
        if user is None:
            raise ValidationError(f"recipient {user_id} does not exist")
        if user.is_blocked:
            raise ValidationError(f"recipient {user_id} cannot receive messages")
        return user.id

    def _known_users(self, user_ids: Iterable[int]) -> Tuple[int, ...]:
        wanted = set(user_ids)
        self._check_cap(len(wanted))
        found = self.directory.get_many(wanted)
        missing = wanted - found.keys()
        if missing:
            raise ValidationError(f"unknown recipients: {sorted(missing)}")
        return tuple(sorted(user_id for user_id, user in found.items() if not user.is_blocked))

    def _collect(self, criterion: ColumnElement, sender_id: int) -> Tuple[int, ...]:
        recipients = set()
        for user_id in self.directory.iter_ids(
            criterion,
            exclude=sender_id,
            batch_size=self.settings.fanout_batch_size,
        ):
            recipients.add(user_id)
            self._check_cap(len(recipients))
        return tuple(sorted(recipients))

    def _check_cap(self, count: int) -> None:
        if count > self.settings.max_broadcast_recipients:
            raise ValidationError(
                f"audience exceeds {self.settings.max_broadcast_recipients} recipients"
            )
