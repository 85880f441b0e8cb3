"""
Tests for recipient resolution.
"""
from datetime import timedelta

import pytest

from conftest import ADMIN, ADMIN_2, BLOCKED, GUEST, LEE, NOW, PAT, SAM, get_test_settings
from messaging.core.errors import ForbiddenError, ValidationError
from messaging.models.message import MessageType
from messaging.models.user import UserRole
from messaging.services.delivery import (
    ByDynamicQuery,
    ByRole,
    BySpecificUser,
    BySpecificUsers,
    DeliveryResolver,
)
from messaging.services.directory import UserDirectory


def resolve(resolver, addressing, sender_id=ADMIN, sender_role=UserRole.ADMIN):
    return resolver.resolve(addressing, sender_id=sender_id, sender_role=sender_role)


class TestDirectAddressing:
    """Single-user addressing."""

    def test_direct_message(self, resolver):
        resolution = resolve(resolver, BySpecificUser(PAT), sender_id=SAM, sender_role=UserRole.PAID)

        assert resolution.recipient_ids == (PAT,)
        assert resolution.message_type is MessageType.DIRECT
        assert resolution.target is None

    def test_unknown_user_rejected(self, resolver):
        with pytest.raises(ValidationError):
            resolve(resolver, BySpecificUser(999))

    def test_blocked_user_rejected(self, resolver):
        with pytest.raises(ValidationError):
            resolve(resolver, BySpecificUser(BLOCKED))

    def test_self_message_rejected_by_default(self, resolver):
        with pytest.raises(ValidationError):
            resolve(resolver, BySpecificUser(ADMIN))

    def test_self_message_allowed_when_configured(self, db, users):
        resolver = DeliveryResolver(
            UserDirectory(db),
            get_test_settings(allow_self_messages=True),
            clock=lambda: NOW,
        )

        assert resolve(resolver, BySpecificUser(ADMIN)).recipient_ids == (ADMIN,)


class TestBroadcastClasses:
    """Role-based audiences."""

    @pytest.mark.parametrize("audience,expected,message_type", [
        ("all", {ADMIN_2, PAT, SAM, LEE, GUEST}, MessageType.BROADCAST_ALL),
        ("registered", {PAT, SAM, LEE}, MessageType.BROADCAST_REGISTERED),
        ("badge_holders", {LEE}, MessageType.BROADCAST_BADGE_HOLDERS),
        ("admin", {ADMIN_2}, MessageType.BROADCAST_ADMINS),
    ])
    def test_audience_membership(self, resolver, audience, expected, message_type):
        resolution = resolve(resolver, ByRole(audience))

        assert set(resolution.recipient_ids) == expected
        assert resolution.message_type is message_type
        assert resolution.target == audience

    def test_sender_and_blocked_users_excluded(self, resolver):
        resolution = resolve(resolver, ByRole("all"))

        assert ADMIN not in resolution.recipient_ids
        assert BLOCKED not in resolution.recipient_ids

    def test_recipients_are_deduplicated_and_sorted(self, resolver):
        resolution = resolve(resolver, ByRole("registered"))

        assert list(resolution.recipient_ids) == sorted(set(resolution.recipient_ids))

    def test_non_admin_cannot_broadcast(self, resolver):
        with pytest.raises(ForbiddenError):
            resolve(resolver, ByRole("all"), sender_id=PAT, sender_role=UserRole.PAID)

    def test_anyone_may_write_to_admins(self, resolver):
        resolution = resolve(resolver, ByRole("admin"), sender_id=GUEST, sender_role=UserRole.GUEST)

        assert set(resolution.recipient_ids) == {ADMIN, ADMIN_2}

    def test_unknown_audience(self, resolver):
        with pytest.raises(ValidationError):
            resolve(resolver, ByRole("everyone-ever"))


class TestDynamicAudiences:
    """Named predicates evaluated at send time."""

    @pytest.mark.parametrize("predicate,expected", [
        ("sponsorship_expiring_7days", {PAT}),
        ("newly_registered_users", {LEE}),
        ("new_paid_users", {SAM}),
        ("badge_holders", {LEE}),
    ])
    def test_predicate_membership(self, resolver, predicate, expected):
        resolution = resolve(resolver, ByDynamicQuery(predicate))

        assert set(resolution.recipient_ids) == expected
        assert resolution.message_type is MessageType.DYNAMIC_AUDIENCE
        assert resolution.target == predicate

    def test_window_follows_settings(self, db, users):
        resolver = DeliveryResolver(
            UserDirectory(db),
            get_test_settings(sponsorship_expiry_days=60),
            clock=lambda: NOW,
        )

        resolution = resolve(resolver, ByDynamicQuery("sponsorship_expiring_7days"))

        assert set(resolution.recipient_ids) == {PAT, SAM}

    def test_predicate_is_evaluated_at_resolution_time(self, db, users, settings):
        later = NOW + timedelta(days=25)
        resolver = DeliveryResolver(UserDirectory(db), settings, clock=lambda: later)

        resolution = resolve(resolver, ByDynamicQuery("sponsorship_expiring_7days"))

        assert SAM in resolution.recipient_ids
        assert PAT not in resolution.recipient_ids

    def test_unknown_predicate(self, resolver):
        with pytest.raises(ValidationError):
            resolve(resolver, ByDynamicQuery("drop table users"))

    def test_non_admin_cannot_use_predicates(self, resolver):
        with pytest.raises(ForbiddenError):
            resolve(resolver, ByDynamicQuery("badge_holders"), sender_id=LEE, sender_role=UserRole.REGISTERED)


class TestAudienceLimits:
    """Empty and oversized audiences."""

    def test_empty_audience_is_rejected(self, resolver):
        # SAM is the only new paid user and never receives their own message
        with pytest.raises(ValidationError):
            resolve(resolver, ByDynamicQuery("new_paid_users"), sender_id=SAM)

    def test_audience_cap(self, db, users):
        resolver = DeliveryResolver(
            UserDirectory(db),
            get_test_settings(max_broadcast_recipients=2),
            clock=lambda: NOW,
        )

        with pytest.raises(ValidationError):
            resolve(resolver, ByRole("registered"))

    def test_presolved_users(self, resolver):
        resolution = resolve(
            resolver,
            BySpecificUsers((PAT, SAM, PAT), MessageType.DYNAMIC_AUDIENCE, "new_paid_users"),
        )

        assert resolution.recipient_ids == (PAT, SAM)
        assert resolution.message_type is MessageType.DYNAMIC_AUDIENCE
        assert resolution.target == "new_paid_users"

    def test_presolved_users_must_exist(self, resolver):
        with pytest.raises(ValidationError):
            resolve(resolver, BySpecificUsers((PAT, 999)))
