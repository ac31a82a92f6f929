# Overview: Pytest coverage for the waitlist; joining, scoping, status notifications and expiry.

from datetime import timedelta

import pytest

from schedula.models import Notification, WaitlistEntry
from schedula.models.waitlist import WAITLIST_ACTIVE, WAITLIST_EXPIRED
from schedula.services.appointment_service import NotAuthorizedError, NotFoundError, ValidationFailedError
from schedula.services.notification_service import (
    NOTIFY_WAITLIST_BOOKED,
    NOTIFY_WAITLIST_CANCELLED,
    NOTIFY_WAITLIST_EXPIRED,
    NOTIFY_WAITLIST_JOINED,
)
from schedula.services.waitlist_service import (
    expire_entries,
    get_entry,
    join_waitlist,
    list_entries,
    remove_entry,
    update_entry,
)
from schedula.time_utils import utcnow


@pytest.fixture
def entry(tenant, service, provider, client_user):
    return join_waitlist(tenant.id, client_user, {
        "service_id": service.id,
        "provider_id": provider.id,
        "preferred_time_slot": "morning",
        "priority": 3,
    })


def types_for(db_session, user):
    return [n.type for n in db_session.query(Notification).filter_by(user_id=user.id).order_by(Notification.id)]


class TestJoin:

    def test_join_creates_active_entry(self, db_session, provider, entry):
        assert entry.status == WAITLIST_ACTIVE
        assert entry.priority == 3
        assert entry.notification_sent is False
        assert entry.expires_at > utcnow() + timedelta(days=29)
        assert types_for(db_session, provider) == [NOTIFY_WAITLIST_JOINED]

    def test_one_active_entry_per_service_and_provider(self, tenant, service, provider, client_user, entry):
        with pytest.raises(ValidationFailedError):
            join_waitlist(tenant.id, client_user, {"service_id": service.id, "provider_id": provider.id})

    def test_any_provider_entry_is_separate(self, tenant, service, client_user, entry):
        other = join_waitlist(tenant.id, client_user, {"service_id": service.id})
        assert other.provider_id is None

    def test_only_clients_join(self, tenant, service, provider):
        with pytest.raises(NotAuthorizedError):
            join_waitlist(tenant.id, provider, {"service_id": service.id})

    @pytest.mark.parametrize("override", [
        {"priority": 0},
        {"priority": 11},
        {"priority": True},
        {"preferred_time_slot": "brunch"},
        {"flexible_dates": "yes"},
    ])
    def test_invalid_payload(self, tenant, service, client_user, override):
        payload = {"service_id": service.id}
        payload.update(override)
        with pytest.raises(ValidationFailedError):
            join_waitlist(tenant.id, client_user, payload)

    def test_unknown_service(self, other_tenant, service, client_user):
        with pytest.raises(NotFoundError):
            join_waitlist(other_tenant.id, client_user, {"service_id": service.id})


class TestScope:

    def test_client_sees_own_entries(self, tenant, client_user, entry):
        items, total = list_entries(tenant.id, client_user)
        assert total == 1
        assert items[0].id == entry.id

    def test_other_provider_gets_not_found(self, tenant, other_provider, entry):
        with pytest.raises(NotFoundError):
            get_entry(entry.id, tenant.id, other_provider)
        assert list_entries(tenant.id, other_provider) == ([], 0)

    def test_admin_sees_everything(self, tenant, admin, entry):
        assert get_entry(entry.id, tenant.id, admin).id == entry.id

    def test_ordering_by_priority(self, db_session, tenant, service, admin, client_user, entry):
        urgent = join_waitlist(tenant.id, client_user, {"service_id": service.id, "priority": 9})
        items, _ = list_entries(tenant.id, admin)
        assert [e.id for e in items] == [urgent.id, entry.id]

    def test_invalid_status_filter(self, tenant, admin):
        with pytest.raises(ValidationFailedError):
            list_entries(tenant.id, admin, status="LOST")


class TestUpdates:

    def test_notified_marks_notification_sent(self, tenant, provider, entry):
        updated = update_entry(entry.id, tenant.id, provider, {"status": "notified"})
        assert updated.status == "NOTIFIED"
        assert updated.notification_sent is True

    def test_booked_notifies_provider(self, db_session, tenant, provider, client_user, entry):
        update_entry(entry.id, tenant.id, client_user, {"status": "BOOKED"})
        assert types_for(db_session, provider)[-1] == NOTIFY_WAITLIST_BOOKED

    def test_cancel_by_provider_notifies_client(self, db_session, tenant, provider, client_user, entry):
        update_entry(entry.id, tenant.id, provider, {"status": "CANCELLED"})
        assert types_for(db_session, client_user) == [NOTIFY_WAITLIST_CANCELLED]

    def test_rejects_unknown_fields(self, tenant, client_user, entry):
        with pytest.raises(ValidationFailedError):
            update_entry(entry.id, tenant.id, client_user, {"client_id": 99})

    def test_remove_notifies_counterparty(self, db_session, tenant, provider, client_user, entry):
        remove_entry(entry.id, tenant.id, client_user)
        assert db_session.get(WaitlistEntry, entry.id) is None
        assert types_for(db_session, provider)[-1] == NOTIFY_WAITLIST_CANCELLED


class TestExpiry:

    def test_expire_entries(self, db_session, tenant, client_user, entry):
        assert expire_entries(now=utcnow()) == 0

        expired = expire_entries(now=entry.expires_at)

        assert expired == 1
        assert db_session.get(WaitlistEntry, entry.id).status == WAITLIST_EXPIRED
        assert types_for(db_session, client_user) == [NOTIFY_WAITLIST_EXPIRED]

    def test_expire_scoped_to_tenant(self, db_session, other_tenant, entry):
        assert expire_entries(now=entry.expires_at, tenant_id=other_tenant.id) == 0
        assert db_session.get(WaitlistEntry, entry.id).status == WAITLIST_ACTIVE
