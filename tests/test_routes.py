# Schedula API Tests - HTTP surface
#
# Tests for:
# - Health and authentication
# - Tenant registration and policy settings
# - Public booking, availability and payment status (X-Tenant-Id)
# - Cancellation response shape and status codes
# - Payment webhook signature handling and idempotency
# - Uploads, notifications, recurring and waitlist endpoints

import json
from datetime import timedelta

import pytest

from schedula.extensions import db
from schedula.models import Appointment
from schedula.models.auth import ROLE_PROVIDER
from schedula.services.appointment_service import BookingRequest, create_appointment

from tests.conftest import PASSWORD, at, auth_headers, future_day, iso, make_user, tenant_headers, token_for


@pytest.fixture
def slot(db_session):
    return at(future_day(3), 10)


@pytest.fixture
def booked(tenant, service, client_user, slot):
    return create_appointment(tenant.id, BookingRequest(
        service_id=service.id,
        provider_id=None,
        start_time=slot,
        client_name=client_user.name,
        client_email=client_user.email,
    ))


class TestSystem:

    def test_health(self, client, db_session):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.get_json()
        assert data["status"] == "ok"
        assert data["database"]["status"] == "healthy"
        assert data["integrations"]["payments"] == "FakeGateway"


class TestAuth:

    def test_login_and_me(self, client, tenant, admin):
        """
        SCENARIO: Admin logs in with tenant slug and password
        EXPECTED: Token that resolves to the same user and tenant
        """
        response = client.post("/api/auth/login", json={
            "tenant": tenant.slug, "email": admin.email, "password": PASSWORD,
        })
        assert response.status_code == 200
        token = response.get_json()["token"]

        me = client.get("/api/auth/me", headers=auth_headers(token))
        assert me.status_code == 200
        assert me.get_json()["user"]["id"] == admin.id
        assert me.get_json()["tenant_id"] == tenant.id

    def test_login_tenant_from_header(self, client, tenant, admin):
        response = client.post(
            "/api/auth/login",
            json={"email": admin.email, "password": PASSWORD},
            headers=tenant_headers(tenant),
        )
        assert response.status_code == 200

    @pytest.mark.parametrize("body, status", [
        ({"tenant": "acme", "email": "owner@acme.example.com", "password": "Wrong1234"}, 401),
        ({"tenant": "beta", "email": "owner@acme.example.com", "password": PASSWORD}, 401),
        ({"tenant": "acme", "email": "owner@acme.example.com"}, 400),
    ])
    def test_login_rejected(self, client, tenant, other_tenant, admin, body, status):
        assert client.post("/api/auth/login", json=body).status_code == status

    def test_logout_revokes_token(self, client, admin):
        token = token_for(admin)
        assert client.post("/api/auth/logout", headers=auth_headers(token)).status_code == 200
        assert client.get("/api/auth/me", headers=auth_headers(token)).status_code == 401

    def test_missing_token(self, client, db_session):
        assert client.get("/api/appointments").status_code == 401


class TestTenants:

    def _register(self, client, slug="glow-studio", **extra):
        body = {
            "name": "Glow Studio",
            "slug": slug,
            "timezone": "Europe/Berlin",
            "admin": {"name": "Ada Admin", "email": "ada@glow.example.com", "password": PASSWORD},
        }
        body.update(extra)
        return client.post("/api/tenants/register", json=body)

    def test_register(self, client, db_session):
        response = self._register(client)

        assert response.status_code == 201
        data = response.get_json()
        assert data["tenant"]["slug"] == "glow-studio"
        assert data["user"]["role"] == "ADMIN"
        assert data["settings"]["booking_rules"]["buffer_time_minutes"] == 15

        me = client.get("/api/auth/me", headers=auth_headers(data["token"]))
        assert me.status_code == 200

    def test_register_duplicate_slug(self, client, db_session):
        assert self._register(client).status_code == 201
        assert self._register(client).status_code == 409

    @pytest.mark.parametrize("extra", [{"slug": "No Spaces"}, {"timezone": "Mars/Olympus"}, {"name": ""}])
    def test_register_invalid(self, client, db_session, extra):
        assert self._register(client, **extra).status_code == 400

    def test_settings_patch(self, client, tenant, admin):
        response = client.patch(
            "/api/tenants/settings",
            json={"booking_rules": {"buffer_time_minutes": 0}},
            headers=auth_headers(token_for(admin)),
        )
        assert response.status_code == 200
        assert response.get_json()["settings"]["booking_rules"]["buffer_time_minutes"] == 0

    def test_settings_patch_invalid(self, client, tenant, admin):
        response = client.patch(
            "/api/tenants/settings",
            json={"cancellation_rules": {"refund_policy": "maybe"}},
            headers=auth_headers(token_for(admin)),
        )
        assert response.status_code == 400

    def test_settings_patch_requires_admin(self, client, tenant, client_user):
        response = client.patch(
            "/api/tenants/settings",
            json={"booking_rules": {"buffer_time_minutes": 0}},
            headers=auth_headers(token_for(client_user)),
        )
        assert response.status_code == 403

    def test_public_provider_directory(self, client, tenant, provider, admin):
        response = client.get("/api/tenants/providers", headers=tenant_headers(tenant))
        names = [p["name"] for p in response.get_json()["items"]]
        assert "Pat Provider" in names


class TestPublicBooking:

    def _payload(self, service, start, **extra):
        body = {
            "service_id": service.id,
            "start_time": iso(start),
            "client_name": "Walk In",
            "client_email": "walkin@example.com",
        }
        body.update(extra)
        return body

    def test_public_booking(self, client, tenant, service, slot):
        """
        SCENARIO: Anonymous visitor books a cash appointment through the widget
        EXPECTED: 201, appointment CONFIRMED, no payment required
        """
        response = client.post(
            "/api/appointments/public", json=self._payload(service, slot), headers=tenant_headers(tenant)
        )

        assert response.status_code == 201
        data = response.get_json()
        assert data["appointment"]["status"] == "CONFIRMED"
        assert data["appointment"]["end_time"] == iso(slot + timedelta(minutes=60))
        assert data["requires_payment"] is False

    def test_online_booking_requires_payment(self, client, tenant, service, slot):
        response = client.post(
            "/api/appointments/public",
            json=self._payload(service, slot, payment_method="online"),
            headers=tenant_headers(tenant),
        )
        assert response.status_code == 201
        assert response.get_json()["requires_payment"] is True
        assert response.get_json()["appointment"]["status"] == "PENDING"

    def test_slot_taken_is_409(self, client, tenant, service, slot, booked):
        response = client.post(
            "/api/appointments/public",
            json=self._payload(service, slot + timedelta(minutes=30)),
            headers=tenant_headers(tenant),
        )
        assert response.status_code == 409

    @pytest.mark.parametrize("override, status", [
        ({"client_email": "not-an-email"}, 400),
        ({"client_email": "a@b..c"}, 400),
        ({"client_email": "a,b@c.d"}, 400),
        ({"client_email": ["jane@example.com"]}, 400),
        ({"client_name": ""}, 400),
        ({"client_name": 42}, 400),
        ({"payment_method": "CHEQUE"}, 400),
        ({"payment_method": 5}, 400),
        ({"service_id": {"x": 1}}, 400),
        ({"service_id": "abc"}, 400),
        ({"service_id": 1.5}, 400),
        ({"provider_id": [1]}, 400),
        ({"notes": {"text": "hi"}}, 400),
        ({"service_id": 999999}, 404),
    ])
    def test_rejections(self, client, tenant, service, slot, override, status):
        response = client.post(
            "/api/appointments/public", json=self._payload(service, slot, **override), headers=tenant_headers(tenant)
        )
        assert response.status_code == status

    def test_online_booking_disabled_is_403(self, client, tenant, service, slot):
        from schedula.services.policy_service import update_policy
        update_policy(tenant.id, {"booking_rules": {"enable_online_booking": False}})

        response = client.post(
            "/api/appointments/public", json=self._payload(service, slot), headers=tenant_headers(tenant)
        )
        assert response.status_code == 403

    def test_tenant_header_required(self, client, db_session, service, slot):
        assert client.post("/api/appointments/public", json=self._payload(service, slot)).status_code == 400
        unknown = client.post(
            "/api/appointments/public", json=self._payload(service, slot), headers={"X-Tenant-Id": "nope"}
        )
        assert unknown.status_code == 404


class TestAvailability:

    def test_slot_report(self, client, tenant, provider, booked, slot):
        response = client.get(
            f"/api/appointments/availability?providerId={provider.id}&date={slot.date().isoformat()}",
            headers=tenant_headers(tenant),
        )

        assert response.status_code == 200
        slots = response.get_json()
        assert len(slots) == 16
        assert slots[0] == {"time": "09:00", "available": True, "datetime": iso(at(slot.date(), 9))}
        unavailable = [s["time"] for s in slots if not s["available"]]
        assert unavailable == ["09:30", "10:00", "10:30", "11:00"]

    def test_missing_parameters(self, client, tenant):
        response = client.get("/api/appointments/availability?date=2030-07-01", headers=tenant_headers(tenant))
        assert response.status_code == 400
        assert response.get_json()["error"] == "Provider ID and date are required"

    def test_unknown_provider(self, client, tenant, client_user):
        response = client.get(
            f"/api/appointments/availability?providerId={client_user.id}&date=2030-07-01",
            headers=tenant_headers(tenant),
        )
        assert response.status_code == 404

    def test_inactive_provider_has_no_availability(self, client, db_session, tenant, provider, slot):
        provider.is_active = False
        db_session.commit()
        day = slot.date().isoformat()

        report = client.get(
            f"/api/appointments/availability?providerId={provider.id}&date={day}",
            headers=tenant_headers(tenant),
        )
        check = client.get(
            f"/api/appointments/check-availability?providerId={provider.id}"
            f"&startTime={iso(slot)}&endTime={iso(slot + timedelta(minutes=30))}",
            headers=tenant_headers(tenant),
        )

        assert report.status_code == 404
        assert check.status_code == 404

    def test_non_numeric_provider_id(self, client, tenant):
        response = client.get(
            "/api/appointments/availability?providerId=abc&date=2030-07-01",
            headers=tenant_headers(tenant),
        )
        assert response.status_code == 404

    def test_check_availability(self, client, tenant, provider, booked, slot):
        base = f"/api/appointments/check-availability?providerId={provider.id}"

        taken = client.get(
            f"{base}&startTime={iso(slot)}&endTime={iso(slot + timedelta(minutes=30))}",
            headers=tenant_headers(tenant),
        )
        free = client.get(
            f"{base}&startTime={iso(slot + timedelta(hours=1))}&endTime={iso(slot + timedelta(hours=2))}",
            headers=tenant_headers(tenant),
        )

        assert taken.status_code == 409
        assert taken.get_json()["error"] == "Time slot is not available"
        assert free.status_code == 200
        assert free.get_json() == {"available": True}

    def test_payment_status_scoped_to_tenant(self, client, tenant, other_tenant, booked):
        ok = client.get(f"/api/appointments/{booked.id}/payment-status", headers=tenant_headers(tenant))
        assert ok.status_code == 200
        assert ok.get_json()["appointment"]["payment_status"] == "PENDING"
        assert ok.get_json()["appointment"]["service"]["name"] == "Deep Tissue Massage"

        hidden = client.get(f"/api/appointments/{booked.id}/payment-status", headers=tenant_headers(other_tenant))
        assert hidden.status_code == 404


class TestAuthenticatedAppointments:

    def test_client_books_for_self(self, client, tenant, service, client_user, slot):
        response = client.post(
            "/api/appointments",
            json={"service_id": service.id, "start_time": iso(slot)},
            headers=auth_headers(token_for(client_user)),
        )
        assert response.status_code == 201
        assert response.get_json()["appointment"]["client_id"] == client_user.id

    def test_list_scoped_to_client(self, client, tenant, client_user, other_provider, booked):
        mine = client.get("/api/appointments", headers=auth_headers(token_for(client_user))).get_json()
        theirs = client.get("/api/appointments", headers=auth_headers(token_for(other_provider))).get_json()
        assert mine["total"] == 1
        assert theirs["total"] == 0

    def test_cancel_response_shape(self, client, tenant, client_user, booked):
        response = client.post(
            f"/api/appointments/{booked.id}/cancel",
            json={"reason": "Schedule conflict"},
            headers=auth_headers(token_for(client_user)),
        )

        assert response.status_code == 200
        data = response.get_json()
        assert data["success"] is True
        assert data["appointment"]["id"] == booked.id
        assert data["appointment"]["status"] == "CANCELLED"
        assert data["appointment"]["refund_amount_cents"] == 0
        assert data["appointment"]["cancelled_at"].endswith("Z")

    def test_cancel_status_codes(self, client, tenant, client_user, other_provider, booked):
        stranger = client.post(
            f"/api/appointments/{booked.id}/cancel",
            json={"reason": "x"},
            headers=auth_headers(token_for(other_provider)),
        )
        no_reason = client.post(
            f"/api/appointments/{booked.id}/cancel", json={}, headers=auth_headers(token_for(client_user))
        )
        missing = client.post(
            "/api/appointments/999999/cancel", json={"reason": "x"}, headers=auth_headers(token_for(client_user))
        )

        assert stranger.status_code == 403
        assert no_reason.status_code == 400
        assert missing.status_code == 404

    @pytest.mark.parametrize("reason", [123, {"text": "busy"}, ["busy"]])
    def test_cancel_reason_must_be_text(self, client, tenant, client_user, booked, reason):
        response = client.post(
            f"/api/appointments/{booked.id}/cancel",
            json={"reason": reason},
            headers=auth_headers(token_for(client_user)),
        )
        assert response.status_code == 400
        assert response.get_json()["error"] == "Cancellation reason must be text"

    def test_confirm_requires_staff_role(self, client, tenant, client_user, booked):
        response = client.post(f"/api/appointments/{booked.id}/confirm", headers=auth_headers(token_for(client_user)))
        assert response.status_code == 403

    def test_reschedule(self, client, tenant, client_user, booked, slot):
        response = client.post(
            f"/api/appointments/{booked.id}/reschedule",
            json={"start_time": iso(slot + timedelta(hours=4))},
            headers=auth_headers(token_for(client_user)),
        )
        assert response.status_code == 200
        assert response.get_json()["appointment"]["start_time"] == iso(slot + timedelta(hours=4))


class TestPayments:

    def _online(self, db_session, tenant, service, client_user, slot):
        appt = create_appointment(tenant.id, BookingRequest(
            service_id=service.id,
            provider_id=None,
            start_time=slot,
            client_name=client_user.name,
            client_email=client_user.email,
            payment_method="ONLINE",
        ))
        return appt

    def _event(self, event_id, intent_id, event_type="payment_succeeded"):
        return json.dumps({"id": event_id, "type": event_type, "payment_intent_id": intent_id, "charge_id": "ch_9"})

    def test_create_intent_then_webhook(self, client, db_session, tenant, service, admin, client_user, slot,
                                        collaborators):
        """
        SCENARIO: Client pays online; the gateway reports success twice
        EXPECTED: Appointment CONFIRMED + PAID once; the replay is acknowledged and ignored
        """
        appt = self._online(db_session, tenant, service, client_user, slot)
        account = client.put(
            "/api/tenants/payment-account",
            json={"payment_account_id": "acct_9"},
            headers=auth_headers(token_for(admin)),
        )
        assert account.status_code == 200

        intent = client.post(
            "/api/payments/create-intent",
            json={"appointment_id": appt.id},
            headers=auth_headers(token_for(client_user)),
        )
        assert intent.status_code == 200
        intent_id = intent.get_json()["payment_intent_id"]

        for _ in range(2):
            response = client.post(
                "/api/payments/webhook", data=self._event("evt_9", intent_id), headers={"Stripe-Signature": "valid"}
            )
            assert response.status_code == 200

        stored = db_session.get(Appointment, appt.id)
        assert stored.status == "CONFIRMED"
        assert stored.payment_status == "PAID"
        assert collaborators.notifier.kinds().count("payment_confirmation") == 1

    def test_webhook_bad_signature(self, client, db_session):
        response = client.post(
            "/api/payments/webhook", data=self._event("evt_1", "pi_1"), headers={"Stripe-Signature": "forged"}
        )
        assert response.status_code == 400
        assert response.get_json()["error"] == "Invalid signature"

    def test_webhook_ignores_unknown_intent(self, client, db_session):
        response = client.post(
            "/api/payments/webhook", data=self._event("evt_2", "pi_missing"), headers={"Stripe-Signature": "valid"}
        )
        assert response.status_code == 200

    def test_create_intent_requires_int_id(self, client, tenant, client_user):
        response = client.post(
            "/api/payments/create-intent", json={"appointment_id": "12"}, headers=auth_headers(token_for(client_user))
        )
        assert response.status_code == 400


class TestServices:

    def test_admin_creates_service(self, client, tenant, admin, provider):
        response = client.post("/api/services", json={
            "name": "  Deep Tissue  ",
            "duration_minutes": 90,
            "price_cents": 12000,
            "provider_id": provider.id,
        }, headers=auth_headers(token_for(admin)))

        assert response.status_code == 201
        assert response.get_json()["name"] == "Deep Tissue"
        assert response.get_json()["is_active"] is True

    @pytest.mark.parametrize("body", [
        {"duration_minutes": 60},
        {"name": "Trim", "duration_minutes": 60.5},
        {"name": "Trim", "duration_minutes": 5},
        {"name": "Trim", "duration_minutes": 60, "price_cents": -1},
        {"name": "Trim", "duration_minutes": 60, "is_active": "yes"},
        {"name": "Trim", "duration_minutes": 60, "tenant_id": 2},
        {"name": "   ", "duration_minutes": 60},
    ])
    def test_create_rejects_bad_payload(self, client, tenant, admin, body):
        response = client.post("/api/services", json=body, headers=auth_headers(token_for(admin)))
        assert response.status_code == 400

    def test_provider_from_other_tenant(self, client, tenant, admin, other_tenant, password_hash):
        outsider = make_user(db.session, other_tenant, "outsider@other.example.com", ROLE_PROVIDER, password_hash)
        response = client.post("/api/services", json={
            "name": "Trim", "duration_minutes": 30, "provider_id": outsider.id,
        }, headers=auth_headers(token_for(admin)))
        assert response.status_code == 404

    def test_update_and_deactivate(self, client, tenant, admin, service):
        headers = auth_headers(token_for(admin))

        updated = client.put(f"/api/services/{service.id}", json={"price_cents": 7500}, headers=headers)
        assert updated.status_code == 200
        assert updated.get_json()["price_cents"] == 7500

        assert client.delete(f"/api/services/{service.id}", headers=headers).status_code == 200
        listing = client.get("/api/services/public", headers=tenant_headers(tenant)).get_json()
        assert listing["count"] == 0

    def test_clients_cannot_edit_catalog(self, client, tenant, client_user, service):
        response = client.put(
            f"/api/services/{service.id}",
            json={"price_cents": 1},
            headers=auth_headers(token_for(client_user)),
        )
        assert response.status_code == 403


class TestUploads:

    @pytest.mark.parametrize("body, status", [
        ({"content_type": "image/png"}, 200),
        ({"content_type": "application/pdf"}, 400),
        ({}, 400),
    ])
    def test_presigned_url(self, client, tenant, provider, body, status):
        response = client.post("/api/uploads/presigned-url", json=body, headers=auth_headers(token_for(provider)))
        assert response.status_code == status

    def test_clients_cannot_upload(self, client, tenant, client_user):
        response = client.post(
            "/api/uploads/presigned-url",
            json={"content_type": "image/png"},
            headers=auth_headers(token_for(client_user)),
        )
        assert response.status_code == 403


class TestNotifications:

    def test_feed_and_mark_all_read(self, client, tenant, provider, booked):
        headers = auth_headers(token_for(provider))

        feed = client.get("/api/notifications", headers=headers).get_json()
        assert feed["unread"] == 1
        assert feed["items"][0]["type"] == "APPOINTMENT_BOOKED"

        assert client.post("/api/notifications/mark-all-read", headers=headers).get_json() == {"updated": 1}
        assert client.get("/api/notifications", headers=headers).get_json()["unread"] == 0

    def test_mark_other_users_notification(self, client, tenant, client_user, provider, booked):
        feed = client.get("/api/notifications", headers=auth_headers(token_for(provider))).get_json()
        notification_id = feed["items"][0]["id"]

        response = client.post(
            f"/api/notifications/{notification_id}/read", headers=auth_headers(token_for(client_user))
        )
        assert response.status_code == 404


class TestRecurringAndWaitlist:

    def test_create_and_deactivate_series(self, client, tenant, service, client_user):
        from schedula.services.recurring_service import sunday_based_weekday

        first = future_day(3)
        headers = auth_headers(token_for(client_user))
        response = client.post("/api/recurring-appointments", json={
            "service_id": service.id,
            "frequency": "WEEKLY",
            "days_of_week": [sunday_based_weekday(first)],
            "start_date": first.isoformat(),
            "start_time": "10:00",
            "max_occurrences": 2,
        }, headers=headers)

        assert response.status_code == 201
        data = response.get_json()
        assert len(data["appointments"]) == 2
        rule_id = data["recurring_appointment"]["id"]

        update = client.put(f"/api/recurring-appointments/{rule_id}", json={"is_active": False}, headers=headers)
        assert update.status_code == 200
        assert update.get_json()["cancelled_instances"] == 2

    def test_is_active_filter_validated(self, client, tenant, client_user):
        response = client.get(
            "/api/recurring-appointments?is_active=maybe", headers=auth_headers(token_for(client_user))
        )
        assert response.status_code == 400

    def test_join_waitlist(self, client, tenant, service, client_user, provider):
        response = client.post(
            "/api/waitlist",
            json={"service_id": service.id, "provider_id": provider.id, "priority": 5},
            headers=auth_headers(token_for(client_user)),
        )
        assert response.status_code == 201
        entry_id = response.get_json()["entry"]["id"]

        visible = client.get(f"/api/waitlist/{entry_id}", headers=auth_headers(token_for(provider)))
        assert visible.status_code == 200
