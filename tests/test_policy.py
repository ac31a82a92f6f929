# Overview: Pytest coverage for the tenant policy store; defaults, validation and merged updates.

from datetime import time

import pytest

from schedula.models import Tenant, TenantSettings
from schedula.services.policy_service import (
    PolicyValidationError,
    build_policy,
    ensure_settings,
    get_policy,
    parse_booking_rules,
    parse_cancellation_rules,
    parse_payment_rules,
    parse_working_hours,
    policy_to_dict,
    update_policy,
)


class TestParsing:

    def test_missing_sections_use_defaults(self):
        tenant = Tenant(id=1, name="Solo", slug="solo", timezone=None)
        policy = build_policy(tenant, None)

        assert policy.timezone == "UTC"
        assert policy.booking.buffer_time_minutes == 15
        assert policy.booking.max_advance_booking_days == 30
        assert policy.cancellation.deadline_hours == 24
        assert policy.cancellation.refund_policy == "full"
        assert policy.payment.accept_cash is True
        assert policy.payment.accept_online is False
        assert policy.hours_for("monday").start == time(9, 0)
        assert policy.hours_for("sunday").enabled is False

    def test_present_working_hours_are_authoritative(self):
        days = parse_working_hours({"monday": {"start": "08:00", "end": "12:00"}})
        assert list(days) == ["monday"]
        assert days["monday"].enabled is True

    def test_disabled_day_may_have_any_hours(self):
        days = parse_working_hours({"sunday": {"start": "17:00", "end": "09:00", "enabled": False}})
        assert days["sunday"].enabled is False

    @pytest.mark.parametrize("raw", [
        {"funday": {"start": "09:00", "end": "17:00"}},
        {"monday": {"start": "9am", "end": "17:00"}},
        {"monday": {"start": "17:00", "end": "09:00"}},
        {"monday": {"start": "09:00", "end": "17:00", "enabled": "yes"}},
        {"monday": {"start": "09:00", "end": "17:00", "lunch": "12:00"}},
        ["monday"],
    ])
    def test_invalid_working_hours(self, raw):
        with pytest.raises(PolicyValidationError):
            parse_working_hours(raw)

    @pytest.mark.parametrize("parser, raw", [
        (parse_booking_rules, {"buffer_time_minutes": -5}),
        (parse_booking_rules, {"buffer_time_minutes": "15"}),
        (parse_booking_rules, {"require_confirmation": 1}),
        (parse_booking_rules, {"surge_pricing": True}),
        (parse_cancellation_rules, {"refund_policy": "store_credit"}),
        (parse_cancellation_rules, {"partial_refund_percentage": 101}),
        (parse_cancellation_rules, {"deadline_hours": True}),
        (parse_payment_rules, {"currency": "dollars"}),
        (parse_payment_rules, {"accept_cash": False, "accept_online": False}),
    ])
    def test_invalid_rules(self, parser, raw):
        with pytest.raises(PolicyValidationError):
            parser(raw)

    def test_zero_advance_window_means_unlimited(self):
        assert parse_booking_rules({"max_advance_booking_days": 0}).max_advance_booking_days is None

    def test_currency_is_upper_cased(self):
        assert parse_payment_rules({"currency": "eur"}).currency == "EUR"


class TestStore:

    def test_get_policy_reads_stored_sections(self, tenant):
        policy = get_policy(tenant.id)
        assert policy.payment.accept_online is True
        assert policy.booking.max_advance_booking_days == 365

    def test_update_merges_partial_section(self, db_session, tenant):
        policy = update_policy(tenant.id, {"cancellation_rules": {"refund_policy": "partial"}})

        assert policy.cancellation.refund_policy == "partial"
        assert policy.cancellation.deadline_hours == 24
        stored = db_session.query(TenantSettings).filter_by(tenant_id=tenant.id).one()
        assert stored.cancellation_rules["refund_policy"] == "partial"
        assert stored.payment_rules["accept_online"] is True

    def test_invalid_update_writes_nothing(self, db_session, tenant):
        with pytest.raises(PolicyValidationError):
            update_policy(tenant.id, {
                "booking_rules": {"buffer_time_minutes": 30},
                "cancellation_rules": {"refund_policy": "bogus"},
            })
        assert get_policy(tenant.id).booking.buffer_time_minutes == 15

    @pytest.mark.parametrize("patch", [{}, {"billing": {}}, {"booking_rules": "strict"}])
    def test_malformed_patch(self, tenant, patch):
        with pytest.raises(PolicyValidationError):
            update_policy(tenant.id, patch)

    def test_ensure_settings_creates_defaults(self, db_session):
        bare = Tenant(name="Bare", slug="bare", timezone="UTC", is_active=True)
        db_session.add(bare)
        db_session.commit()

        settings = ensure_settings(bare.id)

        assert settings.booking_rules["buffer_time_minutes"] == 15
        assert ensure_settings(bare.id).id == settings.id

    def test_policy_to_dict_round_trips_hours(self, tenant):
        data = policy_to_dict(get_policy(tenant.id))
        assert data["working_hours"]["monday"] == {"start": "09:00", "end": "17:00", "enabled": True}
        assert data["booking_rules"]["buffer_time_minutes"] == 15

    def test_unknown_tenant(self, db_session):
        with pytest.raises(PolicyValidationError):
            get_policy(424242)
