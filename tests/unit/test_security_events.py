"""
Unit tests for the security event log.
"""
from datetime import timedelta
from unittest.mock import Mock

import pytest
from pydantic import ValidationError as PydanticValidationError

from himaya.database.models import utcnow
from himaya.security.events import (
    AnomalyPayload, LockoutPayload, LoginPayload, MFAPayload, SecurityEventLog,
    mask_email, mask_phone, parse_payload
)
from himaya.security.models import SecurityEvent, SecurityEventType, Severity


class TestSecurityEventLog:
    """Test cases for SecurityEventLog."""

    def test_event_persisted_with_default_severity(self, event_log, db_session, site_id):
        """Test that events get the severity registered for their type."""
        event = event_log.log_event(
            SecurityEventType.ACCOUNT_LOCKED,
            site_id,
            LockoutPayload(scope="login", failed_attempts=5),
            user_id="user-1",
            success=False,
        )

        stored = db_session.get(SecurityEvent, event.id)
        assert stored.severity == Severity.HIGH
        assert stored.event_type == "ACCOUNT_LOCKED"
        assert stored.success is False

    def test_payload_round_trips_through_metadata(self, event_log, site_id):
        """Test that stored metadata parses back into the typed payload."""
        event = event_log.log_event(
            SecurityEventType.MFA_VERIFICATION_FAILED,
            site_id,
            MFAPayload(method="SMS", reason="invalid_token", destination=mask_phone("+1 555 123 4567")),
        )

        payload = parse_payload(event.event_metadata)
        assert isinstance(payload, MFAPayload)
        assert payload.reason == "invalid_token"
        assert payload.destination == "***4567"

    def test_payloads_reject_unknown_fields(self):
        """Test that payload shapes are closed."""
        with pytest.raises(PydanticValidationError):
            LoginPayload(ip_address="10.0.0.1", password="hunter2")

    def test_audit_sink_receives_event(self, event_log, audit_sink, site_id):
        """Test that every event is forwarded to the audit sink."""
        event_log.log_event(SecurityEventType.LOGIN_SUCCESS, site_id, LoginPayload(ip_address="10.0.0.1"))

        audit_sink.emit.assert_called_once()
        kwargs = audit_sink.emit.call_args.kwargs
        assert kwargs["event_type"] == "LOGIN_SUCCESS"
        assert kwargs["metadata"]["ip_address"] == "10.0.0.1"

    def test_audit_sink_failure_is_swallowed(self, db_session, site_id):
        """Test that a broken audit sink never fails the caller."""
        sink = Mock()
        sink.emit.side_effect = ConnectionError("sink down")
        log = SecurityEventLog(db_session, audit_sink=sink)

        event = log.log_event(SecurityEventType.LOGIN_SUCCESS, site_id, LoginPayload())

        assert event is not None

    def test_database_failure_is_swallowed(self, site_id):
        """Test that a failing insert returns None instead of raising."""
        db = Mock()
        db.commit.side_effect = RuntimeError("database unavailable")
        log = SecurityEventLog(db)

        assert log.log_event(SecurityEventType.LOGIN_FAILURE, site_id, LoginPayload()) is None
        db.rollback.assert_called_once()

    def test_query_filters_and_orders(self, event_log, site_id):
        """Test range, type and user filters on the query."""
        event_log.log_event(SecurityEventType.LOGIN_SUCCESS, site_id, LoginPayload(), user_id="u1")
        event_log.log_event(SecurityEventType.LOGIN_FAILURE, site_id, LoginPayload(), user_id="u1", success=False)
        event_log.log_event(SecurityEventType.LOGIN_SUCCESS, site_id, LoginPayload(), user_id="u2")
        event_log.log_event(SecurityEventType.LOGIN_SUCCESS, "other-site", LoginPayload(), user_id="u1")

        now = utcnow()
        events = event_log.query(
            site_id,
            start=now - timedelta(minutes=1),
            end=now + timedelta(minutes=1),
            event_types=[SecurityEventType.LOGIN_SUCCESS],
        )
        assert [e.user_id for e in events] == ["u1", "u2"]

        assert len(event_log.query(site_id, user_id="u1")) == 2

    def test_anomaly_payload_defaults(self):
        """Test that list fields default to empty lists."""
        payload = AnomalyPayload()

        assert payload.anomaly_types == []
        assert payload.model_dump()["kind"] == "anomaly"


class TestMasking:
    """Test cases for identifier masking."""

    def test_mask_phone_keeps_last_four_digits(self):
        """Test phone masking."""
        assert mask_phone("+44 (0) 20 7946 0958") == "***0958"
        assert mask_phone("") == "***"

    def test_mask_email(self):
        """Test email masking."""
        assert mask_email("alice@example.com") == "a***@example.com"
        assert mask_email("no-at-sign") == "***"
