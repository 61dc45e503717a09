"""Tests for audit event and record models."""

from datetime import datetime, timezone

import pytest

from phi_audit.audit.models import (
    ANONYMOUS_PARTITION,
    AuditEventType,
    AuditLogRecord,
    format_timestamp,
    parse_timestamp,
)
from tests.helpers import make_event, make_record


class TestAuditEventType:
    """Test the open event-kind mapping."""

    def test_known_kind(self):
        assert AuditEventType.parse("PHI_VIEW") == AuditEventType.PHI_VIEW

    def test_case_and_whitespace_tolerated(self):
        assert AuditEventType.parse(" login ") == AuditEventType.LOGIN

    @pytest.mark.parametrize("value", ["BRAND_NEW_KIND", "", None])
    def test_unknown_maps_to_unknown(self, value):
        assert AuditEventType.parse(value) == AuditEventType.UNKNOWN

    def test_event_keeps_callers_string(self):
        event = make_event(event="FUTURE_EVENT")
        assert event.event == "FUTURE_EVENT"
        assert event.event_type == AuditEventType.UNKNOWN

    @pytest.mark.parametrize(
        "value, stored",
        [("auth_failure", "AUTH_FAILURE"), (" Login ", "LOGIN"), (" Future_Event ", "Future_Event")],
    )
    def test_stored_name(self, value, stored):
        assert AuditEventType.stored_name(value) == stored


class TestTimestamps:
    def test_parse_converts_offset_to_utc(self):
        parsed = parse_timestamp("2026-03-01T23:30:00-05:00")
        assert parsed == datetime(2026, 3, 2, 4, 30, tzinfo=timezone.utc)

    def test_parse_naive_is_utc(self):
        assert parse_timestamp("2026-03-01T12:00:00").tzinfo == timezone.utc

    @pytest.mark.parametrize("value", ["not-a-date", "", "   "])
    def test_parse_rejects_garbage(self, value):
        with pytest.raises(ValueError):
            parse_timestamp(value)

    def test_format_is_millisecond_utc(self):
        value = datetime(2026, 3, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)
        assert format_timestamp(value) == "2026-03-01T12:00:00.123Z"


class TestAuditLogRecord:
    def test_keys(self):
        when = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        assert AuditLogRecord.partition_key("u1") == "USER#u1"
        assert AuditLogRecord.partition_key(None) == ANONYMOUS_PARTITION
        assert AuditLogRecord.sort_key(when, "e1") == "LOG#2026-03-01T12:00:00.000Z#e1"

    def test_sealed_record_verifies(self):
        record = make_record(datetime(2026, 3, 1, tzinfo=timezone.utc))
        assert record.integrity_hash
        assert record.verify_integrity()

    def test_tampering_breaks_integrity(self):
        record = make_record(datetime(2026, 3, 1, tzinfo=timezone.utc))
        record.action = "something else"
        assert not record.verify_integrity()

    def test_unsealed_record_does_not_verify(self):
        record = make_record(datetime(2026, 3, 1, tzinfo=timezone.utc))
        record.integrity_hash = ""
        assert not record.verify_integrity()

    def test_api_dict_uses_wire_names_and_drops_empty(self):
        record = make_record(datetime(2026, 3, 1, tzinfo=timezone.utc), user_id="u1")
        data = record.to_api_dict()

        assert data["userId"] == "u1"
        assert data["datePartition"] == "2026-03-01"
        assert "patientId" not in data
        assert "pk" not in data
