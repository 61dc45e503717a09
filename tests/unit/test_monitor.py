"""Tests for the suspicious-activity monitor."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from phi_audit.audit.models import AuditEventType, format_timestamp
from phi_audit.audit.monitor import MonitorSweeper, Rule, SuspiciousActivityMonitor
from phi_audit.audit.outbox import AuditOutbox
from tests.helpers import make_event, make_record

BASE = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def emit():
    return AsyncMock()


@pytest.fixture
def monitor(store, emit):
    return SuspiciousActivityMonitor(
        store,
        emit=emit,
        window_seconds=300,
        failed_auth_threshold=3,
        phi_access_threshold=3,
    )


async def put_all(store, records):
    for record in records:
        await store.put(record)
    return records


class TestRepeatedAuthFailures:
    @pytest.mark.asyncio
    async def test_threshold_reached(self, monitor, store, emit):
        records = await put_all(store, [
            make_record(BASE + timedelta(minutes=i), event="AUTH_FAILURE", result="failure")
            for i in range(3)
        ])

        detections = await monitor.observe(records[-1])

        assert [d.rule for d in detections] == [Rule.REPEATED_AUTH_FAILURES]
        event = emit.await_args.args[0]
        assert event.event_type == AuditEventType.SUSPICIOUS_ACTIVITY
        assert event.user_id == "user-1"
        assert event.result == "warning"
        assert event.details["rule"] == "repeated_auth_failures"
        assert event.details["count"] == 3
        assert event.details["triggerEventId"] == records[-1].id
        assert event.patient_id is None and event.user_email is None

    @pytest.mark.asyncio
    async def test_below_threshold(self, monitor, store, emit):
        records = await put_all(store, [
            make_record(BASE + timedelta(minutes=i), event="AUTH_FAILURE", result="failure")
            for i in range(2)
        ])

        assert await monitor.observe(records[-1]) == []
        emit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failures_outside_window_do_not_count(self, monitor, store, emit):
        records = await put_all(store, [
            make_record(BASE - timedelta(minutes=30), event="AUTH_FAILURE", result="failure"),
            make_record(BASE, event="AUTH_FAILURE", result="failure"),
            make_record(BASE + timedelta(minutes=1), event="AUTH_FAILURE", result="failure"),
        ])

        assert await monitor.observe(records[-1]) == []

    @pytest.mark.asyncio
    async def test_successful_logins_do_not_count(self, monitor, store, emit):
        records = await put_all(store, [
            make_record(BASE + timedelta(minutes=i), event="LOGIN", result="success")
            for i in range(5)
        ])

        assert await monitor.observe(records[-1]) == []

    @pytest.mark.asyncio
    async def test_lower_case_kinds_count(self, monitor, store, ingestion, emit):
        for i in range(3):
            await ingestion.ingest(make_event(
                id=f"f{i}",
                event="auth_failure",
                result="failure",
                timestamp=format_timestamp(BASE + timedelta(minutes=i)),
            ))

        detections = await monitor.observe(await store.get("f2"))

        assert [d.rule for d in detections] == [Rule.REPEATED_AUTH_FAILURES]
        assert emit.await_args.args[0].details["count"] == 3

    @pytest.mark.asyncio
    async def test_fires_once_per_window(self, monitor, store, emit):
        records = await put_all(store, [
            make_record(BASE + timedelta(minutes=i), event="AUTH_FAILURE", result="failure")
            for i in range(4)
        ])

        await monitor.observe(records[2])
        assert await monitor.observe(records[3]) == []
        assert emit.await_count == 1

    @pytest.mark.asyncio
    async def test_stored_detection_suppresses_new_one(self, store, emit):
        records = await put_all(store, [
            make_record(BASE + timedelta(minutes=i), event="AUTH_FAILURE", result="failure")
            for i in range(3)
        ])
        await store.put(make_record(
            BASE + timedelta(minutes=2),
            event="SUSPICIOUS_ACTIVITY",
            result="warning",
            details={"rule": "repeated_auth_failures"},
        ))
        fresh = SuspiciousActivityMonitor(store, emit=emit, window_seconds=300, failed_auth_threshold=3)

        assert await fresh.observe(records[-1]) == []
        emit.assert_not_awaited()


class TestBulkPhiAccess:
    @pytest.mark.asyncio
    async def test_threshold_reached(self, monitor, store, emit):
        records = await put_all(store, [
            make_record(BASE + timedelta(seconds=i), event="PHI_VIEW", phi_accessed=True, patient_ref=f"r{i}")
            for i in range(3)
        ])

        detections = await monitor.observe(records[-1])

        assert [d.rule for d in detections] == [Rule.BULK_PHI_ACCESS]


class TestNewNetworkOrigin:
    @pytest.mark.asyncio
    async def test_new_ip_for_known_user(self, monitor, store, emit):
        await store.put(make_record(BASE - timedelta(days=3), ip_address="10.0.0.1"))
        record = (await put_all(store, [make_record(BASE, ip_address="203.0.113.5")]))[0]

        detections = await monitor.observe(record)

        assert [d.rule for d in detections] == [Rule.NEW_NETWORK_ORIGIN]
        assert emit.await_args.args[0].details["ipAddress"] == "203.0.113.5"

    @pytest.mark.asyncio
    async def test_known_ip(self, monitor, store, emit):
        await store.put(make_record(BASE - timedelta(days=3), ip_address="10.0.0.1"))
        record = (await put_all(store, [make_record(BASE, ip_address="10.0.0.1")]))[0]

        assert await monitor.observe(record) == []

    @pytest.mark.asyncio
    async def test_first_ever_origin_is_not_suspicious(self, monitor, store, emit):
        await store.put(make_record(BASE - timedelta(days=3), event="SESSION_TIMEOUT"))
        record = (await put_all(store, [make_record(BASE, ip_address="10.0.0.1")]))[0]

        assert await monitor.observe(record) == []


class TestIgnoredEvents:
    @pytest.mark.asyncio
    async def test_detections_are_not_inspected(self, monitor, store, emit):
        record = make_record(BASE, event="SUSPICIOUS_ACTIVITY", result="warning", ip_address="1.2.3.4")

        with patch.object(store, "recent_for_user") as recent:
            assert await monitor.observe(record) == []
        recent.assert_not_called()

    @pytest.mark.asyncio
    async def test_anonymous_events_are_not_attributed(self, monitor, store, emit):
        record = make_record(BASE, user_id=None, event="AUTH_FAILURE", result="failure")
        assert await monitor.observe(record) == []


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_rechecks_active_users(self, monitor, store, emit):
        await put_all(store, [
            make_record(BASE + timedelta(minutes=i), user_id="u9", event="AUTH_FAILURE", result="failure")
            for i in range(3)
        ])

        detections = await monitor.sweep(now=BASE + timedelta(minutes=3))

        assert [(d.rule, d.user_id) for d in detections] == [(Rule.REPEATED_AUTH_FAILURES, "u9")]
        assert emit.await_args.args[0].details.get("triggerEventId") is None

    @pytest.mark.asyncio
    async def test_sweeper_task(self, monitor):
        sweeper = MonitorSweeper(monitor, interval_seconds=60)

        with patch.object(monitor, "sweep") as sweep:
            await sweeper.run_once()

        sweep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_detections_fit_the_outbox(self, store):
        outbox = AuditOutbox(max_size=10)
        monitor = SuspiciousActivityMonitor(store, emit=outbox.put, window_seconds=300, failed_auth_threshold=3)
        records = await put_all(store, [
            make_record(BASE + timedelta(minutes=i), event="AUTH_FAILURE", result="failure")
            for i in range(3)
        ])

        await monitor.observe(records[-1])

        assert await outbox.size() == 1
