"""Unit tests — AuditTrail normalisation, write paths and reporting."""

from __future__ import annotations

import asyncio
import csv
import io
import json
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from warden.events.bus import TOPIC_AUDIT_FALLBACK, EventBus, LogEventBus
from warden.exceptions import PersistenceError
from warden.security.audit import AuditTrail, event_for
from warden.security.audit_store import AuditStore
from warden.security.models import (
    AuditAction,
    AuditEvent,
    AuditFilter,
    EventCategory,
    EventResult,
    Principal,
    RequestContext,
    ResourceType,
    Role,
    Severity,
)

DAY = 86_400.0


@pytest.fixture
def alice() -> Principal:
    return Principal(user_id="u-alice", username="alice", roles=frozenset({Role.ADMIN}))


@pytest.fixture
async def closed_store(tmp_path: Path) -> AuditStore:
    return AuditStore(tmp_path / "never-opened.db")


@pytest.mark.unit
class TestAppend:
    async def test_append_stamps_server_time(self, trail: AuditTrail, clock) -> None:
        event_id = await trail.append(AuditEvent(action="USER_LOGIN", timestamp=1.0))
        stored = await trail.get(event_id)
        assert stored is not None
        assert stored.timestamp == clock.now

    async def test_severity_computed_when_absent(self, trail: AuditTrail) -> None:
        event_id = await trail.append(AuditEvent(action="USER_DELETE"))
        stored = await trail.get(event_id)
        assert stored.severity == Severity.HIGH

    async def test_explicit_severity_kept(self, trail: AuditTrail) -> None:
        event_id = await trail.append(AuditEvent(action="USER_DELETE", severity=Severity.LOW))
        assert (await trail.get(event_id)).severity == Severity.LOW

    async def test_invalid_enum_values_fall_back(self, trail: AuditTrail) -> None:
        event = AuditEvent(
            action="device_viewed",
            resource_type="SPACESHIP",  # type: ignore[arg-type]
            category="nonsense",  # type: ignore[arg-type]
            result="maybe",  # type: ignore[arg-type]
        )
        stored = await trail.get(await trail.append(event))
        assert stored.action == "DEVICE_VIEWED"
        assert stored.resource_type == ResourceType.OTHER
        assert stored.category == EventCategory.SYSTEM
        assert stored.result == EventResult.SUCCESS

    async def test_string_enum_values_are_coerced(self, trail: AuditTrail) -> None:
        event = AuditEvent(action="X", resource_type="user", severity="critical")  # type: ignore[arg-type]
        stored = await trail.get(await trail.append(event))
        assert stored.resource_type == ResourceType.USER
        assert stored.severity == Severity.CRITICAL

    async def test_malformed_action_becomes_unknown(self, trail: AuditTrail) -> None:
        stored = await trail.get(await trail.append(AuditEvent(action="drop table; --")))
        assert stored.action == AuditAction.UNKNOWN.value
        assert "original_action" in stored.details

    async def test_store_failure_spills_to_fallback(self, closed_store: AuditStore) -> None:
        fallback = AsyncMock(spec=EventBus)
        trail = AuditTrail(closed_store, fallback)
        assert await trail.append(AuditEvent(action="USER_LOGIN")) is None
        fallback.emit.assert_awaited_once()
        topic, payload = fallback.emit.await_args.args
        assert topic == TOPIC_AUDIT_FALLBACK
        assert payload["record"]["action"] == "USER_LOGIN"

    async def test_fallback_file_receives_ndjson(self, closed_store: AuditStore, tmp_path: Path) -> None:
        path = tmp_path / "fallback.ndjson"
        trail = AuditTrail(closed_store, LogEventBus(path))
        await trail.append(AuditEvent(action="USER_LOGOUT"))
        lines = path.read_text().splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0])["record"]["action"] == "USER_LOGOUT"

    async def test_append_durable_raises(self, closed_store: AuditStore) -> None:
        fallback = AsyncMock(spec=EventBus)
        trail = AuditTrail(closed_store, fallback)
        with pytest.raises(PersistenceError):
            await trail.append_durable(AuditEvent(action="USER_ACCESS_DENIED"))
        fallback.emit.assert_awaited_once()

    async def test_append_durable_returns_id(self, trail: AuditTrail) -> None:
        event_id = await trail.append_durable(AuditEvent(action="USER_ACCESS_DENIED"))
        assert await trail.get(event_id) is not None

    async def test_unencodable_details_are_stored_as_repr(self, audit_store: AuditStore, tmp_path: Path) -> None:
        trail = AuditTrail(audit_store, LogEventBus(tmp_path / "fallback.ndjson"))
        event_id = await trail.append(AuditEvent(action="DEVICE_UPDATED", details={("a", "b"): 1}))
        assert event_id is not None
        stored = await trail.get(event_id)
        assert stored.details == {"value": "{('a', 'b'): 1}"}
        assert not (tmp_path / "fallback.ndjson").exists()

    async def test_circular_details_do_not_raise(self, trail: AuditTrail) -> None:
        details: dict = {"name": "loop"}
        details["self"] = details
        event_id = await trail.append(AuditEvent(action="DEVICE_UPDATED", details=details))
        stored = await trail.get(event_id)
        assert "loop" in stored.details["value"]

    async def test_non_json_values_are_stringified(self, trail: AuditTrail) -> None:
        event_id = await trail.append(AuditEvent(action="DEVICE_UPDATED", details={"path": Path("/tmp/x")}))
        assert (await trail.get(event_id)).details == {"path": "/tmp/x"}

    async def test_unexpected_store_error_becomes_persistence_error(self) -> None:
        store = AsyncMock(spec=AuditStore)
        store.insert.side_effect = TypeError("boom")
        fallback = AsyncMock(spec=EventBus)
        trail = AuditTrail(store, fallback)

        assert await trail.append(AuditEvent(action="USER_LOGIN")) is None
        with pytest.raises(PersistenceError):
            await trail.append_durable(AuditEvent(action="USER_ACCESS_DENIED"))
        assert fallback.emit.await_count == 2

    async def test_fallback_failure_is_swallowed(self, closed_store: AuditStore) -> None:
        fallback = AsyncMock(spec=EventBus)
        fallback.emit.side_effect = RuntimeError("disk gone")
        trail = AuditTrail(closed_store, fallback)
        assert await trail.append(AuditEvent(action="USER_LOGIN")) is None

    async def test_timed_out_write_is_not_committed_later(
        self, audit_store: AuditStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        conn = audit_store._conn
        real_commit = conn.commit

        async def stalled_commit() -> None:
            await asyncio.sleep(10)

        monkeypatch.setattr(conn, "commit", stalled_commit)
        trail = AuditTrail(audit_store, write_timeout=0.05)
        assert await trail.append(AuditEvent(action="USER_LOGIN")) is None

        monkeypatch.setattr(conn, "commit", real_commit)
        assert await trail.append(AuditEvent(action="USER_LOGOUT")) is not None
        page = await trail.query(AuditFilter())
        assert [e.action for e in page.events] == ["USER_LOGOUT"]


@pytest.mark.unit
class TestQueries:
    async def _seed(self, trail: AuditTrail, clock, ctx: RequestContext, alice: Principal) -> None:
        await trail.record_login(alice, ctx)
        await trail.record_login_failure("mallory", ctx, "invalid_password")
        clock.advance(60)
        await trail.record_logout(alice, ctx)
        await trail.record_account_locked("u-bob", "bob", ctx, attempts=5, locked_until=clock.now + 7200)

    async def test_query_pagination(self, trail: AuditTrail, clock, ctx, alice) -> None:
        await self._seed(trail, clock, ctx, alice)
        page = await trail.query(AuditFilter(), page=1, page_size=3)
        assert page.total == 4
        assert page.pages == 2
        assert len(page.events) == 3

    async def test_query_by_action_and_actor(self, trail: AuditTrail, clock, ctx, alice) -> None:
        await self._seed(trail, clock, ctx, alice)
        page = await trail.query(AuditFilter(actor_id="u-alice"))
        assert {e.action for e in page.events} == {"USER_LOGIN", "USER_LOGOUT"}
        page = await trail.query(AuditFilter(action="USER_LOGIN_FAILED"))
        assert page.events[0].actor_name == "mallory"

    async def test_security_events(self, trail: AuditTrail, clock, ctx, alice) -> None:
        await self._seed(trail, clock, ctx, alice)
        page = await trail.security_events()
        assert {e.action for e in page.events} == {"USER_LOGIN_FAILED", "USER_LOCKED"}

    async def test_aggregate_window(self, trail: AuditTrail, clock, ctx, alice) -> None:
        start = clock.now
        await self._seed(trail, clock, ctx, alice)
        buckets = await trail.aggregate("action", start=start + 30)
        assert {b.key: b.count for b in buckets} == {"USER_LOGOUT": 1, "USER_LOCKED": 1}

    async def test_aggregate_rejects_unknown_group(self, trail: AuditTrail) -> None:
        with pytest.raises(ValueError):
            await trail.aggregate("password_hash")

    async def test_statistics(self, trail: AuditTrail, clock, ctx, alice) -> None:
        await self._seed(trail, clock, ctx, alice)
        stats = await trail.statistics()
        assert stats["total"] == 4
        assert stats["by_severity"] == {"LOW": 0, "MEDIUM": 2, "HIGH": 1, "CRITICAL": 1}
        assert sum(b["count"] for b in stats["daily"]) == 4
        assert stats["by_actor"][0] == {"key": "u-alice", "count": 2}

    async def test_dashboard(self, trail: AuditTrail, clock, ctx, alice) -> None:
        await self._seed(trail, clock, ctx, alice)
        clock.advance(2 * DAY)
        await trail.record_login(alice, ctx)
        snapshot = await trail.dashboard()
        assert snapshot["last_24h"] == 1
        assert snapshot["last_7d"] == 5
        assert snapshot["critical_24h"] == 0
        assert len(snapshot["recent"]) == 5
        assert snapshot["recent"][0]["action"] == "USER_LOGIN"

    async def test_export_json(self, trail: AuditTrail, clock, ctx, alice) -> None:
        await self._seed(trail, clock, ctx, alice)
        data = json.loads(await trail.export(fmt="json"))
        assert len(data) == 4
        assert data[0]["action"] == "USER_LOCKED"

    async def test_export_csv(self, trail: AuditTrail, clock, ctx, alice) -> None:
        await self._seed(trail, clock, ctx, alice)
        rows = list(csv.DictReader(io.StringIO(await trail.export(fmt="csv"))))
        assert len(rows) == 4
        assert json.loads(rows[0]["details"])["attempts"] == 5

    async def test_export_rejects_unknown_format(self, trail: AuditTrail) -> None:
        with pytest.raises(ValueError):
            await trail.export(fmt="xml")


@pytest.mark.unit
class TestRetention:
    async def test_purge_older_than(self, trail: AuditTrail, clock) -> None:
        await trail.append(AuditEvent(action="OLD"))
        clock.advance(40 * DAY)
        await trail.append(AuditEvent(action="NEW"))
        assert await trail.purge_older_than(30) == 1
        assert await trail.count() == 1


@pytest.mark.unit
class TestHelpers:
    async def test_account_locked_is_critical(self, trail: AuditTrail, ctx) -> None:
        event_id = await trail.record_account_locked("u1", "bob", ctx, attempts=5, locked_until=1.0)
        stored = await trail.get(event_id)
        assert stored.severity == Severity.CRITICAL
        assert stored.result == EventResult.FAILURE

    async def test_role_change(self, trail: AuditTrail, ctx, alice) -> None:
        event_id = await trail.record_role_change(alice, "u2", [Role.OBSERVER], [Role.ADMIN], ctx)
        stored = await trail.get(event_id)
        assert stored.action == "ROLE_CHANGED"
        assert stored.details == {"old_roles": ["OBSERVER"], "new_roles": ["ADMIN"]}
        assert stored.severity == Severity.HIGH

    async def test_config_change(self, trail: AuditTrail, ctx, alice) -> None:
        stored = await trail.get(await trail.record_config_change(alice, "monitor.window_minutes", ctx))
        assert stored.action == "SYSTEM_CONFIG_CHANGE"
        assert stored.severity == Severity.HIGH

    async def test_brute_force(self, trail: AuditTrail, ctx) -> None:
        stored = await trail.get(await trail.record_brute_force(ctx, "bob", 12))
        assert stored.severity == Severity.CRITICAL
        assert stored.ip == "10.0.0.5"

    async def test_permission_denied(self, trail: AuditTrail, ctx, alice) -> None:
        stored = await trail.get(
            await trail.record_permission_denied(alice, "audit.export", ctx, reason="insufficient_permission")
        )
        assert stored.action == "USER_ACCESS_DENIED"
        assert stored.category == EventCategory.AUTHORIZATION

    def test_event_for_anonymous(self, ctx) -> None:
        event = event_for(AuditAction.QR_SCANNED, ctx)
        assert event.actor_id is None
        assert event.actor_name == "anonymous"
        assert event.ip == ctx.ip
