"""Tests for the action handlers against the SQL collaborator stores."""

import asyncio
from datetime import timedelta

import pytest
from conftest import T0
from insiderguard.actions.base import ActionContext
from insiderguard.actions.collaborators import Collaborators
from insiderguard.actions.handlers import (
    DisableAccessHandler,
    EscalateIncidentHandler,
    ImmediateAlertHandler,
    IncreaseMonitoringHandler,
    LogDetailedActivityHandler,
    build_registry,
)
from insiderguard.core.errors import DeliveryError
from insiderguard.db.repositories import (
    SqlAccessControlStore,
    SqlAuditSink,
    SqlIncidentStore,
    SqlMonitoringStore,
    SqlNotificationStore,
)
from insiderguard.domain.models import ActionType, Policy, TriggerEvent

EVENT = TriggerEvent(
    id="evt-1",
    subject={"user_id": "alice", "department": "Engineering"},
    kind="violation_created",
    metrics={"risk_score": 91, "severity": "Critical", "timestamp": T0},
)


def context(action, now=T0, name="Insider threat"):
    policy = Policy(id=3, name=name, level="global", actions=[action])
    return ActionContext(policy=policy, action=policy.actions[0], event=EVENT, now=now)


@pytest.fixture
def notifications(session_factory):
    return SqlNotificationStore(session_factory)


class TestIncreaseMonitoring:
    @pytest.mark.asyncio
    async def test_windows_extend_monotonically(self, session_factory):
        store = SqlMonitoringStore(session_factory)
        handler = IncreaseMonitoringHandler(store)
        action = {"type": "increase_monitoring", "config": {"duration_hours": 24}}

        first = await handler.execute(context(action, now=T0))
        second = await handler.execute(context(action, now=T0 + timedelta(hours=10)))

        assert first["expires_at"] == (T0 + timedelta(hours=24)).isoformat()
        assert second["expires_at"] == (T0 + timedelta(hours=34)).isoformat()
        assert second["extended"] is True
        window = await store.get_window("alice")
        assert window.expires_at == T0 + timedelta(hours=34)

    @pytest.mark.asyncio
    async def test_shorter_request_never_shortens(self, session_factory):
        store = SqlMonitoringStore(session_factory)
        handler = IncreaseMonitoringHandler(store)

        await handler.execute(
            context(
                {
                    "type": "increase_monitoring",
                    "config": {"duration_hours": 48, "monitoring_level": "maximum"},
                }
            )
        )
        result = await handler.execute(
            context(
                {"type": "increase_monitoring", "config": {"duration_hours": 1, "monitoring_level": "normal"}},
                now=T0 + timedelta(hours=1),
            )
        )

        assert result["extended"] is False
        assert result["monitoring_level"] == "maximum"
        window = await store.get_window("alice")
        assert window.expires_at == T0 + timedelta(hours=48)
        assert window.monitoring_level == "maximum"

    @pytest.mark.asyncio
    async def test_expired_window_is_replaced(self, session_factory):
        store = SqlMonitoringStore(session_factory)
        handler = IncreaseMonitoringHandler(store)
        action = {"type": "increase_monitoring", "config": {"duration_hours": 2, "monitoring_level": "maximum"}}
        await handler.execute(context(action))

        later = T0 + timedelta(days=2)
        result = await handler.execute(
            context({"type": "increase_monitoring", "config": {"duration_hours": 1, "monitoring_level": "normal"}}, now=later)
        )

        assert result["monitoring_level"] == "normal"
        assert (await store.get_window("alice")).expires_at == later + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_concurrent_extensions_keep_the_longest(self, session_factory):
        store = SqlMonitoringStore(session_factory)
        handler = IncreaseMonitoringHandler(store)

        await asyncio.gather(
            handler.execute(
                context({"type": "increase_monitoring", "config": {"duration_hours": 48}})
            ),
            handler.execute(
                context({"type": "increase_monitoring", "config": {"duration_hours": 24}})
            ),
        )

        window = await store.get_window("alice")
        assert window.expires_at == T0 + timedelta(hours=48)


class TestEscalateIncident:
    @pytest.mark.asyncio
    async def test_creates_incident(self, session_factory, mailer):
        incidents = SqlIncidentStore(session_factory)
        handler = EscalateIncidentHandler(incidents, mailer)

        details = await handler.execute(
            context({"type": "escalate_incident", "config": {"escalation_level": "critical"}})
        )

        stored = await incidents.list_for_subject("alice")
        assert [i.id for i in stored] == [details["incident_id"]]
        assert stored[0].severity == "Critical"
        assert stored[0].trigger_event_id == "evt-1"
        assert stored[0].action_order == 1
        assert "management_notified" not in details
        assert mailer.sent == []

    @pytest.mark.asyncio
    async def test_rerun_reuses_incident(self, session_factory, mailer):
        incidents = SqlIncidentStore(session_factory)
        handler = EscalateIncidentHandler(incidents, mailer)
        ctx = context({"type": "escalate_incident"})

        first = await handler.execute(ctx)
        second = await handler.execute(ctx)

        assert second["incident_id"] == first["incident_id"]
        assert len(await incidents.list_for_subject("alice")) == 1

    @pytest.mark.asyncio
    async def test_notifies_management_by_mail(self, session_factory, mailer):
        handler = EscalateIncidentHandler(
            SqlIncidentStore(session_factory), mailer, ["ciso@example.com"]
        )

        details = await handler.execute(
            context({"type": "escalate_incident", "config": {"notify_management": True}})
        )

        [message] = mailer.sent
        assert message["recipients"] == ["ciso@example.com"]
        assert message["subject"] == "ESCALATED SECURITY INCIDENT - Insider threat"
        assert details["incident_id"] in message["body"]
        assert details["management_notified"] is True
        assert details["management_message_id"] == "msg-1"

    @pytest.mark.asyncio
    async def test_action_recipients_override_defaults(self, session_factory, mailer):
        handler = EscalateIncidentHandler(
            SqlIncidentStore(session_factory), mailer, ["ciso@example.com"]
        )

        details = await handler.execute(
            context(
                {
                    "type": "escalate_incident",
                    "config": {"notify_management": True, "management_recipients": ["cto@example.com"]},
                }
            )
        )

        assert mailer.sent[0]["recipients"] == ["cto@example.com"]
        assert details["management_recipients"] == ["cto@example.com"]

    @pytest.mark.asyncio
    async def test_no_recipients_keeps_incident(self, session_factory, mailer):
        incidents = SqlIncidentStore(session_factory)
        handler = EscalateIncidentHandler(incidents, mailer)

        details = await handler.execute(
            context({"type": "escalate_incident", "config": {"notify_management": True}})
        )

        assert details["management_notified"] is False
        assert mailer.sent == []
        assert len(await incidents.list_for_subject("alice")) == 1

    @pytest.mark.asyncio
    async def test_mail_failure_does_not_fail_escalation(self, session_factory, mailer):
        mailer.failures = [DeliveryError("relay down")]
        handler = EscalateIncidentHandler(
            SqlIncidentStore(session_factory), mailer, ["ciso@example.com"]
        )

        details = await handler.execute(
            context({"type": "escalate_incident", "config": {"notify_management": True}})
        )

        assert details["management_notified"] is False
        assert details["management_error"] == "DeliveryError: relay down"
        assert details["incident_id"]


class TestDisableAccess:
    @pytest.mark.asyncio
    async def test_restriction_and_critical_audit(self, session_factory):
        access = SqlAccessControlStore(session_factory)
        audit = SqlAuditSink(session_factory)
        handler = DisableAccessHandler(access, audit)

        details = await handler.execute(
            context({"type": "disable_access", "config": {"access_type": "files"}}, name="Lockdown")
        )

        [restriction] = await access.active_restrictions("alice")
        assert restriction.id == details["restriction_id"]
        assert restriction.access_type == "files"
        assert restriction.reason == "Disabled by policy 'Lockdown'"

        [entry] = await audit.entries_for_subject("alice")
        assert entry.level == "critical"
        assert entry.action == "disable_access"
        assert entry.id == details["audit_id"]

    @pytest.mark.asyncio
    async def test_enable_access_lifts_restrictions(self, session_factory):
        access = SqlAccessControlStore(session_factory)
        handler = DisableAccessHandler(access, SqlAuditSink(session_factory))
        await handler.execute(context({"type": "disable_access"}))

        lifted = await access.enable_access("alice", "security-admin")

        assert lifted == 1
        assert await access.active_restrictions("alice") == []
        assert await access.enable_access("alice", "security-admin") == 0


class TestLogDetailedActivity:
    @pytest.mark.asyncio
    async def test_info_audit_entry(self, session_factory):
        audit = SqlAuditSink(session_factory)
        handler = LogDetailedActivityHandler(audit)

        details = await handler.execute(
            context({"type": "log_detailed_activity", "config": {"include_files": True, "duration_hours": 12}})
        )

        [entry] = await audit.entries_for_subject("alice")
        assert entry.level == "info"
        assert entry.details["include_files"] is True
        assert entry.details["event"]["id"] == "evt-1"
        assert details["log_until"] == (T0 + timedelta(hours=12)).isoformat()


class TestImmediateAlert:
    @pytest.mark.asyncio
    async def test_email_and_system_notification(self, mailer, notifications):
        handler = ImmediateAlertHandler(mailer, notifications)

        details = await handler.execute(
            context(
                {
                    "type": "immediate_alert",
                    "config": {"recipients": ["soc@example.com"], "priority": "critical"},
                },
                name="Exfil",
            )
        )

        assert mailer.sent[0]["subject"] == "[CRITICAL] Immediate security alert: Exfil"
        assert details["message_id"] == "msg-1"
        assert len(details["notification_ids"]) == 2
        for role in ("admin", "security_admin"):
            [notification] = await notifications.list_for_role(role)
            assert notification.id in details["notification_ids"]
            assert notification.priority == "critical"
            assert notification.title == "Immediate security alert: Exfil"
            assert notification.subject_id == "alice"
            assert notification.is_read is False

    @pytest.mark.asyncio
    async def test_system_only(self, mailer, notifications):
        handler = ImmediateAlertHandler(mailer, notifications, roles=["soc"])

        await handler.execute(context({"type": "immediate_alert", "config": {"channels": ["system"]}}))

        assert mailer.sent == []
        assert len(await notifications.list_for_role("soc")) == 1
        assert await notifications.list_for_role("admin") == []

    @pytest.mark.asyncio
    async def test_rerun_does_not_duplicate_notifications(self, mailer, notifications):
        handler = ImmediateAlertHandler(mailer, notifications)
        ctx = context({"type": "immediate_alert", "config": {"channels": ["system"]}})

        first = await handler.execute(ctx)
        second = await handler.execute(ctx)

        assert second["notification_ids"] == first["notification_ids"]
        assert len(await notifications.list_for_role("admin")) == 1


class TestNotificationStore:
    @pytest.mark.asyncio
    async def test_mark_read(self, mailer, notifications):
        handler = ImmediateAlertHandler(mailer, notifications, roles=["admin"])
        details = await handler.execute(
            context({"type": "immediate_alert", "config": {"channels": ["system"]}})
        )
        [notification_id] = details["notification_ids"]

        read = await notifications.mark_read(notification_id)

        assert read.is_read is True
        assert read.read_at is not None
        assert await notifications.list_for_role("admin", unread_only=True) == []
        assert len(await notifications.list_for_role("admin")) == 1

    @pytest.mark.asyncio
    async def test_mark_read_unknown(self, notifications):
        assert await notifications.mark_read(999) is None


def test_registry_covers_every_action_type(mailer, notifications):
    collaborators = Collaborators(
        mail=mailer,
        incidents=None,
        monitoring=None,
        access=None,
        audit=None,
        notifications=notifications,
    )

    registry = build_registry(collaborators)

    assert set(registry.list()) == set(ActionType)
    assert registry.get("email_alert").action_type == ActionType.EMAIL_ALERT
