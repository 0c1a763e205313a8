import json
import os
import sys
import threading
from unittest.mock import MagicMock

import httpx
import pytest
import redis
from slack_sdk.errors import SlackApiError

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from engine.errors import ConfigError, PipelineError, RuleValidationError
from engine.models import AlertChannel, AlertInstruction, DedupeKey, EscalationInstruction
from engine.store import LeadStore
from tools.alerts import AlertDispatcher
from tools.idempotency import IdentityLock
from tools.slack import SlackNotifier
from tools.team_config import TeamConfigRepository

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class TestTeamConfig:
    """Test team configuration loading and validation."""

    def write(self, tmp_path, data):
        path = tmp_path / "teams.json"
        path.write_text(data if isinstance(data, str) else json.dumps(data))
        return str(path)

    def test_missing_file_uses_defaults(self):
        repo = TeamConfigRepository(path="/nonexistent/teams.json")

        assert repo.load() == {}
        team = repo.get("anything")
        assert team.scoring_config is not None
        assert [rule.id for rule in team.routing_rules][0] == "high-score-fast-track"
        assert team.sla_setting.minutes_for_priority(1) == 5

    def test_unknown_teams_are_not_remembered(self):
        repo = TeamConfigRepository(path="/nonexistent/teams.json")
        repo.put_team("t1", {})

        for i in range(50):
            assert repo.get(f"caller_{i}").team_id == f"caller_{i}"

        assert repo.teams() == ["t1"]

    def test_invalid_json_uses_defaults(self, tmp_path):
        repo = TeamConfigRepository(path=self.write(tmp_path, "{not json"))

        assert repo.load() == {}

    def test_bundled_team_file(self):
        repo = TeamConfigRepository(path=os.path.join(ROOT, "infra", "teams.json"))

        teams = repo.load()

        assert "default" in teams
        assert {owner.id for owner in teams["default"].owners} >= {"ae_alex", "sdr_eli"}
        assert teams["default"].sla_setting.escalation.levels[0].action == "notify_manager"

    def test_malformed_persisted_rule_is_skipped(self, tmp_path):
        path = self.write(tmp_path, {"teams": {"t1": {
            "routing_rules": [
                {"id": "bad", "definition": {"if": [{"field": "x", "op": "nope"}], "then": {"assign": "A"}}},
                {"id": "good", "definition": {"if": [], "then": {"assign": "AE_POOL_A"}}},
            ],
        }}})

        team = TeamConfigRepository(path=path).load()["t1"]

        assert [rule.id for rule in team.routing_rules] == ["good"]

    def test_invalid_persisted_scoring_config_disables_scoring(self, tmp_path):
        path = self.write(tmp_path, {"teams": {"t1": {"scoring_config": {"weights": {"urgency": 500}}}}})

        team = TeamConfigRepository(path=path).load()["t1"]

        assert team.scoring_config is None

    def test_put_team_rejects_bad_regex(self):
        repo = TeamConfigRepository(path="/nonexistent/teams.json")

        with pytest.raises(RuleValidationError):
            repo.put_team("t1", {"scoring_rules": [{
                "id": "r",
                "type": "IF_THEN",
                "definition": {"if": [{"field": "email", "op": "regex", "value": "(["}],
                               "then": {"adjust": 5, "reason": "x"}},
            }]})

    def test_put_team_rejects_overlapping_bands(self):
        repo = TeamConfigRepository(path="/nonexistent/teams.json")

        with pytest.raises(ConfigError):
            repo.put_team("t1", {"scoring_config": {"bands": {"high": 40, "medium": 60, "low": 0}}})

    def test_put_team_rejects_bad_owner(self):
        repo = TeamConfigRepository(path="/nonexistent/teams.json")

        with pytest.raises(ConfigError):
            repo.put_team("t1", {"owners": [{"id": "ae_x", "capacity": -1}]})

    def test_sync_owners(self):
        repo = TeamConfigRepository(path="/nonexistent/teams.json")
        repo.put_team("t1", {"owners": [{"id": "ae_x", "capacity": 3, "pools": ["EMEA"]}]})
        store = LeadStore()

        assert repo.sync_owners(store) == 1
        owner = store.get_owner("t1", "ae_x")
        assert owner.capacity == 3
        assert owner.pools == ["EMEA"]
        assert repo.get("t1").summary()["owners"] == ["ae_x"]


class TestAlertDispatcher:
    """Test alert delivery over Slack, webhook and email."""

    def setup_method(self):
        self.requests = []
        self.slack = MagicMock()
        self.lead = {"id": "lead_1", "name": "Jane", "scoreBand": "HIGH", "score": 90}

    def dispatcher(self, status=200, **kwargs):
        def handler(request):
            self.requests.append(json.loads(request.content))
            return httpx.Response(status)

        return AlertDispatcher(slack=self.slack, transport=httpx.MockTransport(handler), **kwargs)

    def test_webhook_alert(self):
        alert = AlertInstruction(channel=AlertChannel.WEBHOOK, lead_id="lead_1", webhook="https://hooks.example.com/x")

        with self.dispatcher() as dispatcher:
            assert dispatcher.dispatch(alert, self.lead) is True

        assert self.requests[0]["type"] == "lead_routed"
        assert self.requests[0]["alert"]["leadId"] == "lead_1"

    def test_webhook_failure_is_reported(self):
        alert = AlertInstruction(channel=AlertChannel.WEBHOOK, lead_id="lead_1", webhook="https://hooks.example.com/x")

        with self.dispatcher(status=500) as dispatcher:
            assert dispatcher.dispatch(alert, self.lead) is False

    def test_slack_alert(self):
        self.slack.send_lead_alert.return_value = "1700000000.000100"
        alert = AlertInstruction(channel=AlertChannel.SLACK, lead_id="lead_1", owner_id="ae_alex")

        assert self.dispatcher().dispatch(alert, self.lead) is True
        lead, payload = self.slack.send_lead_alert.call_args[0]
        assert payload["ownerId"] == "ae_alex"

    def test_email_alert_is_logged(self):
        alert = AlertInstruction(channel=AlertChannel.EMAIL, lead_id="lead_1")

        assert self.dispatcher().dispatch(alert, self.lead) is True
        assert self.requests == []

    def test_escalation_goes_to_slack_and_webhook(self):
        instruction = EscalationInstruction(
            clock_id="sla_1", lead_id="lead_1", team_id="t1", level=1, minutes=10, action="notify_manager"
        )

        with self.dispatcher(escalation_webhook="https://hooks.example.com/esc") as dispatcher:
            assert dispatcher.dispatch_escalation(instruction, self.lead) is True

        assert self.slack.send_escalation.called
        assert self.requests[0]["type"] == "sla_escalated"
        assert self.requests[0]["escalation"]["action"] == "notify_manager"


class TestSlackNotifier:
    """Test Slack message delivery."""

    def setup_method(self):
        self.lead = {"name": "Jane", "company": "Acme", "scoreBand": "HIGH", "score": 91, "tags": ["enterprise"]}
        self.alert = {"ownerId": "ae_alex", "priority": 1, "pool": "AE_POOL_A"}

    def test_mock_mode_without_token(self, monkeypatch):
        monkeypatch.delenv("SLACK_BOT_TOKEN", raising=False)

        notifier = SlackNotifier()

        assert notifier.send_lead_alert(self.lead, self.alert) == "mock_timestamp_123"

    def test_lead_alert_message(self):
        notifier = SlackNotifier(token="xoxb-test", default_channel="#leads")
        notifier._client = MagicMock()
        notifier._client.chat_postMessage.return_value = {"ts": "123.456"}

        assert notifier.send_lead_alert(self.lead, self.alert) == "123.456"

        kwargs = notifier._client.chat_postMessage.call_args.kwargs
        assert kwargs["channel"] == "#leads"
        assert "HIGH" in kwargs["text"]
        assert any("ae_alex" in json.dumps(block) for block in kwargs["blocks"])

    def test_slack_api_error_returns_none(self):
        notifier = SlackNotifier(token="xoxb-test")
        notifier._client = MagicMock()
        notifier._client.chat_postMessage.side_effect = SlackApiError("channel_not_found", {"ok": False})

        assert notifier.send_escalation({"action": "notify_manager", "minutes": 10, "leadId": "lead_1"}) is None


class TestIdentityLock:
    """Test per-identity locking."""

    def setup_method(self):
        self.keys = [DedupeKey("t1", "phone", "5550102000"), DedupeKey("t1", "email", "a@acme.io")]

    def test_local_locks_are_sorted_reentrant_and_cleaned_up(self):
        locks = IdentityLock()

        with locks.hold(self.keys) as names:
            assert names == sorted(names)
            with locks.hold(self.keys[:1]):
                pass

        assert locks._local == {}

    def test_local_lock_blocks_other_threads(self):
        locks = IdentityLock()
        entered = threading.Event()

        def contender():
            with locks.hold(self.keys[:1]):
                entered.set()

        with locks.hold(self.keys):
            thread = threading.Thread(target=contender)
            thread.start()
            assert not entered.wait(0.2)
        thread.join(timeout=2)

        assert entered.is_set()

    def test_redis_locks(self):
        client = MagicMock()
        handle = MagicMock()
        handle.acquire.return_value = True
        client.lock.return_value = handle

        with IdentityLock(client).hold(self.keys):
            pass

        names = [call.args[0] for call in client.lock.call_args_list]
        assert names == sorted(names)
        assert names[0] == "lock:lead:t1:email:a@acme.io"
        assert handle.release.call_count == 2

    def test_redis_timeout_raises(self):
        client = MagicMock()
        client.lock.return_value.acquire.return_value = False

        with pytest.raises(PipelineError):
            with IdentityLock(client).hold(self.keys):
                pass

    def test_redis_outage_falls_back_to_local_lock(self):
        client = MagicMock()
        client.lock.side_effect = redis.ConnectionError("down")
        locks = IdentityLock(client)

        with locks.hold(self.keys):
            assert len(locks._local) == 2
        assert locks._local == {}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
