"""Tests for the chat-relay CLI commands."""

import json
from datetime import datetime, timezone

from click.testing import CliRunner

from chat_relay.cli.main import cli
from chat_relay.constants import CONVERSATION_LOG_KEY, STATS_KEY
from chat_relay.models.conversation_log import ConversationLogEntry, LogKind
from chat_relay.models.stats import Stats

ENDPOINTS = ["tmux:relay:left", "tmux:relay:right"]


def write_log(state_dir, entries):
    state_dir.mkdir(parents=True, exist_ok=True)
    data = [entry.model_dump(mode="json") for entry in entries]
    (state_dir / f"{CONVERSATION_LOG_KEY}.json").write_text(json.dumps(data))


def sample_log():
    ts = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def entry(session_id, kind, content, speaker_index=None):
        return ConversationLogEntry(
            timestamp=ts,
            session_id=session_id,
            kind=kind,
            content=content,
            speaker_index=speaker_index,
        )

    return [
        entry("session-a", LogKind.TOPIC, "T"),
        entry("session-a", LogKind.RESPONSE, "A1", 0),
        entry("session-b", LogKind.RESPONSE, "B1", 1),
    ]


# ── stats / log ───────────────────────────────────────────────────


class TestStatsCommands:
    def test_stats_on_empty_state(self, tmp_path):
        result = CliRunner().invoke(cli, ["stats", "--state-dir", str(tmp_path)])

        assert result.exit_code == 0
        report = json.loads(result.output)
        assert report["messages_exchanged"] == 0
        assert report["success_rate"] == 0.0

    def test_reset_stats(self, tmp_path):
        stats = Stats(messages_exchanged=4, total_response_time=8.0, average_response_time=2.0)
        (tmp_path / f"{STATS_KEY}.json").write_text(json.dumps(stats.model_dump(mode="json")))

        result = CliRunner().invoke(cli, ["reset-stats", "--state-dir", str(tmp_path)])

        assert result.exit_code == 0
        assert "Statistics reset" in result.output
        saved = json.loads((tmp_path / f"{STATS_KEY}.json").read_text())
        assert saved["messages_exchanged"] == 0

    def test_log_empty(self, tmp_path):
        result = CliRunner().invoke(cli, ["log", "--state-dir", str(tmp_path)])

        assert result.exit_code == 0
        assert "No conversation log entries" in result.output

    def test_log_lines(self, tmp_path):
        write_log(tmp_path, sample_log())

        result = CliRunner().invoke(cli, ["log", "--state-dir", str(tmp_path)])

        lines = result.output.strip().splitlines()
        assert len(lines) == 3
        assert lines[0].endswith("session-a topic: T")
        assert lines[1].endswith("session-a endpoint-0: A1")

    def test_log_filter_and_limit(self, tmp_path):
        write_log(tmp_path, sample_log())

        result = CliRunner().invoke(
            cli,
            ["log", "--session", "session-a", "--limit", "1", "--json"]
            + ["--state-dir", str(tmp_path)],
        )

        entries = json.loads(result.output)
        assert [e["content"] for e in entries] == ["A1"]


# ── snapshots / backups ───────────────────────────────────────────


class TestArchiveCommands:
    def test_empty_listings(self, tmp_path):
        runner = CliRunner()
        state_dir = ["--state-dir", str(tmp_path)]

        assert "No snapshots" in runner.invoke(cli, ["snapshots", *state_dir]).output
        assert "No backups" in runner.invoke(cli, ["backups", *state_dir]).output

    def test_delete_missing_snapshot(self, tmp_path):
        result = CliRunner().invoke(
            cli, ["delete-snapshot", "snapshot-nope", "--state-dir", str(tmp_path)]
        )

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_backup_then_restore(self, tmp_path):
        runner = CliRunner()
        write_log(tmp_path, sample_log())

        created = runner.invoke(cli, ["backup", "--state-dir", str(tmp_path)])
        assert created.exit_code == 0
        timestamp = created.output.strip().split()[-1]

        listed = runner.invoke(cli, ["backups", "--state-dir", str(tmp_path)])
        assert timestamp in listed.output

        write_log(tmp_path, [])
        restored = runner.invoke(cli, ["restore-backup", timestamp, "--state-dir", str(tmp_path)])
        assert restored.exit_code == 0

        result = runner.invoke(cli, ["log", "--json", "--state-dir", str(tmp_path)])
        assert [e["content"] for e in json.loads(result.output)] == ["T", "A1", "B1"]

    def test_restore_missing_backup(self, tmp_path):
        result = CliRunner().invoke(
            cli, ["restore-backup", "2020-01-01T00:00:00+00:00", "--state-dir", str(tmp_path)]
        )

        assert result.exit_code == 1
        assert "not found" in result.output


# ── run ───────────────────────────────────────────────────────────


class TestRunCommand:
    def test_run_without_topic(self, tmp_path):
        settings = tmp_path / "settings.json"
        settings.write_text(json.dumps({"endpoint_addresses": ENDPOINTS}))

        result = CliRunner().invoke(
            cli, ["run", "--settings", str(settings), "--state-dir", str(tmp_path)]
        )

        assert result.exit_code == 1
        assert "Topic must not be empty" in result.output

    def test_run_with_one_endpoint(self, tmp_path):
        settings = tmp_path / "settings.json"
        settings.write_text(json.dumps({}))

        result = CliRunner().invoke(
            cli,
            [
                "run",
                "--settings", str(settings),
                "--endpoint", ENDPOINTS[0],
                "--topic", "tabs vs spaces",
                "--state-dir", str(tmp_path),
            ],
        )

        assert result.exit_code == 1
        assert "exactly 2 endpoint addresses" in result.output

    def test_settings_file_with_unknown_keys(self, tmp_path):
        settings = tmp_path / "settings.json"
        settings.write_text(json.dumps({"topic": "x", "speed": "fast"}))

        result = CliRunner().invoke(
            cli, ["run", "--settings", str(settings), "--state-dir", str(tmp_path)]
        )

        assert result.exit_code == 1
        assert "Unknown settings keys: speed" in result.output
