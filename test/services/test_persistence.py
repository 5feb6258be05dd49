"""Unit tests for session persistence, snapshots and backups."""

import asyncio
from datetime import timedelta

import pytest

from chat_relay.clients.storage import JsonFileStore
from chat_relay.constants import SESSION_STATE_KEY, SNAPSHOTS_KEY
from chat_relay.errors import BackupNotFoundError, SnapshotNotFoundError
from chat_relay.models.config import RelayConfig
from chat_relay.models.conversation_log import ConversationLogEntry, LogKind
from chat_relay.models.session import ConversationSession, HistoryEntry, utcnow
from chat_relay.models.stats import BackoffState, Stats
from chat_relay.services.persistence import PersistenceService

ENDPOINTS = ["tmux:relay:left", "tmux:relay:right"]


def make_session(session_id="session-1"):
    return ConversationSession(
        session_id=session_id,
        endpoints=list(ENDPOINTS),
        topic="Is a hot dog a sandwich?",
        current_speaker_index=0,
        history=[HistoryEntry(source="endpoint-0", text="It clearly is.")],
        sequence_ids=[1, 0],
    )


def make_log(session_id="session-1"):
    return [
        ConversationLogEntry(session_id=session_id, kind=LogKind.TOPIC, content="hot dogs"),
        ConversationLogEntry(
            session_id=session_id, kind=LogKind.RESPONSE, content="It clearly is.", speaker_index=0
        ),
    ]


def make_service(tmp_path, present=None, **config):
    present = set(ENDPOINTS) if present is None else present

    async def check_endpoint(address):
        return address in present

    return PersistenceService(
        JsonFileStore(tmp_path), config=RelayConfig(**config), check_endpoint=check_endpoint
    )


class TestSnapshots:
    def test_snapshot_round_trip(self, tmp_path):
        service = make_service(tmp_path)
        session, log = make_session(), make_log()

        async def scenario():
            snapshot = await service.create_snapshot(session, log, "before the twist")
            return snapshot, await service.load_snapshot(snapshot.id)

        snapshot, payload = asyncio.run(scenario())

        assert snapshot.description == "before the twist"
        assert snapshot.session_id == "session-1"
        assert payload.session == session
        assert payload.log_entries == log

    def test_snapshots_are_bounded_newest_first(self, tmp_path):
        service = make_service(tmp_path, max_snapshots=3)

        async def scenario():
            for i in range(5):
                await service.create_snapshot(make_session(f"session-{i}"), [], f"#{i}")
            return await service.get_snapshots()

        snapshots = asyncio.run(scenario())

        assert [s.description for s in snapshots] == ["#4", "#3", "#2"]

    def test_delete_snapshot(self, tmp_path):
        service = make_service(tmp_path)

        async def scenario():
            snapshot = await service.create_snapshot(make_session(), [])
            await service.delete_snapshot(snapshot.id)
            with pytest.raises(SnapshotNotFoundError):
                await service.delete_snapshot(snapshot.id)
            return await service.get_snapshots()

        assert asyncio.run(scenario()) == []

    def test_load_missing_snapshot_raises(self, tmp_path):
        with pytest.raises(SnapshotNotFoundError):
            asyncio.run(make_service(tmp_path).load_snapshot("snapshot-nope"))

    def test_sweep_drops_corrupted_snapshot(self, tmp_path):
        service = make_service(tmp_path)

        async def scenario():
            good = await service.create_snapshot(make_session(), make_log())
            raw = await service.store.get(SNAPSHOTS_KEY)
            broken = dict(raw[0], id="snapshot-broken", data="bm90IGd6aXA=")
            await service.store.set(SNAPSHOTS_KEY, [broken] + raw)
            dropped = await service.validate_snapshots()
            return good, dropped, await service.get_snapshots()

        good, dropped, snapshots = asyncio.run(scenario())

        assert dropped == 1
        assert [s.id for s in snapshots] == [good.id]

    def test_sweep_drops_snapshot_with_unresolvable_endpoint(self, tmp_path):
        present = set(ENDPOINTS)
        service = make_service(tmp_path, present=present)

        async def scenario():
            await service.create_snapshot(make_session(), [])
            present.discard(ENDPOINTS[1])
            return await service.validate_snapshots(), await service.get_snapshots()

        dropped, snapshots = asyncio.run(scenario())

        assert dropped == 1
        assert snapshots == []

    def test_sweep_never_raises_on_unreadable_collection(self, tmp_path):
        service = make_service(tmp_path)
        (tmp_path / f"{SNAPSHOTS_KEY}.json").write_text("{broken", encoding="utf-8")

        assert asyncio.run(service.validate_snapshots()) == 0


class TestBackups:
    def test_backup_round_trip(self, tmp_path):
        service = make_service(tmp_path)
        stats = Stats(messages_exchanged=7)

        async def scenario():
            await service.create_snapshot(make_session(), make_log())
            backup = await service.create_backup(make_log(), stats)
            return backup, await service.load_backup(backup.model_dump(mode="json")["timestamp"])

        backup, payload = asyncio.run(scenario())

        assert payload.stats.messages_exchanged == 7
        assert len(payload.snapshots) == 1
        assert [e.content for e in payload.log] == ["hot dogs", "It clearly is."]

    def test_backups_are_bounded(self, tmp_path):
        service = make_service(tmp_path, max_backups=2)

        async def scenario():
            for _ in range(4):
                await service.create_backup([], Stats())
            return await service.get_backups()

        assert len(asyncio.run(scenario())) == 2

    def test_load_missing_backup_raises(self, tmp_path):
        with pytest.raises(BackupNotFoundError):
            asyncio.run(make_service(tmp_path).load_backup("2001-01-01T00:00:00Z"))


class TestSessionState:
    def test_fresh_session_is_resumable(self, tmp_path):
        service = make_service(tmp_path)
        session = make_session()

        async def scenario():
            await service.save_session(session, Stats(), BackoffState(consecutive_errors=1))
            return await service.load_resumable_session()

        saved = asyncio.run(scenario())

        assert saved.session == session
        assert saved.backoff.consecutive_errors == 1

    def test_stale_session_is_discarded(self, tmp_path):
        service = make_service(tmp_path)

        async def scenario():
            old = utcnow() - timedelta(minutes=31)
            await service.save_session(make_session(), Stats(), BackoffState(), now=old)
            resumable = await service.load_resumable_session()
            return resumable, await service.store.get(SESSION_STATE_KEY)

        resumable, stored = asyncio.run(scenario())

        assert resumable is None
        assert stored is None

    def test_session_with_missing_endpoint_is_discarded(self, tmp_path):
        service = make_service(tmp_path, present={ENDPOINTS[0]})

        async def scenario():
            await service.save_session(make_session(), Stats(), BackoffState())
            return await service.load_resumable_session()

        assert asyncio.run(scenario()) is None

    def test_unreadable_session_is_discarded(self, tmp_path):
        service = make_service(tmp_path)

        async def scenario():
            await service.store.set(SESSION_STATE_KEY, {"session": "nonsense"})
            return await service.load_resumable_session()

        assert asyncio.run(scenario()) is None


class TestLogAndStats:
    def test_log_is_bounded_on_save(self, tmp_path):
        service = make_service(tmp_path, log_max_entries=1)

        async def scenario():
            await service.save_log(make_log())
            return await service.load_log()

        assert [e.content for e in asyncio.run(scenario())] == ["It clearly is."]

    def test_missing_stats_default_to_empty(self, tmp_path):
        assert asyncio.run(make_service(tmp_path).load_stats()) == Stats()
