"""Persistence subsystem: session state, conversation log, stats, snapshots and backups."""

import logging
import uuid
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from chat_relay import constants
from chat_relay.clients.storage import JsonFileStore
from chat_relay.errors import BackupNotFoundError, PersistenceError, SnapshotNotFoundError
from chat_relay.models.archive import Backup, BackupPayload, Snapshot, SnapshotPayload
from chat_relay.models.config import RelayConfig
from chat_relay.models.conversation_log import ConversationLogEntry
from chat_relay.models.session import ConversationSession, utcnow
from chat_relay.models.stats import BackoffState, Stats
from chat_relay.surfaces.manager import endpoint_exists
from chat_relay.utils.codec import Codec

logger = logging.getLogger(__name__)


class SavedSession(BaseModel):
    """The durable record used to resume a session after a restart."""

    session: ConversationSession
    stats: Stats = Field(default_factory=Stats)
    backoff: BackoffState = Field(default_factory=BackoffState)
    saved_at: datetime = Field(default_factory=utcnow)


def _parse_list(model, raw, key: str) -> list:
    if not isinstance(raw, list):
        raise PersistenceError(f"Stored {key} is not a list")
    try:
        return [model.model_validate(item) for item in raw]
    except ValidationError as e:
        raise PersistenceError(f"Stored {key} is invalid: {e}")


def _dump_list(items: List[BaseModel]) -> list:
    return [item.model_dump(mode="json") for item in items]


def _timestamp_matches(backup: Backup, timestamp: Union[str, datetime]) -> bool:
    if isinstance(timestamp, datetime):
        return backup.timestamp == timestamp
    return timestamp in (backup.timestamp.isoformat(), backup.model_dump(mode="json")["timestamp"])


class PersistenceService:
    def __init__(
        self,
        store: JsonFileStore,
        codec: Optional[Codec] = None,
        config: Optional[RelayConfig] = None,
        check_endpoint: Callable[[str], Awaitable[bool]] = endpoint_exists,
    ):
        self.store = store
        self.codec = codec or Codec()
        self.config = config or RelayConfig()
        self.check_endpoint = check_endpoint

    # ==========================================================================
    # Session state
    # ==========================================================================

    async def save_session(
        self,
        session: ConversationSession,
        stats: Stats,
        backoff: BackoffState,
        now: Optional[datetime] = None,
    ) -> None:
        record = SavedSession(
            session=session, stats=stats, backoff=backoff, saved_at=now or utcnow()
        )
        await self.store.set(constants.SESSION_STATE_KEY, record.model_dump(mode="json"))

    async def clear_session(self) -> None:
        await self.store.remove(constants.SESSION_STATE_KEY)

    async def load_session(self) -> Optional[SavedSession]:
        raw = await self.store.get(constants.SESSION_STATE_KEY)
        if raw is None:
            return None
        try:
            return SavedSession.model_validate(raw)
        except ValidationError as e:
            raise PersistenceError(f"Stored session state is invalid: {e}")

    async def load_resumable_session(
        self, now: Optional[datetime] = None
    ) -> Optional[SavedSession]:
        """The saved session if it is fresh and all its endpoints still exist.

        Anything else is discarded so it is not offered again.
        """
        try:
            saved = await self.load_session()
        except PersistenceError as e:
            logger.warning(f"Discarding unreadable session state: {e}")
            await self.clear_session()
            return None
        if saved is None:
            return None

        age = ((now or utcnow()) - saved.saved_at).total_seconds()
        if age > self.config.session_stale_after:
            logger.info(f"Discarding saved session {saved.session.session_id}: {age:.0f}s old")
            await self.clear_session()
            return None

        for address in saved.session.endpoints:
            if not await self.check_endpoint(address):
                logger.info(
                    f"Discarding saved session {saved.session.session_id}: "
                    f"endpoint {address} is gone"
                )
                await self.clear_session()
                return None
        return saved

    # ==========================================================================
    # Conversation log and stats
    # ==========================================================================

    async def load_log(self) -> List[ConversationLogEntry]:
        raw = await self.store.get(constants.CONVERSATION_LOG_KEY, [])
        return _parse_list(ConversationLogEntry, raw, constants.CONVERSATION_LOG_KEY)

    async def save_log(self, entries: List[ConversationLogEntry]) -> None:
        bounded = entries[-self.config.log_max_entries :]
        await self.store.set(constants.CONVERSATION_LOG_KEY, _dump_list(bounded))

    async def load_stats(self) -> Stats:
        raw = await self.store.get(constants.STATS_KEY)
        if raw is None:
            return Stats()
        try:
            return Stats.model_validate(raw)
        except ValidationError as e:
            raise PersistenceError(f"Stored stats are invalid: {e}")

    async def save_stats(self, stats: Stats) -> None:
        await self.store.set(constants.STATS_KEY, stats.model_dump(mode="json"))

    # ==========================================================================
    # Snapshots
    # ==========================================================================

    async def get_snapshots(self) -> List[Snapshot]:
        raw = await self.store.get(constants.SNAPSHOTS_KEY, [])
        return _parse_list(Snapshot, raw, constants.SNAPSHOTS_KEY)

    async def save_snapshots(self, snapshots: List[Snapshot]) -> None:
        bounded = snapshots[: self.config.max_snapshots]
        await self.store.set(constants.SNAPSHOTS_KEY, _dump_list(bounded))

    async def create_snapshot(
        self,
        session: ConversationSession,
        log_entries: List[ConversationLogEntry],
        description: str = "",
    ) -> Snapshot:
        payload = SnapshotPayload(session=session.model_copy(deep=True), log_entries=log_entries)
        snapshot = Snapshot(
            id=f"snapshot-{uuid.uuid4().hex[:8]}",
            description=description,
            session_id=session.session_id,
            topic=session.topic,
            data=self.codec.encode_json(payload.model_dump(mode="json")),
        )
        snapshots = await self.get_snapshots()
        snapshots.insert(0, snapshot)
        await self.save_snapshots(snapshots)
        logger.info(f"Created snapshot {snapshot.id} of session {session.session_id}")
        return snapshot

    def decode_snapshot(self, snapshot: Snapshot) -> SnapshotPayload:
        try:
            return SnapshotPayload.model_validate(self.codec.decode_json(snapshot.data))
        except ValidationError as e:
            raise PersistenceError(f"Snapshot {snapshot.id} is corrupted: {e}")

    async def load_snapshot(self, snapshot_id: str) -> SnapshotPayload:
        for snapshot in await self.get_snapshots():
            if snapshot.id == snapshot_id:
                return self.decode_snapshot(snapshot)
        raise SnapshotNotFoundError(f"Snapshot {snapshot_id} not found")

    async def delete_snapshot(self, snapshot_id: str) -> None:
        snapshots = await self.get_snapshots()
        remaining = [s for s in snapshots if s.id != snapshot_id]
        if len(remaining) == len(snapshots):
            raise SnapshotNotFoundError(f"Snapshot {snapshot_id} not found")
        await self.save_snapshots(remaining)

    async def validate_snapshots(self) -> int:
        """Drop snapshots that fail to decode or name unresolvable endpoints.

        Returns the number dropped. Never raises.
        """
        try:
            snapshots = await self.get_snapshots()
        except PersistenceError as e:
            logger.error(f"Snapshot validation skipped: {e}")
            return 0

        valid = []
        for snapshot in snapshots:
            try:
                payload = self.decode_snapshot(snapshot)
                for address in payload.session.endpoints:
                    if not await self.check_endpoint(address):
                        raise PersistenceError(f"endpoint {address} cannot be resolved")
            except PersistenceError as e:
                logger.warning(f"Dropping invalid snapshot {snapshot.id}: {e}")
                continue
            valid.append(snapshot)

        dropped = len(snapshots) - len(valid)
        if dropped:
            try:
                await self.save_snapshots(valid)
            except PersistenceError as e:
                logger.error(f"Failed to store validated snapshots: {e}")
        return dropped

    # ==========================================================================
    # Backups
    # ==========================================================================

    async def get_backups(self) -> List[Backup]:
        raw = await self.store.get(constants.BACKUPS_KEY, [])
        return _parse_list(Backup, raw, constants.BACKUPS_KEY)

    async def create_backup(self, log: List[ConversationLogEntry], stats: Stats) -> Backup:
        payload = BackupPayload(snapshots=await self.get_snapshots(), log=log, stats=stats)
        backup = Backup(data=self.codec.encode_json(payload.model_dump(mode="json")))
        backups = await self.get_backups()
        backups.insert(0, backup)
        await self.store.set(constants.BACKUPS_KEY, _dump_list(backups[: self.config.max_backups]))
        logger.info(f"Created backup {backup.timestamp.isoformat()}")
        return backup

    async def load_backup(self, timestamp: Union[str, datetime]) -> BackupPayload:
        for backup in await self.get_backups():
            if _timestamp_matches(backup, timestamp):
                try:
                    return BackupPayload.model_validate(self.codec.decode_json(backup.data))
                except ValidationError as e:
                    raise PersistenceError(f"Backup {timestamp} is corrupted: {e}")
        raise BackupNotFoundError(f"Backup {timestamp} not found")
