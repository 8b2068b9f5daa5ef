# stayledger/infrastructure/repositories/sync_state_repository.py

import logging
import threading
from collections import OrderedDict

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from stayledger.domain.clock import Clock, SystemClock
from stayledger.domain.exceptions import ProjectionUnavailableError
from stayledger.infrastructure.db.models import ProcessedEvent, SyncCursor
from stayledger.infrastructure.db.session import get_db_session

logger = logging.getLogger(__name__)


class SqlSyncStateStore:
    """Durable cursor and committed-identity set, stored next to the projection."""

    def __init__(self, session_factory: sessionmaker | None = None, clock: Clock | None = None):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()

    def load_cursor(self, name: str) -> int | None:
        try:
            with get_db_session(self.session_factory) as db:
                row = db.get(SyncCursor, name)
                return row.block_height if row else None
        except SQLAlchemyError as exc:
            raise ProjectionUnavailableError(f"Cannot load cursor {name}: {exc}") from exc

    def save_cursor(self, name: str, block_height: int) -> None:
        try:
            with get_db_session(self.session_factory) as db:
                row = db.get(SyncCursor, name)
                if row is None:
                    db.add(SyncCursor(name=name, block_height=block_height))
                else:
                    row.block_height = block_height
        except SQLAlchemyError as exc:
            raise ProjectionUnavailableError(f"Cannot save cursor {name}: {exc}") from exc

    def is_committed(self, identity: str) -> bool:
        try:
            with get_db_session(self.session_factory) as db:
                return db.get(ProcessedEvent, identity) is not None
        except SQLAlchemyError as exc:
            raise ProjectionUnavailableError(f"Cannot read committed set: {exc}") from exc

    def mark_committed(
        self,
        identity: str,
        event_name: str,
        tx_id: str,
        block_height: int,
    ) -> None:
        try:
            with get_db_session(self.session_factory) as db:
                if db.get(ProcessedEvent, identity) is not None:
                    return
                db.add(
                    ProcessedEvent(
                        identity=identity,
                        event_name=event_name,
                        tx_id=tx_id,
                        block_height=block_height,
                        committed_at=self.clock.now(),
                    )
                )
        except IntegrityError:
            logger.debug("Event %s already committed by another writer", identity[:12])
        except SQLAlchemyError as exc:
            raise ProjectionUnavailableError(f"Cannot commit event {identity[:12]}: {exc}") from exc

    def committed_count(self) -> int:
        try:
            with get_db_session(self.session_factory) as db:
                return db.execute(select(func.count()).select_from(ProcessedEvent)).scalar_one()
        except SQLAlchemyError as exc:
            raise ProjectionUnavailableError(f"Cannot count committed set: {exc}") from exc

    def prune_committed(self, max_entries: int, min_age_seconds: int, batch_limit: int) -> int:
        """Deletes the oldest identities above max_entries, never younger than min_age_seconds."""
        cutoff = self.clock.now() - min_age_seconds
        try:
            with get_db_session(self.session_factory) as db:
                total = db.execute(select(func.count()).select_from(ProcessedEvent)).scalar_one()
                excess = total - max_entries
                if excess <= 0:
                    return 0
                victims = list(
                    db.execute(
                        select(ProcessedEvent.identity)
                        .where(ProcessedEvent.committed_at <= cutoff)
                        .order_by(ProcessedEvent.committed_at, ProcessedEvent.block_height)
                        .limit(min(excess, batch_limit))
                    ).scalars().all()
                )
                if not victims:
                    return 0
                db.execute(delete(ProcessedEvent).where(ProcessedEvent.identity.in_(victims)))
                return len(victims)
        except SQLAlchemyError as exc:
            raise ProjectionUnavailableError(f"Cannot prune committed set: {exc}") from exc


class InMemorySyncStateStore:
    """Process-local state store for tests and the demo script."""

    def __init__(self, clock: Clock | None = None):
        self.clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._cursors: dict[str, int] = {}
        # identity -> committed_at, in commit order
        self._committed: OrderedDict[str, int] = OrderedDict()

    def load_cursor(self, name: str) -> int | None:
        with self._lock:
            return self._cursors.get(name)

    def save_cursor(self, name: str, block_height: int) -> None:
        with self._lock:
            self._cursors[name] = block_height

    def is_committed(self, identity: str) -> bool:
        with self._lock:
            return identity in self._committed

    def mark_committed(self, identity: str, event_name: str, tx_id: str, block_height: int) -> None:
        with self._lock:
            self._committed.setdefault(identity, self.clock.now())

    def committed_count(self) -> int:
        with self._lock:
            return len(self._committed)

    def prune_committed(self, max_entries: int, min_age_seconds: int, batch_limit: int) -> int:
        cutoff = self.clock.now() - min_age_seconds
        removed = 0
        with self._lock:
            while len(self._committed) > max_entries and removed < batch_limit:
                identity, committed_at = next(iter(self._committed.items()))
                if committed_at > cutoff:
                    break
                del self._committed[identity]
                removed += 1
        return removed
