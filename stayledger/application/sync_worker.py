# stayledger/application/sync_worker.py

import logging
import threading
from typing import Callable

from stayledger.application.booking_service import BookingService
from stayledger.application.settings import SyncSettings
from stayledger.application.sync_engine import EventSyncEngine
from stayledger.domain.exceptions import InfrastructureError

logger = logging.getLogger(__name__)


class SyncWorker:
    """
    Background timers for the sync engine: polling, committed-set cleanup,
    reconciliation and, optionally, the keeper.
    """

    def __init__(
        self,
        engine: EventSyncEngine,
        settings: SyncSettings,
        booking_service: BookingService | None = None,
    ):
        self.engine = engine
        self.settings = settings
        self.booking_service = booking_service
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            self._spawn("sync-poll", self.settings.poll_interval_seconds, self.engine.poll, 0),
            self._spawn(
                "sync-cleanup",
                self.settings.cleanup_interval_seconds,
                self.engine.prune_committed,
                self.settings.cleanup_interval_seconds,
            ),
            self._spawn(
                "sync-reconcile",
                self.settings.reconcile_interval_seconds,
                self.engine.reconcile,
                self.settings.reconcile_interval_seconds,
            ),
        ]
        if self.settings.keeper_enabled and self.booking_service is not None:
            self._threads.append(
                self._spawn(
                    "booking-keeper",
                    self.settings.keeper_interval_seconds,
                    self.booking_service.fire_due_transitions,
                    0,
                )
            )
        logger.info("Sync worker started with %s threads", len(self._threads))

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Thread %s did not stop within %.1f seconds", thread.name, timeout)
        self._threads = []
        logger.info("Sync worker stopped")

    def _spawn(
        self,
        name: str,
        interval: float,
        task: Callable[[], object],
        initial_delay: float,
    ) -> threading.Thread:
        thread = threading.Thread(
            target=self._run,
            args=(name, interval, task, initial_delay),
            name=name,
            daemon=True,
        )
        thread.start()
        return thread

    def _run(
        self,
        name: str,
        interval: float,
        task: Callable[[], object],
        initial_delay: float,
    ) -> None:
        if initial_delay and self._stop.wait(initial_delay):
            return
        while not self._stop.is_set():
            try:
                task()
            except InfrastructureError as exc:
                logger.warning("%s: collaborator unavailable, retrying next cycle: %s", name, exc)
            except Exception:
                logger.exception("%s: unexpected failure", name)
            if self._stop.wait(interval):
                return
