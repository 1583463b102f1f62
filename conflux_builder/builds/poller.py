"""Background polling of active builds.

Webhooks can be lost or arrive out of order; the poller is the second,
pull-based event source. Every poll_interval seconds it sweeps the
active records once, committing each record separately.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.orm import Session, sessionmaker

from conflux_builder.builds import registry
from conflux_builder.builds.engine import ReconciliationEngine
from conflux_builder.db import get_session

logger = logging.getLogger(__name__)


@dataclass
class PollReport:
    """Summary of one sweep over active builds."""

    checked: int = 0
    transitions: dict[int, str] = field(default_factory=dict)
    failed_build_ids: list[int] = field(default_factory=list)


class BuildPoller:
    """Manage the thread that polls active builds."""

    def __init__(
        self,
        engine: ReconciliationEngine,
        session_factory: sessionmaker[Session],
        interval: float = 60.0,
    ) -> None:
        self.engine = engine
        self._session_factory = session_factory
        self._interval = interval
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Spawn the polling thread; does nothing if it is running."""
        if self.running:
            return
        if self._interval <= 0:
            logger.warning("Poll interval must be positive; poller will not start")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="build-poller", daemon=True
        )
        self._thread.start()
        logger.info("Build poller started (every %ss)", self._interval)

    def stop(self, timeout: float | None = 10.0) -> None:
        """Signal the thread to exit and wait for it."""
        thread = self._thread
        if thread is None:
            return
        self._stop_event.set()
        thread.join(timeout)
        if thread.is_alive():
            logger.warning("Build poller did not stop within %ss", timeout)
        self._thread = None
        logger.info("Build poller stopped")

    def run_once(self, now: datetime | None = None) -> PollReport:
        """Poll every active build once, each in its own transaction.

        A build whose poll raises is logged and skipped; its transaction
        is rolled back and the others are still committed.

        Args:
            now: Current naive UTC time; the engine's clock if None.

        Returns:
            PollReport with the builds whose status changed.
        """
        with get_session(self._session_factory) as session:
            build_ids = [record.id for record in registry.list_active_builds(session)]

        report = PollReport()
        for build_id in build_ids:
            try:
                with get_session(self._session_factory) as session:
                    record = registry.get_build(session, build_id)
                    before = record.status
                    after = self.engine.poll_build(session, record, now)
            except Exception:
                logger.exception("Polling build %d failed", build_id)
                report.failed_build_ids.append(build_id)
                continue
            report.checked += 1
            if after.value != before:
                report.transitions[build_id] = after.value

        if build_ids:
            logger.info(
                "Polled %d active builds, %d changed, %d failed",
                report.checked,
                len(report.transitions),
                len(report.failed_build_ids),
            )
        return report

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self.run_once()
            except Exception:
                # The thread outlives a failed sweep; the next tick retries
                logger.exception("Polling sweep failed")


__all__ = ["BuildPoller", "PollReport"]
