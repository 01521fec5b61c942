"""
Background polling: repeating tasks, per-user billing sessions and their registry.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from callbilling.config import Settings, get_settings
from callbilling.ledger.schemas import BalanceSnapshot
from callbilling.ledger.service import BalanceLedger
from callbilling.processing.processor import CallEventProcessor, ProcessingReport
from callbilling.shared.exceptions import LedgerInconsistencyError
from callbilling.shared.logging import get_logger

logger = get_logger(__name__)


class RepeatingTask:
    """Runs ``callback`` every ``interval`` seconds until stopped.

    A tick that comes due while the previous cycle is still running is skipped and
    counted, never queued.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[None]],
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self._interval = interval
        self._callback = callback
        self._stop_event = asyncio.Event()
        self._ticker: asyncio.Task[None] | None = None
        self._cycle: asyncio.Task[None] | None = None
        self.cycles_run = 0
        self.ticks_skipped = 0

    @property
    def running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    @property
    def in_flight(self) -> bool:
        return self._cycle is not None and not self._cycle.done()

    def start(self) -> None:
        if self.running:
            logger.warning("Repeating task already running", extra={"task": self.name})
            return
        self._stop_event.clear()
        self._ticker = asyncio.create_task(self._run_loop(), name=f"ticker:{self.name}")
        logger.info("Repeating task started", extra={"task": self.name, "interval_seconds": self._interval})

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue

    def tick(self) -> bool:
        """Start a cycle unless one is in flight. Returns whether a cycle started."""
        if self.in_flight:
            self.ticks_skipped += 1
            logger.debug("Skipping tick; previous cycle still running", extra={"task": self.name})
            return False
        self._cycle = asyncio.create_task(self._run_cycle(), name=f"cycle:{self.name}")
        return True

    async def _run_cycle(self) -> None:
        try:
            await self._callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Repeating task cycle failed", extra={"task": self.name})
        finally:
            self.cycles_run += 1

    def request_stop(self) -> None:
        """Stop ticking without waiting; safe to call from inside a cycle."""
        self._stop_event.set()

    async def stop(self) -> None:
        """Stop ticking and wait for the in-flight cycle to finish."""
        self._stop_event.set()
        if self._ticker is not None:
            await self._ticker
            self._ticker = None
        if self._cycle is not None:
            await asyncio.shield(self._cycle)
            self._cycle = None
        logger.info("Repeating task stopped", extra={"task": self.name})


class BillingSession:
    """Per-user worker: keeps the balance fresh and bills new calls."""

    def __init__(
        self,
        user_id: str,
        processor: CallEventProcessor,
        ledger: BalanceLedger,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.user_id = user_id
        self._processor = processor
        self._ledger = ledger
        self.balance: BalanceSnapshot | None = None
        self.last_report: ProcessingReport | None = None
        self.last_error: str | None = None
        self.last_refresh_at: datetime | None = None
        self.halted = False
        self._balance_task = RepeatingTask(
            f"balance:{user_id}", settings.balance_refresh_seconds, self.refresh_balance
        )
        self._detection_task = RepeatingTask(
            f"detection:{user_id}", settings.detection_interval_seconds, self.detect_calls
        )

    @property
    def processor(self) -> CallEventProcessor:
        return self._processor

    @property
    def running(self) -> bool:
        return self._balance_task.running or self._detection_task.running

    def start(self) -> None:
        self._balance_task.start()
        if not self.halted:
            self._detection_task.start()

    async def stop(self) -> None:
        await self._detection_task.stop()
        await self._balance_task.stop()

    async def refresh_balance(self) -> None:
        """Reload the balance; on failure keep the last known value."""
        try:
            snapshot = await self._ledger.get_balance(self.user_id)
        except Exception as exc:
            self.last_error = f"balance refresh failed: {exc}"
            logger.warning(
                "Balance refresh failed; keeping last known balance",
                extra={"user_id": self.user_id, "error": str(exc)},
            )
            return
        if snapshot is not None:
            self.balance = snapshot
        self.last_refresh_at = datetime.now(timezone.utc)

    async def detect_calls(self) -> None:
        if self.halted:
            return
        try:
            self.last_report = await self._processor.process_user(self.user_id)
            self.last_error = None
        except LedgerInconsistencyError as exc:
            self.halted = True
            self.last_error = exc.message
            logger.critical(
                "Billing halted for user after ledger inconsistency",
                extra={"user_id": self.user_id, "call_id_ref": exc.call_id_ref},
            )
            self._detection_task.request_stop()
            return
        except Exception as exc:
            self.last_error = str(exc)
            logger.warning(
                "Billing cycle aborted; retrying next tick",
                extra={"user_id": self.user_id, "error": str(exc)},
            )
            return
        await self.refresh_balance()


class BillingSessionRegistry:
    """Owns the running billing sessions, one per user."""

    def __init__(
        self,
        ledger: BalanceLedger,
        processor_factory: Callable[[str], CallEventProcessor],
        settings: Settings | None = None,
    ) -> None:
        self._ledger = ledger
        self._processor_factory = processor_factory
        self._settings = settings or get_settings()
        self._sessions: dict[str, BillingSession] = {}

    def get(self, user_id: str) -> BillingSession | None:
        return self._sessions.get(user_id)

    def __len__(self) -> int:
        return len(self._sessions)

    def start(self, user_id: str) -> BillingSession:
        """Return the user's session, creating and starting it if needed."""
        session = self._sessions.get(user_id)
        if session is None:
            session = BillingSession(
                user_id,
                processor=self._processor_factory(user_id),
                ledger=self._ledger,
                settings=self._settings,
            )
            self._sessions[user_id] = session
        if not session.running:
            session.start()
        return session

    async def stop(self, user_id: str) -> bool:
        session = self._sessions.pop(user_id, None)
        if session is None:
            return False
        await session.stop()
        return True

    async def stop_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        await asyncio.gather(*(session.stop() for session in sessions))
        logger.info("All billing sessions stopped", extra={"sessions": len(sessions)})


__all__ = [
    "BillingSession",
    "BillingSessionRegistry",
    "RepeatingTask",
]
