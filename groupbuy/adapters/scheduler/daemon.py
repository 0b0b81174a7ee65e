"""Periodic expiry sweeps.

DaemonScheduler calls SweepPort.execute_sweep on a fixed interval until
stopped by stop(), SIGTERM or SIGINT. A failing sweep is logged and
retried on the next tick; after ``failure_alert_threshold`` failures in a
row a critical line is logged on every further failure, since expired
groups then stay open or unpaid.
"""

import asyncio
import logging
import signal

from groupbuy.core.models import SweepResult
from groupbuy.core.ports import SweepPort

logger = logging.getLogger(__name__)


class DaemonScheduler:
    """Runs expiry sweeps on an asyncio loop."""

    def __init__(
        self,
        sweep_port: SweepPort | None = None,
        sweep_interval_seconds: int = 60,
        failure_alert_threshold: int = 5,
    ):
        """Initialize the scheduler.

        Args:
            sweep_port: Sweep to run (may be assigned before start()).
            sweep_interval_seconds: Pause between the end of one sweep and
                the start of the next.
            failure_alert_threshold: Consecutive failures before the
                scheduler starts logging at critical level.
        """
        self.sweep_port = sweep_port
        self.sweep_interval_seconds = sweep_interval_seconds
        self.failure_alert_threshold = failure_alert_threshold
        self.running = False
        self._task: asyncio.Task[None] | None = None
        self._failure_count = 0
        self._sweeps = 0

    async def start(self) -> None:
        """Sweep until stopped. Returns once the loop has exited.

        Raises:
            ValueError: If no sweep_port has been assigned.
        """
        if self.sweep_port is None:
            raise ValueError("sweep_port must be set before starting the scheduler")
        if self.running:
            logger.warning("Expiry scheduler is already running")
            return

        self.running = True
        self._task = asyncio.current_task()
        self._install_signal_handlers()
        logger.info(
            f"Expiry scheduler started, sweeping every {self.sweep_interval_seconds}s",
            extra={"sweep_interval_seconds": self.sweep_interval_seconds},
        )
        try:
            while self.running:
                await self._tick(self.sweep_port)
                if self.running:
                    await asyncio.sleep(self.sweep_interval_seconds)
        except asyncio.CancelledError:
            logger.info("Expiry scheduler cancelled")
        finally:
            self.running = False
            self._task = None
            logger.info(f"Expiry scheduler stopped after {self._sweeps} sweeps")

    async def stop(self) -> None:
        """Ask the loop to exit, interrupting its sleep if needed."""
        if not self.running:
            return
        logger.info("Stopping expiry scheduler")
        self.running = False
        task = self._task
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _tick(self, sweep_port: SweepPort) -> SweepResult | None:
        self._sweeps += 1
        started = asyncio.get_running_loop().time()
        try:
            result = await sweep_port.execute_sweep()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._failure_count += 1
            logger.error(
                f"Sweep #{self._sweeps} failed: {e}",
                exc_info=True,
                extra={"consecutive_failures": self._failure_count},
            )
            if self._failure_count >= self.failure_alert_threshold:
                logger.critical(
                    f"Expiry sweep failed {self._failure_count} times in a row; "
                    f"expired groups are not being locked or cancelled"
                )
            return None

        self._failure_count = 0
        elapsed = asyncio.get_running_loop().time() - started
        logger.info(
            f"Sweep #{self._sweeps} finished in {elapsed:.2f}s: "
            f"{result.groups_examined} examined, {result.groups_locked} locked, "
            f"{result.groups_cancelled} cancelled, {result.groups_failed} failed",
            extra={
                "groups_examined": result.groups_examined,
                "members_refunded": result.members_refunded,
            },
        )
        return result

    def _install_signal_handlers(self) -> None:
        try:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self._on_signal, sig)
        except (NotImplementedError, RuntimeError) as e:
            # No loop signal support (Windows, or not on the main thread)
            logger.debug(f"Signal handlers not installed: {e}")

    def _on_signal(self, sig: int) -> None:
        logger.info(f"Received signal {sig}, stopping expiry scheduler")
        asyncio.create_task(self.stop())


class DaemonFactory:
    """Helpers for creating and running schedulers."""

    @staticmethod
    def create(
        sweep_port: SweepPort,
        sweep_interval_seconds: int = 60,
    ) -> DaemonScheduler:
        return DaemonScheduler(
            sweep_port=sweep_port,
            sweep_interval_seconds=sweep_interval_seconds,
        )

    @staticmethod
    async def run_daemon(
        sweep_port: SweepPort,
        sweep_interval_seconds: int = 60,
    ) -> None:
        """Create a scheduler and block until it stops."""
        await DaemonFactory.create(sweep_port, sweep_interval_seconds).start()

    @staticmethod
    async def run_single_sweep(sweep_port: SweepPort) -> SweepResult:
        """Run one sweep outside the loop; failures propagate."""
        logger.info("Running single expiry sweep")
        try:
            result = await sweep_port.execute_sweep()
        except Exception as e:
            logger.error(f"Single expiry sweep failed: {e}", exc_info=True)
            raise
        logger.info(
            f"Single sweep finished: {result.groups_locked} locked, "
            f"{result.groups_cancelled} cancelled"
        )
        return result
