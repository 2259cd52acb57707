"""
Job watcher.

Drains the container event feed and triggers a cleanup run whenever a
container matching the job patterns dies. Cleanups run one at a time in feed
order.
"""

import asyncio
import logging

from janitor_common.engine import ContainerEngine
from janitor_common.errors import EventStreamError
from janitor_common.models import CleanupSummary, ContainerEvent

from .classifier import JobPatternClassifier
from .events import EventStreamConsumer
from .reconciler import CleanupReconciler

logger = logging.getLogger(__name__)

START_ACTION = "start"
TERMINAL_ACTIONS = frozenset({"die"})


class JobWatcher:
    """
    Watches the engine for finished CI job containers.

    The watcher runs a single background task. It stops when stop() is
    called or when the event feed fails; a broken feed is not reopened.
    """

    def __init__(
        self,
        engine: ContainerEngine,
        classifier: JobPatternClassifier,
        reconciler: CleanupReconciler,
        consumer: EventStreamConsumer | None = None,
    ):
        """
        Initialize the watcher.

        Args:
            engine: Engine used to inspect containers named in events
            classifier: Matches container names against job patterns
            reconciler: Runs the cleanup for finished jobs
            consumer: Event source (defaults to the engine's container feed)
        """
        self.engine = engine
        self.classifier = classifier
        self.reconciler = reconciler
        self.consumer = consumer or EventStreamConsumer(engine)

        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start draining the event feed."""
        if self._running:
            logger.warning("Watcher already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Job watcher started")

    async def stop(self) -> None:
        """Stop the watcher. An in-flight cleanup is cancelled."""
        if self._task is None:
            return

        logger.info("Stopping job watcher...")
        self._running = False
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Job watcher stopped")

    async def wait(self) -> None:
        """Wait until the watcher loop ends on its own."""
        if self._task is not None:
            await asyncio.shield(self._task)

    async def _run_loop(self) -> None:
        """Dispatch events until the feed ends or breaks."""
        try:
            async for event in self.consumer.events():
                try:
                    await self.handle_event(event)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(
                        f"Error handling event {event.action} for container "
                        f"{event.container_id}: {e}",
                        exc_info=True,
                    )
        except EventStreamError as e:
            logger.error(f"Error in Docker event monitoring: {e}")
        finally:
            self._running = False

    async def handle_event(self, event: ContainerEvent) -> CleanupSummary | None:
        """
        Handle a single container event.

        Args:
            event: Normalized event from the feed

        Returns:
            Cleanup summary if the event triggered a cleanup, None otherwise
        """
        if event.action != START_ACTION and event.action not in TERMINAL_ACTIONS:
            return None

        snapshot = await self.classifier.inspect_job_container(
            self.engine, event.container_id
        )
        if snapshot is None:
            return None

        if event.action == START_ACTION:
            logger.info(f"Job container {event.container_id} started.")
            return None

        logger.info(f"Job container {event.container_id} finished.")
        job_id = self.classifier.resolve_job_id(snapshot, fallback=event.container_id)
        return await self.reconciler.clean_up(job_id)
