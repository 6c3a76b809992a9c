"""
Blast Engine — long-running asyncio orchestrator.

    ┌─────────────────────────────────────────────┐
    │ BlastEngine (one event loop)                │
    │  ├─ pacer:<campaign>   one per running camp │
    │  ├─ generation:<camp>  on-demand batches    │
    │  ├─ continuous_generation (queue top-up)    │
    │  ├─ supervisor (scheduled starts, pacers)   │
    │  ├─ reconcile (counter drift repair)        │
    │  └─ heartbeat                               │
    └─────────────────────────────────────────────┘

Startup runs the recovery sweep before anything else, then resumes a
pacer for every running campaign. SIGTERM/SIGINT trigger a graceful
shutdown: pacers finish their in-flight send, remaining tasks are
cancelled after 15s.
"""

import asyncio
import logging
import os
import signal
from typing import List

import config
from blast.aggregator import StatusAggregator
from blast.campaign_manager import CampaignStateManager
from blast.channel import ChannelAdapter, WebhookChannel
from blast.generation import GenerationScheduler
from blast.pacer import PacerRegistry
from database import (
    Campaign,
    CampaignStatus,
    Heartbeat,
    Recipient,
    RecipientStatus,
    ensure_indexes,
)
from message_generator import MessageGenerator

logger = logging.getLogger("blast.engine")

HEARTBEAT_ID = "blast_engine"
SHUTDOWN_GRACE_SECONDS = 15


class BlastEngine:
    """
    Lifecycle:
        engine = BlastEngine()
        await engine.start()   # blocks until SIGTERM/SIGINT or request_shutdown()
    """

    def __init__(self, channel: ChannelAdapter = None, generator: MessageGenerator = None):
        self.channel = channel or WebhookChannel()
        self.aggregator = StatusAggregator()
        self.generation = GenerationScheduler(generator, self.aggregator)
        self.pacers = PacerRegistry(self.channel, self.aggregator, self.generation)
        self.manager = CampaignStateManager(self.generation, self.pacers, self.aggregator)

        self._shutdown = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    async def start(self):
        logger.info("=" * 60)
        logger.info("Blast Campaign Engine — Starting")
        logger.info("=" * 60)
        logger.info(f"Channel: {self.channel.name}")
        logger.info(f"LLM provider: {config.LLM_PROVIDER}")
        logger.info(
            f"Sending hours: {config.SENDING_HOUR_START}:00 - {config.SENDING_HOUR_END}:00 "
            f"{config.TARGET_TIMEZONE} ({'enforced' if config.ENFORCE_SENDING_HOURS else 'off'})"
        )
        logger.info(f"Queue buffer: {config.QUEUE_BUFFER_SIZE}, refill every {config.GENERATION_INTERVAL_SECONDS}s")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                # Not on the main thread / not supported on this platform
                pass

        await self._startup_phase()

        self._tasks = [
            asyncio.create_task(self.generation.run_continuous(self._shutdown), name="continuous_generation"),
            asyncio.create_task(self._supervisor_loop(), name="supervisor"),
            asyncio.create_task(self._reconcile_loop(), name="reconcile"),
            asyncio.create_task(self._heartbeat_loop(), name="heartbeat"),
        ]
        logger.info(f"Workers launched: {[t.get_name() for t in self._tasks]}")

        await self._shutdown.wait()
        await self._graceful_shutdown()

    async def _startup_phase(self):
        logger.info("── Startup Phase ──")
        ensure_indexes()
        self.aggregator.recovery_sweep()
        resumed = self.resume_running()
        logger.info(f"Resumed {len(resumed)} running campaign(s)")

    def resume_running(self) -> List[str]:
        """Ensure a pacer (and pending generation) for every running campaign."""
        resumed = []
        for campaign in Campaign.find_by_status([CampaignStatus.RUNNING]):
            campaign_id = str(campaign["_id"])
            if self.pacers.is_running(campaign_id):
                continue
            self.pacers.ensure(campaign_id)
            if Recipient.count(campaign_id, status=RecipientStatus.PENDING):
                self.generation.spawn_batch(campaign_id)
            resumed.append(campaign_id)
        return resumed

    async def _sleep_or_shutdown(self, seconds: float) -> bool:
        """Sleep, returning True early if shutdown was requested."""
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _supervisor_loop(self):
        """Start due scheduled campaigns and pick up campaigns started from other processes."""
        while not self._shutdown.is_set():
            try:
                started = await self.manager.activate_due_scheduled()
                if started:
                    logger.info(f"scheduled_campaigns_started: {len(started)}")
                resumed = self.resume_running()
                if resumed:
                    logger.info(f"pacers_attached: {len(resumed)}")
            except Exception as e:
                logger.error(f"supervisor_error: {e}", exc_info=True)
            if await self._sleep_or_shutdown(config.SUPERVISOR_INTERVAL_SECONDS):
                break

    async def _reconcile_loop(self):
        while not self._shutdown.is_set():
            if await self._sleep_or_shutdown(config.RECONCILE_INTERVAL_SECONDS):
                break
            try:
                corrected = self.aggregator.reconcile_all()
                if corrected:
                    logger.warning(f"reconcile_corrected: {len(corrected)} campaign(s)")
            except Exception as e:
                logger.error(f"reconcile_error: {e}", exc_info=True)

    async def _heartbeat_loop(self):
        """Write a heartbeat document for health monitoring."""
        while not self._shutdown.is_set():
            try:
                Heartbeat.beat(
                    HEARTBEAT_ID,
                    pid=os.getpid(),
                    status="running",
                    active_pacers=self.pacers.running_ids(),
                )
            except Exception as e:
                logger.error(f"Heartbeat write failed: {e}")
            if await self._sleep_or_shutdown(config.HEARTBEAT_INTERVAL_SECONDS):
                break

    def request_shutdown(self):
        self._shutdown.set()

    def _handle_signal(self, sig):
        logger.info(f"Received signal {sig.name} — initiating graceful shutdown")
        self.request_shutdown()

    async def _graceful_shutdown(self):
        """
        1. Ask pacers to stop (in-flight sends finish).
        2. Wait for workers (max SHUTDOWN_GRACE_SECONDS), then cancel the rest.
        3. Final heartbeat.
        """
        logger.info("── Graceful Shutdown ──")

        await self.pacers.stop_all(timeout=SHUTDOWN_GRACE_SECONDS)
        await self.pacers.cancel_all()

        if self._tasks:
            done, pending = await asyncio.wait(self._tasks, timeout=SHUTDOWN_GRACE_SECONDS)
            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        await self.generation.cancel_all()

        try:
            Heartbeat.stopped(HEARTBEAT_ID)
        except Exception as e:
            logger.error(f"Final heartbeat write failed: {e}")

        logger.info("Shutdown complete")
