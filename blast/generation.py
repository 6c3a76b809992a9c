"""
Generation Scheduler — fills pending recipients with AI-drafted messages.

A batch is single-flight per campaign: the campaign's is_generating flag
is taken as a lease with an atomic conditional update, so concurrent
triggers (operator, pacer refill, the continuous loop, another process)
no-op instead of generating twice. A crashed holder's lease expires after
GENERATION_LEASE_TTL_SECONDS and the startup recovery sweep clears all of
them.

Per-recipient failures are recorded on the recipient and never abort the
batch. The LLM SDKs are synchronous, so calls run via asyncio.to_thread()
and are bounded by asyncio.wait_for().
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

import config
from blast.aggregator import StatusAggregator
from blast.errors import InvalidTransition, NotFound
from database import (
    Campaign,
    CampaignStatus,
    Contact,
    FailureStage,
    Recipient,
    RecipientStatus,
)
from message_generator import GenerationError, MessageGenerator

logger = logging.getLogger("blast.generation")

# Campaign statuses in which drafting may proceed (paused/terminal stop it)
GENERATABLE_STATUSES = (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED, CampaignStatus.RUNNING)

REGENERATABLE_STATUSES = (
    RecipientStatus.AWAITING_REVIEW,
    RecipientStatus.APPROVED,
    RecipientStatus.FAILED,
)


def _batch_result(generated: int = 0, failed: int = 0, busy: bool = False, remaining: int = 0) -> Dict:
    return {"generated": generated, "failed": failed, "busy": busy, "remaining": remaining}


class GenerationScheduler:
    """
    Lifecycle:
        scheduler = GenerationScheduler()
        await scheduler.generate_batch(campaign_id)        # on demand
        scheduler.spawn_batch(campaign_id)                  # fire and forget
        await scheduler.run_continuous(shutdown_event)      # keep queues topped up
    """

    # Pause between AI calls inside one batch
    inter_call_delay = 0.5

    def __init__(self, generator: MessageGenerator = None, aggregator: StatusAggregator = None):
        self.generator = generator or MessageGenerator()
        self.aggregator = aggregator or StatusAggregator()
        self._tasks: Dict[str, asyncio.Task] = {}

    # ── AI call ───────────────────────────────────────────────────────

    async def _call_generator(self, func: Callable, *args) -> str:
        # generate_unique may make several calls; give each its own budget
        budget = config.AI_TIMEOUT_SECONDS * (config.DUPLICATE_MAX_RETRIES + 1)
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=budget)
        except asyncio.TimeoutError:
            raise GenerationError("Message generation timed out")

    # ── Batch ─────────────────────────────────────────────────────────

    async def generate_batch(self, campaign_id, batch_size: int = None) -> Dict:
        """
        Draft up to `batch_size` pending recipients of one campaign.
        Returns {"generated", "failed", "busy", "remaining"}.
        """
        batch_size = batch_size or config.GENERATION_BATCH_SIZE
        campaign = Campaign.get(campaign_id)
        if not campaign:
            raise NotFound("campaign", campaign_id)
        if campaign["status"] not in GENERATABLE_STATUSES:
            logger.info(f"generation_skipped: campaign={str(campaign_id)[:8]}... status={campaign['status']}")
            return _batch_result()

        if not Campaign.acquire_generation_lease(campaign_id, config.GENERATION_LEASE_TTL_SECONDS):
            logger.info(f"generation_busy: campaign={str(campaign_id)[:8]}... already generating")
            return _batch_result(busy=True)

        generated = failed = 0
        try:
            logger.info(f"generation_batch_start: campaign={campaign['name']!r} size={batch_size}")
            for index in range(batch_size):
                # Observe pause/cancel before every AI call
                current = Campaign.get(campaign_id)
                if not current or current["status"] not in GENERATABLE_STATUSES:
                    logger.info(f"generation_stopped: campaign={str(campaign_id)[:8]}... no longer active")
                    break

                recipient = Recipient.claim_pending(campaign_id)
                if not recipient:
                    break

                if index and self.inter_call_delay:
                    await asyncio.sleep(self.inter_call_delay)

                if await self._generate_one(current, recipient):
                    generated += 1
                else:
                    failed += 1
        finally:
            Campaign.release_generation_lease(campaign_id)

        remaining = Recipient.count(campaign_id, status=RecipientStatus.PENDING)
        logger.info(
            f"generation_batch_done: campaign={campaign['name']!r} "
            f"generated={generated} failed={failed} remaining={remaining}"
        )
        if campaign["status"] == CampaignStatus.RUNNING:
            self.aggregator.complete_if_finished(campaign_id)
        return _batch_result(generated, failed, remaining=remaining)

    async def _generate_one(self, campaign: Dict, recipient: Dict) -> bool:
        campaign_id = campaign["_id"]
        recipient_id = recipient["_id"]

        contact = Contact.get(recipient["contact_id"])
        if not contact:
            self._mark_failed(campaign_id, recipient_id, "Contact not found")
            return False

        try:
            previous = Recipient.sent_messages(campaign_id)
            text = await self._call_generator(
                self.generator.generate_unique, campaign["prompt"], contact, previous
            )
        except GenerationError as e:
            self._mark_failed(campaign_id, recipient_id, f"Generation failed: {e}")
            return False
        except Exception as e:
            logger.error(f"generation_error: recipient={str(recipient_id)[:8]}... {e}", exc_info=True)
            self._mark_failed(campaign_id, recipient_id, f"Generation failed: {e}")
            return False

        now = datetime.utcnow()
        fields = {
            "generated_message": text,
            "generated_at": now,
            "error_message": None,
            "failure_stage": None,
        }
        target = RecipientStatus.AWAITING_REVIEW
        if campaign.get("auto_approve"):
            target = RecipientStatus.APPROVED
            fields.update({"approved_at": now, "reviewed_by": "auto"})

        doc = Recipient.transition(
            recipient_id, [RecipientStatus.GENERATING], target, fields, inc={"times_generated": 1}
        )
        if not doc:
            # Skipped or cancelled while the AI call was in flight
            logger.info(f"generation_discarded: recipient={str(recipient_id)[:8]}... left generating")
            return False
        if doc.get("times_generated") == 1:
            Campaign.increment(campaign_id, generated_count=1)
        logger.info(
            f"recipient_generated: {str(recipient_id)[:8]}... "
            f"contact={Contact.display_name(contact)!r} -> {target}"
        )
        return True

    @staticmethod
    def _mark_failed(campaign_id, recipient_id, error: str):
        doc = Recipient.transition(
            recipient_id,
            [RecipientStatus.GENERATING],
            RecipientStatus.FAILED,
            {"error_message": error, "failure_stage": FailureStage.GENERATION},
        )
        if doc:
            Campaign.increment(campaign_id, generation_failed_count=1)
            logger.warning(f"recipient_generation_failed: {str(recipient_id)[:8]}... {error[:200]}")

    # ── Operator actions ──────────────────────────────────────────────

    async def preview(self, campaign_id, contact_id) -> str:
        """Draft a message for one contact without touching any recipient row."""
        campaign = Campaign.get(campaign_id)
        if not campaign:
            raise NotFound("campaign", campaign_id)
        contact = Contact.get(contact_id)
        if not contact:
            raise NotFound("contact", contact_id)
        return await self._call_generator(self.generator.generate, campaign["prompt"], contact)

    async def regenerate(self, recipient_id) -> Dict:
        """
        Send a recipient back to pending with its draft cleared. Leaving
        `failed` gives back the failure it was counted under.
        """
        recipient = Recipient.get(recipient_id)
        if not recipient:
            raise NotFound("recipient", recipient_id)
        campaign = Campaign.get(recipient["campaign_id"])
        if not campaign:
            raise NotFound("campaign", recipient["campaign_id"])
        if campaign["status"] in CampaignStatus.TERMINAL:
            raise InvalidTransition("recipient of campaign", campaign["status"], "regenerate")

        status = recipient["status"]
        if status not in REGENERATABLE_STATUSES:
            raise InvalidTransition("recipient", status, "regenerate")

        doc = Recipient.transition(
            recipient_id,
            [status],
            RecipientStatus.PENDING,
            {
                "generated_message": None,
                "generated_at": None,
                "reviewed_message": None,
                "reviewed_by": None,
                "approved_at": None,
                "error_message": None,
                "failure_stage": None,
                "scheduled_at": None,
            },
        )
        if not doc:
            current = Recipient.get(recipient_id) or {}
            raise InvalidTransition("recipient", current.get("status", "unknown"), "regenerate")

        if status == RecipientStatus.FAILED:
            if recipient.get("failure_stage") == FailureStage.DISPATCH:
                Campaign.increment(campaign["_id"], failed_count=-1)
            else:
                Campaign.increment(campaign["_id"], generation_failed_count=-1)

        logger.info(f"recipient_regenerate: {str(recipient_id)[:8]}... {status} -> pending")
        if campaign["status"] in GENERATABLE_STATUSES:
            self.spawn_batch(campaign["_id"], batch_size=1)
        return doc

    # ── Replenishment ─────────────────────────────────────────────────

    async def replenish(self, campaign_id) -> Dict:
        """Top the review queue (awaiting_review + approved) up to QUEUE_BUFFER_SIZE."""
        counts = Recipient.count_by_status(campaign_id)
        queued = (
            counts.get(RecipientStatus.AWAITING_REVIEW, 0)
            + counts.get(RecipientStatus.APPROVED, 0)
            + counts.get(RecipientStatus.GENERATING, 0)
        )
        pending = counts.get(RecipientStatus.PENDING, 0)
        to_generate = min(config.QUEUE_BUFFER_SIZE - queued, pending)
        if to_generate <= 0:
            return _batch_result(remaining=pending)
        return await self.generate_batch(campaign_id, batch_size=to_generate)

    def _spawn(self, campaign_id, coro_factory: Callable) -> Optional[asyncio.Task]:
        key = str(campaign_id)
        existing = self._tasks.get(key)
        if existing and not existing.done():
            return existing

        task = asyncio.create_task(coro_factory(), name=f"generation:{key[:8]}")
        self._tasks[key] = task

        def _done(t: asyncio.Task):
            if self._tasks.get(key) is t:
                self._tasks.pop(key, None)
            if not t.cancelled() and t.exception():
                logger.error(f"generation_task_failed: campaign={key[:8]}... {t.exception()}")

        task.add_done_callback(_done)
        return task

    def spawn_batch(self, campaign_id, batch_size: int = None) -> Optional[asyncio.Task]:
        """Run generate_batch in the background (at most one task per campaign in this process)."""
        return self._spawn(campaign_id, lambda: self.generate_batch(campaign_id, batch_size))

    def spawn_replenish(self, campaign_id) -> Optional[asyncio.Task]:
        return self._spawn(campaign_id, lambda: self.replenish(campaign_id))

    async def drain(self, timeout: float = None):
        """Wait for background generation tasks started by this scheduler."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)

    async def cancel_all(self):
        """Cancel unfinished batches; their recipients stay 'generating' for the recovery sweep."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    @staticmethod
    async def _sleep_or_shutdown(event: asyncio.Event, seconds: float):
        """Sleep for `seconds`, or return early if shutdown is signaled."""
        try:
            await asyncio.wait_for(event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run_continuous(self, shutdown_event: asyncio.Event):
        """
        Every GENERATION_INTERVAL_SECONDS, replenish every draft, scheduled
        and running campaign so reviewers always have a queue to work on.
        """
        logger.info("continuous_generation_started")
        while not shutdown_event.is_set():
            try:
                campaigns = Campaign.find_by_status(GENERATABLE_STATUSES)
                for campaign in campaigns:
                    if shutdown_event.is_set():
                        break
                    await self.replenish(campaign["_id"])
            except asyncio.CancelledError:
                logger.info("continuous_generation_cancelled")
                break
            except Exception as e:
                logger.error(f"continuous_generation_error: {e}", exc_info=True)

            await self._sleep_or_shutdown(shutdown_event, config.GENERATION_INTERVAL_SECONDS)

        logger.info("continuous_generation_stopped")
