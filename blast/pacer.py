"""
Delivery Pacer — one asyncio task per running campaign.

Each iteration re-reads the campaign row, so pause/cancel (from this
process or any other) take effect before the next dispatch without ever
interrupting a send in flight. The gap between dispatches is a random
draw in [min_interval_seconds, max_interval_seconds] measured from the
persisted last_dispatch_at, so pause/resume or a restart cannot squeeze
two sends together. last_dispatch_at is stamped after every attempt
(sent, failed or rate-limited), so the gap also follows unsuccessful
dispatches.

A pacer started while the previous one for the same campaign is still
finishing its send waits for that task first; within a process a
campaign never has two sends in flight.

Claiming is an atomic approved -> sending update; two pacers for the same
campaign (even in different processes) can never send the same recipient.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

import config
from blast.aggregator import StatusAggregator
from blast.channel import ChannelAdapter, build_template, send_result
from blast.pacing import (
    get_random_interval,
    is_within_sending_hours,
    seconds_until,
    seconds_until_sending_window,
)
from blast.review import final_text
from database import (
    Campaign,
    CampaignStatus,
    Contact,
    Conversation,
    FailureStage,
    Recipient,
    RecipientStatus,
)

logger = logging.getLogger("blast.pacer")

# Longest single sleep while waiting for the sending window
MAX_WINDOW_SLEEP_SECONDS = 300


class DeliveryPacer:
    """
    Lifecycle:
        pacer = DeliveryPacer(campaign_id, channel)
        await pacer.run()      # returns when the campaign stops running
        pacer.request_stop()   # shortens sleeps; an in-flight send still finishes
    """

    def __init__(self, campaign_id, channel: ChannelAdapter,
                 aggregator: StatusAggregator = None, generation=None,
                 predecessor: Optional[asyncio.Task] = None):
        self.campaign_id = campaign_id
        self.channel = channel
        self.aggregator = aggregator or StatusAggregator()
        self.generation = generation
        # A pacer still finishing its last send for the same campaign
        self.predecessor = predecessor
        self._stop = asyncio.Event()
        self._next_gap: Optional[int] = None
        self.dispatched = 0

    @property
    def short_id(self) -> str:
        return str(self.campaign_id)[:8]

    def request_stop(self):
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def _sleep_or_stop(self, seconds: float):
        """Sleep for `seconds`, or return early if a stop is requested."""
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self):
        if self.predecessor is not None and not self.predecessor.done():
            logger.info(f"pacer_waiting_for_previous: campaign={self.short_id}...")
            await asyncio.wait([self.predecessor])
        self.predecessor = None
        logger.info(f"pacer_started: campaign={self.short_id}...")
        while not self._stop.is_set():
            try:
                if not await self._step():
                    break
            except asyncio.CancelledError:
                logger.info(f"pacer_cancelled: campaign={self.short_id}...")
                raise
            except Exception as e:
                logger.error(f"pacer_error: campaign={self.short_id}... {e}", exc_info=True)
                await self._sleep_or_stop(config.PACER_IDLE_SECONDS)
        logger.info(f"pacer_stopped: campaign={self.short_id}... dispatched={self.dispatched}")

    async def _step(self) -> bool:
        """One pass of the loop. Returns False when the pacer should exit."""
        campaign = Campaign.get(self.campaign_id)
        if not campaign or campaign["status"] != CampaignStatus.RUNNING:
            return False

        if not is_within_sending_hours():
            wait = seconds_until_sending_window()
            logger.info(f"outside_sending_hours: campaign={self.short_id}... window opens in {wait}s")
            await self._sleep_or_stop(min(wait, MAX_WINDOW_SLEEP_SECONDS))
            return True

        if not await self.channel.is_ready():
            logger.warning(f"channel_not_ready: campaign={self.short_id}... idling")
            await self._sleep_or_stop(config.PACER_IDLE_SECONDS)
            return True

        if not Recipient.has_due_approved(self.campaign_id):
            return await self._idle(campaign)

        # Honour the gap since the last dispatch (persisted, survives restarts)
        last_dispatch = campaign.get("last_dispatch_at")
        if last_dispatch is not None:
            if self._next_gap is None:
                self._next_gap = get_random_interval(
                    campaign["min_interval_seconds"], campaign["max_interval_seconds"]
                )
            remaining = seconds_until(last_dispatch + timedelta(seconds=self._next_gap))
            if remaining > 0:
                logger.debug(f"pacer_waiting: campaign={self.short_id}... {remaining:.0f}s")
                await self._sleep_or_stop(remaining)
                return True

        recipient = Recipient.claim_next_approved(self.campaign_id)
        if not recipient:
            return True

        await self.dispatch(campaign, recipient)
        self._next_gap = None
        self.dispatched += 1

        self.aggregator.complete_if_finished(self.campaign_id)
        return True

    async def _idle(self, campaign: Dict) -> bool:
        if not Recipient.has_open(self.campaign_id):
            self.aggregator.complete_if_finished(self.campaign_id)
            return False

        if self.generation is not None and Recipient.count(
            self.campaign_id, status=RecipientStatus.PENDING
        ):
            self.generation.spawn_replenish(self.campaign_id)

        idle = config.PACER_IDLE_SECONDS
        deferred = Recipient.next_deferred_at(self.campaign_id)
        if deferred is not None:
            idle = max(min(idle, seconds_until(deferred)), 1)
        await self._sleep_or_stop(idle)
        return True

    async def dispatch(self, campaign: Dict, recipient: Dict) -> Dict:
        """
        Deliver one claimed (sending) recipient and record the outcome.
        Never raises for delivery problems; they become a failed recipient.
        """
        campaign_id = campaign["_id"]
        recipient_id = recipient["_id"]
        text = final_text(recipient)
        contact = Contact.get(recipient["contact_id"])

        if not contact:
            result = send_result(False, error="Contact not found")
        elif not Contact.destination(contact):
            result = send_result(False, error="Contact has no phone number or platform id")
        elif not text:
            result = send_result(False, error="No message text to send")
        else:
            template = build_template(campaign.get("template_id"), Contact.display_name(contact), text)
            try:
                result = await asyncio.wait_for(
                    self.channel.send(Contact.destination(contact), text, template),
                    timeout=config.CHANNEL_TIMEOUT_SECONDS,
                )
            except asyncio.TimeoutError:
                result = send_result(False, error=f"Channel send timed out after {config.CHANNEL_TIMEOUT_SECONDS}s")
            except Exception as e:
                logger.error(f"channel_send_exception: recipient={str(recipient_id)[:8]}... {e}", exc_info=True)
                result = send_result(False, error=str(e))

        now = datetime.utcnow()
        Campaign.mark_dispatched(campaign_id, now)

        if result["success"]:
            self._record_sent(campaign_id, recipient, contact, text, result, now)
        elif result.get("rate_limited"):
            retry_after = result.get("retry_after") or 60
            Recipient.transition(
                recipient_id,
                [RecipientStatus.SENDING],
                RecipientStatus.APPROVED,
                {
                    "error_message": f"Rate limited by channel; retrying after {retry_after}s",
                    "scheduled_at": now + timedelta(seconds=retry_after),
                },
            )
            # Cancelled mid-send: nothing will ever drain the deferral
            current = Campaign.get(campaign_id)
            if not current or current["status"] in CampaignStatus.TERMINAL:
                Recipient.transition(recipient_id, [RecipientStatus.APPROVED], RecipientStatus.SKIPPED)
                logger.info(f"recipient_deferral_dropped: {str(recipient_id)[:8]}... campaign ended")
            else:
                logger.warning(f"recipient_deferred: {str(recipient_id)[:8]}... retry_after={retry_after}s")
        else:
            doc = Recipient.transition(
                recipient_id,
                [RecipientStatus.SENDING],
                RecipientStatus.FAILED,
                {"error_message": result.get("error"), "failure_stage": FailureStage.DISPATCH},
                inc={"retry_count": 1},
            )
            if doc:
                Campaign.increment(campaign_id, failed_count=1)
            logger.error(f"recipient_send_failed: {str(recipient_id)[:8]}... {result.get('error')}")
        return result

    def _record_sent(self, campaign_id, recipient: Dict, contact: Dict, text: str, result: Dict, now: datetime):
        recipient_id = recipient["_id"]
        doc = Recipient.transition(
            recipient_id,
            [RecipientStatus.SENDING],
            RecipientStatus.SENT,
            {
                "sent_at": now,
                "external_message_id": result.get("message_id"),
                "error_message": None,
                "failure_stage": None,
                "scheduled_at": None,
            },
        )
        if not doc:
            logger.warning(f"recipient_sent_untracked: {str(recipient_id)[:8]}... no longer sending")
            return
        Campaign.increment(campaign_id, sent_count=1)
        logger.info(
            f"recipient_sent: {str(recipient_id)[:8]}... to={Contact.display_name(contact)!r} "
            f"message_id={result.get('message_id')}"
        )

        # The message is out; a failure to log it must not change the outcome
        try:
            conversation_id = recipient.get("conversation_id") or Conversation.get_or_create(
                contact["_id"], channel=self.channel.name
            )
            Conversation.record_outbound(conversation_id, text, result.get("message_id"), campaign_id)
            Recipient.update_open(recipient_id, [RecipientStatus.SENT], {"conversation_id": conversation_id})
        except Exception as e:
            logger.error(f"conversation_log_failed: recipient={str(recipient_id)[:8]}... {e}", exc_info=True)


class PacerRegistry:
    """At most one pacer task per campaign in this process."""

    def __init__(self, channel: ChannelAdapter, aggregator: StatusAggregator = None, generation=None):
        self.channel = channel
        self.aggregator = aggregator or StatusAggregator()
        self.generation = generation
        self._pacers: Dict[str, DeliveryPacer] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        # Replaced pacers still finishing a send
        self._retired: Set[asyncio.Task] = set()

    def is_running(self, campaign_id) -> bool:
        task = self._tasks.get(str(campaign_id))
        return task is not None and not task.done()

    def running_ids(self) -> List[str]:
        return [cid for cid, task in self._tasks.items() if not task.done()]

    def _all_tasks(self) -> List[asyncio.Task]:
        return list(self._tasks.values()) + list(self._retired)

    def ensure(self, campaign_id) -> asyncio.Task:
        """
        Start a pacer for the campaign unless one is already running. A
        pacer winding down after pause is replaced, and its successor waits
        for it to exit before dispatching.
        """
        key = str(campaign_id)
        if self.is_running(key) and not self._pacers[key].stopping:
            return self._tasks[key]

        previous = self._tasks.get(key) if self.is_running(key) else None
        if previous is not None:
            self._retired.add(previous)
            previous.add_done_callback(self._retired.discard)

        pacer = DeliveryPacer(key, self.channel, self.aggregator, self.generation, predecessor=previous)
        task = asyncio.create_task(pacer.run(), name=f"pacer:{key[:8]}")
        self._pacers[key] = pacer
        self._tasks[key] = task

        def _done(t: asyncio.Task):
            if self._tasks.get(key) is t:
                self._tasks.pop(key, None)
                self._pacers.pop(key, None)
            if not t.cancelled() and t.exception():
                logger.error(f"pacer_task_failed: campaign={key[:8]}... {t.exception()}")

        task.add_done_callback(_done)
        return task

    async def stop(self, campaign_id, wait: bool = True, timeout: float = None) -> bool:
        """
        Ask the campaign's pacer to stop. With wait=True, block until it has
        exited (its in-flight send, if any, finishes first). Returns False
        if the wait timed out.
        """
        key = str(campaign_id)
        pacer = self._pacers.get(key)
        task = self._tasks.get(key)
        if pacer is None or task is None:
            return True
        pacer.request_stop()
        if not wait:
            return True
        done, _ = await asyncio.wait([task], timeout=timeout)
        if not done:
            logger.warning(f"pacer_stop_timeout: campaign={key[:8]}...")
            return False
        return True

    async def stop_all(self, timeout: float = None):
        for pacer in list(self._pacers.values()):
            pacer.request_stop()
        tasks = [t for t in self._all_tasks() if not t.done()]
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)

    async def cancel_all(self):
        """Cancel pacers that did not stop in time. Their sends stay 'sending' for the recovery sweep."""
        tasks = [t for t in self._all_tasks() if not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
