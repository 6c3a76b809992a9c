"""
Campaign State Manager — the operator façade for campaign lifecycles.

Enforces the campaign transition table and coordinates the generation
scheduler and the pacer registry. Validation and transition errors are
raised synchronously and leave state untouched.

When the manager runs without a pacer registry (e.g. the CLI), status
changes are still persisted; the engine's supervisor notices running
campaigns and starts their pacers.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import config
from blast.aggregator import StatusAggregator
from blast.errors import BlastError, InvalidTransition, NotFound, ValidationError
from database import (
    Campaign,
    CampaignStatus,
    Contact,
    Recipient,
    RecipientStatus,
    as_id,
)

logger = logging.getLogger("blast.campaign_manager")

DELETABLE_STATUSES = (CampaignStatus.DRAFT, CampaignStatus.COMPLETED, CampaignStatus.CANCELLED)
UPDATABLE_STATUSES = (CampaignStatus.DRAFT, CampaignStatus.PAUSED)


def _validate_intervals(min_interval, max_interval):
    for value in (min_interval, max_interval):
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise ValidationError(f"Intervals must be non-negative whole seconds, got {value!r}")
    if min_interval > max_interval:
        raise ValidationError(
            f"Minimum interval ({min_interval}s) cannot exceed maximum interval ({max_interval}s)"
        )


def _require_text(value: Optional[str], field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"Campaign {field} is required")
    return str(value).strip()


def _unique_ids(contact_ids: Iterable) -> List:
    """Normalise and de-duplicate, keeping first-seen order."""
    return list(dict.fromkeys(as_id(c) for c in contact_ids if c not in (None, "")))


class CampaignStateManager:

    # Poll period while cancel waits for in-flight sends
    in_flight_poll_seconds = 1.0

    def __init__(self, generation=None, pacers=None, aggregator: StatusAggregator = None):
        self.generation = generation
        self.pacers = pacers
        self.aggregator = aggregator or StatusAggregator()

    @staticmethod
    def _get(campaign_id) -> Dict:
        campaign = Campaign.get(campaign_id)
        if not campaign:
            raise NotFound("campaign", campaign_id)
        return campaign

    @staticmethod
    def _check_contacts(contact_ids: List):
        found = set(Contact.existing_ids(contact_ids))
        missing = [c for c in contact_ids if c not in found]
        if missing:
            shown = ", ".join(str(c) for c in missing[:5])
            raise ValidationError(f"Unknown contact ids: {shown}{' ...' if len(missing) > 5 else ''}")

    # ── Create / edit ─────────────────────────────────────────────────

    async def create(
        self,
        name: str,
        prompt: str,
        contact_ids: Iterable,
        min_interval: int = None,
        max_interval: int = None,
        template_id: str = None,
        created_by: str = None,
        auto_approve: bool = False,
    ) -> Dict:
        """Create a draft campaign with one pending recipient per distinct contact."""
        name = _require_text(name, "name")
        prompt = _require_text(prompt, "prompt")
        min_interval = config.DEFAULT_MIN_INTERVAL_SECONDS if min_interval is None else min_interval
        max_interval = config.DEFAULT_MAX_INTERVAL_SECONDS if max_interval is None else max_interval
        _validate_intervals(min_interval, max_interval)

        contact_ids = _unique_ids(contact_ids or [])
        if not contact_ids:
            raise ValidationError("At least one recipient is required")
        self._check_contacts(contact_ids)

        campaign_id = Campaign.create(
            name, prompt, min_interval, max_interval,
            template_id=template_id or None,
            created_by=created_by,
            auto_approve=auto_approve,
        )
        added = Recipient.create_many(campaign_id, contact_ids)
        Campaign.set_counters(campaign_id, {"total_recipients": added})
        logger.info(f"campaign_ready: {campaign_id[:8]}... recipients={added}")
        return self._get(campaign_id)

    async def add_recipients(self, campaign_id, contact_ids: Iterable) -> Dict:
        """Add contacts to a draft campaign. Contacts already on it are ignored."""
        campaign = self._get(campaign_id)
        if campaign["status"] != CampaignStatus.DRAFT:
            raise InvalidTransition("campaign", campaign["status"], "add recipients to")
        contact_ids = _unique_ids(contact_ids or [])
        if not contact_ids:
            raise ValidationError("At least one recipient is required")
        self._check_contacts(contact_ids)

        added = Recipient.create_many(campaign_id, contact_ids)
        if added:
            Campaign.increment(campaign_id, total_recipients=added)
        logger.info(f"recipients_added: campaign={str(campaign_id)[:8]}... added={added}")
        return {"added": added, "campaign": self._get(campaign_id)}

    async def update(
        self,
        campaign_id,
        name: str = None,
        prompt: str = None,
        template_id: str = None,
        min_interval: int = None,
        max_interval: int = None,
    ) -> Dict:
        """Edit a draft or paused campaign. Already generated messages are unaffected."""
        campaign = self._get(campaign_id)
        if campaign["status"] not in UPDATABLE_STATUSES:
            raise InvalidTransition("campaign", campaign["status"], "update")

        fields = {}
        if name is not None:
            fields["name"] = _require_text(name, "name")
        if prompt is not None:
            fields["prompt"] = _require_text(prompt, "prompt")
        if template_id is not None:
            fields["template_id"] = template_id or None
        if min_interval is not None or max_interval is not None:
            new_min = campaign["min_interval_seconds"] if min_interval is None else min_interval
            new_max = campaign["max_interval_seconds"] if max_interval is None else max_interval
            _validate_intervals(new_min, new_max)
            fields["min_interval_seconds"] = new_min
            fields["max_interval_seconds"] = new_max
        if not fields:
            return campaign

        doc = Campaign.update_fields(campaign_id, UPDATABLE_STATUSES, fields)
        if not doc:
            raise InvalidTransition("campaign", self._get(campaign_id)["status"], "update")
        logger.info(f"campaign_updated: {str(campaign_id)[:8]}... fields={sorted(fields)}")
        return doc

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def start(self, campaign_id) -> Dict:
        """
        draft / scheduled / paused -> running. Starting an already running
        campaign is a no-op success (its pacer is ensured).
        """
        campaign = self._get(campaign_id)
        status = campaign["status"]

        if status == CampaignStatus.RUNNING:
            self._ensure_workers(campaign)
            return campaign
        if not CampaignStatus.can_transition(status, CampaignStatus.RUNNING):
            raise InvalidTransition("campaign", status, "start")
        if campaign.get("total_recipients", 0) <= 0:
            raise ValidationError("Cannot start a campaign with no recipients")

        fields = {}
        if not campaign.get("started_at"):
            fields["started_at"] = datetime.utcnow()
        doc = Campaign.transition(campaign_id, [status], CampaignStatus.RUNNING, **fields)
        if not doc:
            current = self._get(campaign_id)
            if current["status"] == CampaignStatus.RUNNING:
                return current
            raise InvalidTransition("campaign", current["status"], "start")

        logger.info(f"campaign_started: {str(campaign_id)[:8]}... from={status}")
        self._ensure_workers(doc)
        return doc

    def _ensure_workers(self, campaign: Dict):
        campaign_id = campaign["_id"]
        if self.pacers is not None:
            self.pacers.ensure(campaign_id)
        if self.generation is not None and Recipient.count(campaign_id, status=RecipientStatus.PENDING):
            self.generation.spawn_batch(campaign_id)

    async def pause(self, campaign_id) -> Dict:
        """running -> paused. A send already in flight completes."""
        campaign = self._get(campaign_id)
        if campaign["status"] != CampaignStatus.RUNNING:
            raise InvalidTransition("campaign", campaign["status"], "pause")
        doc = Campaign.transition(campaign_id, [CampaignStatus.RUNNING], CampaignStatus.PAUSED)
        if not doc:
            raise InvalidTransition("campaign", self._get(campaign_id)["status"], "pause")
        if self.pacers is not None:
            await self.pacers.stop(campaign_id, wait=False)
        logger.info(f"campaign_paused: {str(campaign_id)[:8]}...")
        return doc

    async def cancel(self, campaign_id) -> Dict:
        """
        Cancel a live or draft campaign. Every recipient not yet terminal
        and not mid-send is skipped; a send in flight is allowed to finish
        (bounded by CANCEL_WAIT_SECONDS).
        """
        campaign = self._get(campaign_id)
        status = campaign["status"]
        if not CampaignStatus.can_transition(status, CampaignStatus.CANCELLED):
            raise InvalidTransition("campaign", status, "cancel")

        doc = Campaign.transition(
            campaign_id,
            CampaignStatus.sources_for(CampaignStatus.CANCELLED),
            CampaignStatus.CANCELLED,
            completed_at=datetime.utcnow(),
        )
        if not doc:
            raise InvalidTransition("campaign", self._get(campaign_id)["status"], "cancel")

        skipped = Recipient.skip_open(campaign_id)
        logger.info(f"campaign_cancelled: {str(campaign_id)[:8]}... skipped={skipped}")

        if self.pacers is not None:
            await self.pacers.stop(campaign_id, wait=True, timeout=config.CANCEL_WAIT_SECONDS)
        if await self._wait_for_in_flight(campaign_id, config.CANCEL_WAIT_SECONDS):
            # A deferred (rate-limited) send lands back in the queue
            late = Recipient.skip_open(campaign_id)
            if late:
                logger.info(f"campaign_cancel_late_skips: {str(campaign_id)[:8]}... skipped={late}")
        return self._get(campaign_id)

    async def _wait_for_in_flight(self, campaign_id, timeout: float) -> bool:
        """Wait until no recipient of the campaign is sending (any process)."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while Recipient.count(campaign_id, status=RecipientStatus.SENDING):
            if loop.time() >= deadline:
                logger.warning(f"cancel_in_flight_timeout: campaign={str(campaign_id)[:8]}...")
                return False
            await asyncio.sleep(self.in_flight_poll_seconds)
        return True

    async def delete(self, campaign_id) -> bool:
        """Delete a draft, completed or cancelled campaign together with its recipients."""
        campaign = self._get(campaign_id)
        if campaign["status"] not in DELETABLE_STATUSES:
            raise InvalidTransition("campaign", campaign["status"], "delete")
        if not Campaign.delete(campaign_id, DELETABLE_STATUSES):
            raise InvalidTransition("campaign", self._get(campaign_id)["status"], "delete")
        return True

    async def schedule(self, campaign_id, at: datetime) -> Dict:
        """draft -> scheduled; the engine starts it once `at` (UTC) has passed."""
        campaign = self._get(campaign_id)
        if campaign["status"] != CampaignStatus.DRAFT:
            raise InvalidTransition("campaign", campaign["status"], "schedule")
        if campaign.get("total_recipients", 0) <= 0:
            raise ValidationError("Cannot schedule a campaign with no recipients")
        if not isinstance(at, datetime):
            raise ValidationError("Schedule time must be a datetime")
        doc = Campaign.transition(
            campaign_id, [CampaignStatus.DRAFT], CampaignStatus.SCHEDULED, scheduled_at=at
        )
        if not doc:
            raise InvalidTransition("campaign", self._get(campaign_id)["status"], "schedule")
        logger.info(f"campaign_scheduled: {str(campaign_id)[:8]}... at={at.isoformat()}")
        return doc

    async def unschedule(self, campaign_id) -> Dict:
        campaign = self._get(campaign_id)
        if campaign["status"] != CampaignStatus.SCHEDULED:
            raise InvalidTransition("campaign", campaign["status"], "unschedule")
        doc = Campaign.transition(
            campaign_id, [CampaignStatus.SCHEDULED], CampaignStatus.DRAFT, scheduled_at=None
        )
        if not doc:
            raise InvalidTransition("campaign", self._get(campaign_id)["status"], "unschedule")
        return doc

    async def activate_due_scheduled(self) -> List[str]:
        """Start every scheduled campaign whose time has come."""
        started = []
        for campaign in Campaign.due_scheduled():
            try:
                await self.start(campaign["_id"])
                started.append(str(campaign["_id"]))
            except BlastError as e:
                logger.warning(f"scheduled_start_failed: campaign={str(campaign['_id'])[:8]}... {e}")
        return started

    # ── Read-only ─────────────────────────────────────────────────────

    async def get(self, campaign_id) -> Dict:
        campaign = self._get(campaign_id)
        campaign["recipient_counts"] = Recipient.count_by_status(campaign_id)
        return campaign

    async def list(self) -> List[Dict]:
        return Campaign.list_all()

    async def drain(self, timeout: float = None):
        """Wait for background generation started by this manager."""
        if self.generation is not None:
            await self.generation.drain(timeout)
