"""
Status Aggregator — campaign counters, completion and crash recovery.

Counters on the campaign row are a cache: they are bumped inline right
after each successful guarded recipient write, and can always be rebuilt
from the recipient rows by reconcile().
"""

import logging
from datetime import datetime
from typing import Dict

from database import (
    Campaign,
    CampaignStatus,
    FailureStage,
    Recipient,
    RecipientStatus,
)

logger = logging.getLogger("blast.aggregator")

INTERRUPTED_SEND_NOTE = "Interrupted while sending; delivery unconfirmed"

COUNTER_FIELDS = (
    "total_recipients",
    "generated_count",
    "sent_count",
    "failed_count",
    "generation_failed_count",
)


class StatusAggregator:

    def complete_if_finished(self, campaign_id) -> bool:
        """
        running -> completed once no recipient is pending, generating,
        awaiting review, approved or sending. Returns True if this call
        completed the campaign.
        """
        if Recipient.has_open(campaign_id):
            return False
        doc = Campaign.transition(
            campaign_id,
            [CampaignStatus.RUNNING],
            CampaignStatus.COMPLETED,
            completed_at=datetime.utcnow(),
        )
        if doc:
            logger.info(
                f"campaign_completed: {str(campaign_id)[:8]}... "
                f"sent={doc.get('sent_count', 0)} failed={doc.get('failed_count', 0)} "
                f"generation_failed={doc.get('generation_failed_count', 0)}"
            )
        return doc is not None

    @staticmethod
    def count_from_recipients(campaign_id) -> Dict[str, int]:
        """Ground-truth counters computed from recipient rows."""
        return {
            "total_recipients": Recipient.count(campaign_id),
            "generated_count": Recipient.count(campaign_id, times_generated={"$gt": 0}),
            "sent_count": Recipient.count(campaign_id, status=RecipientStatus.SENT),
            "failed_count": Recipient.count(
                campaign_id, status=RecipientStatus.FAILED, failure_stage=FailureStage.DISPATCH
            ),
            "generation_failed_count": Recipient.count(
                campaign_id, status=RecipientStatus.FAILED, failure_stage=FailureStage.GENERATION
            ),
        }

    def reconcile(self, campaign_id) -> Dict[str, Dict[str, int]]:
        """
        Recount from recipient rows and overwrite drifted counters.
        Returns {field: {"was": old, "now": new}} for each correction.
        """
        campaign = Campaign.get(campaign_id)
        if not campaign:
            return {}
        actual = self.count_from_recipients(campaign_id)
        corrections = {
            field: {"was": campaign.get(field, 0), "now": value}
            for field, value in actual.items()
            if campaign.get(field, 0) != value
        }
        if corrections:
            Campaign.set_counters(campaign_id, {f: c["now"] for f, c in corrections.items()})
            for field, change in corrections.items():
                logger.warning(
                    f"counter_drift_corrected: campaign={str(campaign_id)[:8]}... "
                    f"{field} {change['was']} -> {change['now']}"
                )
        return corrections

    def reconcile_all(self) -> Dict[str, Dict]:
        results = {}
        for campaign in Campaign.list_all():
            corrections = self.reconcile(campaign["_id"])
            if corrections:
                results[str(campaign["_id"])] = corrections
            if campaign.get("status") == CampaignStatus.RUNNING:
                self.complete_if_finished(campaign["_id"])
        return results

    def recovery_sweep(self) -> Dict[str, int]:
        """
        Startup repair after a crash:
        1. Clear every generation flag.
        2. Close out open work in completed/cancelled campaigns (queued ->
           skipped, sending -> failed with a note).
        3. generating -> pending (the AI call was lost).
        4. sending -> approved with a note (delivery unconfirmed, never assumed sent).
        5. Reconcile all counters.
        """
        logger.info("── Recovery Sweep ──")
        ended = [c["_id"] for c in Campaign.find_by_status(CampaignStatus.TERMINAL)]
        summary = {
            "leases_cleared": Campaign.clear_generation_leases(),
            "ended_closed_out": Recipient.close_out(ended, INTERRUPTED_SEND_NOTE),
            "generating_reset": Recipient.reset_stuck_generating(),
            "sending_reset": Recipient.reset_stuck_sending(INTERRUPTED_SEND_NOTE),
        }
        summary["campaigns_corrected"] = len(self.reconcile_all())
        logger.info(
            f"recovery_sweep_done: leases={summary['leases_cleared']} ended={summary['ended_closed_out']} "
            f"generating={summary['generating_reset']} sending={summary['sending_reset']} "
            f"corrected={summary['campaigns_corrected']}"
        )
        return summary
