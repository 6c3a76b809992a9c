"""
Review Gate — operator approve / edit / skip and queue listing.

Dispatch always prefers reviewed_message (the operator's override) over
generated_message.
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from blast.aggregator import StatusAggregator
from blast.errors import InvalidTransition, NotFound, ValidationError
from database import (
    Campaign,
    CampaignStatus,
    Contact,
    Recipient,
    RecipientStatus,
)

logger = logging.getLogger("blast.review")

EDITABLE_STATUSES = (RecipientStatus.AWAITING_REVIEW, RecipientStatus.APPROVED)
SKIPPABLE_STATUSES = (
    RecipientStatus.PENDING,
    RecipientStatus.GENERATING,
    RecipientStatus.AWAITING_REVIEW,
    RecipientStatus.APPROVED,
)


def final_text(recipient: Dict) -> Optional[str]:
    """The text that will actually be sent."""
    return recipient.get("reviewed_message") or recipient.get("generated_message")


class ReviewGate:

    def __init__(self, aggregator: StatusAggregator = None):
        self.aggregator = aggregator or StatusAggregator()

    @staticmethod
    def _get(recipient_id) -> Dict:
        recipient = Recipient.get(recipient_id)
        if not recipient:
            raise NotFound("recipient", recipient_id)
        return recipient

    def approve(self, recipient_id, override_text: str = None, reviewer: str = None) -> Dict:
        recipient = self._get(recipient_id)
        if recipient["status"] != RecipientStatus.AWAITING_REVIEW:
            raise InvalidTransition("recipient", recipient["status"], "approve")

        fields = {"approved_at": datetime.utcnow(), "reviewed_by": reviewer}
        if override_text is not None:
            if not override_text.strip():
                raise ValidationError("Override text cannot be empty")
            fields["reviewed_message"] = override_text.strip()

        doc = Recipient.transition(
            recipient_id, [RecipientStatus.AWAITING_REVIEW], RecipientStatus.APPROVED, fields
        )
        if not doc:
            raise InvalidTransition("recipient", self._get(recipient_id)["status"], "approve")
        logger.info(f"recipient_approved: {str(recipient_id)[:8]}... by={reviewer} override={override_text is not None}")
        return doc

    def edit(self, recipient_id, new_text: str) -> Dict:
        """Replace the text to send; status is unchanged."""
        if not new_text or not new_text.strip():
            raise ValidationError("Message text cannot be empty")
        recipient = self._get(recipient_id)
        if recipient["status"] not in EDITABLE_STATUSES:
            raise InvalidTransition("recipient", recipient["status"], "edit")

        doc = Recipient.update_open(recipient_id, EDITABLE_STATUSES, {"reviewed_message": new_text.strip()})
        if not doc:
            raise InvalidTransition("recipient", self._get(recipient_id)["status"], "edit")
        logger.info(f"recipient_edited: {str(recipient_id)[:8]}...")
        return doc

    def skip(self, recipient_id) -> Dict:
        """
        Terminal; counts neither as sent nor failed. Not allowed once a send
        is in flight.
        """
        recipient = self._get(recipient_id)
        if recipient["status"] == RecipientStatus.SENDING:
            raise InvalidTransition(
                "recipient", RecipientStatus.SENDING, "skip",
                reason="a send is in flight and its outcome decides the final status",
            )
        if recipient["status"] not in SKIPPABLE_STATUSES:
            raise InvalidTransition("recipient", recipient["status"], "skip")

        doc = Recipient.transition(recipient_id, SKIPPABLE_STATUSES, RecipientStatus.SKIPPED)
        if not doc:
            raise InvalidTransition("recipient", self._get(recipient_id)["status"], "skip")
        logger.info(f"recipient_skipped: {str(recipient_id)[:8]}...")

        campaign = Campaign.get(recipient["campaign_id"])
        if campaign and campaign["status"] == CampaignStatus.RUNNING:
            self.aggregator.complete_if_finished(campaign["_id"])
        return doc

    def list_queue(self, campaign_id) -> Dict:
        """
        Recipients still in the pipeline (pending, generating, awaiting
        review, approved) with contact names, plus per-status counts.
        """
        if not Campaign.get(campaign_id):
            raise NotFound("campaign", campaign_id)

        recipients = Recipient.list_for_campaign(campaign_id, RecipientStatus.QUEUE)
        contacts = Contact.get_many(r["contact_id"] for r in recipients)
        for r in recipients:
            contact = contacts.get(r["contact_id"])
            r["contact_name"] = Contact.display_name(contact)
            r["final_message"] = final_text(r)

        by_status = Recipient.count_by_status(campaign_id)
        counts = {status: by_status.get(status, 0) for status in RecipientStatus.QUEUE}
        return {"recipients": recipients, "counts": counts}
