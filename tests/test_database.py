"""
Unit tests for database.py

Tests cover:
- Campaign / recipient transition tables
- Guarded transitions (wrong source status is a no-op)
- Atomic claims (pending -> generating, approved -> sending)
- Generation lease (single flight, TTL takeover)
- Recovery helpers
"""

import os
import sys
import unittest
from datetime import datetime, timedelta
from unittest.mock import patch

from bson import ObjectId

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from blast_fixtures import MongoTestCase  # noqa: E402


class TestTransitionTables(unittest.TestCase):
    """The status graphs themselves."""

    def test_campaign_terminal_states_have_no_exits(self):
        from database import CampaignStatus

        for status in CampaignStatus.TERMINAL:
            for target in CampaignStatus.ALL:
                self.assertFalse(CampaignStatus.can_transition(status, target))

    def test_campaign_legal_moves(self):
        from database import CampaignStatus as S

        self.assertTrue(S.can_transition(S.DRAFT, S.RUNNING))
        self.assertTrue(S.can_transition(S.PAUSED, S.RUNNING))
        self.assertTrue(S.can_transition(S.RUNNING, S.COMPLETED))
        self.assertFalse(S.can_transition(S.DRAFT, S.PAUSED))
        self.assertFalse(S.can_transition(S.PAUSED, S.COMPLETED))
        self.assertFalse(S.can_transition(S.DRAFT, S.COMPLETED))

    def test_cancel_sources(self):
        from database import CampaignStatus as S

        self.assertEqual(
            sorted(S.sources_for(S.CANCELLED)),
            sorted([S.DRAFT, S.SCHEDULED, S.RUNNING, S.PAUSED]),
        )

    def test_recipient_final_states_have_no_exits(self):
        from database import RecipientStatus as R

        for status in R.FINAL:
            self.assertEqual(R.TRANSITIONS[status], ())

    def test_recipient_sending_cannot_be_skipped(self):
        from database import RecipientStatus as R

        self.assertFalse(R.can_transition(R.SENDING, R.SKIPPED))
        self.assertTrue(R.can_transition(R.SENDING, R.SENT))
        self.assertTrue(R.can_transition(R.FAILED, R.PENDING))


class TestAsId(unittest.TestCase):

    def test_hex_string_becomes_object_id(self):
        from database import as_id

        oid = ObjectId()
        self.assertEqual(as_id(str(oid)), oid)
        self.assertIs(as_id(oid), oid)

    def test_other_values_pass_through(self):
        from database import as_id

        self.assertEqual(as_id("contact-1"), "contact-1")
        self.assertEqual(as_id(42), 42)


class TestQueries(unittest.TestCase):
    """Query shapes, checked against a mocked collection."""

    @patch("database.recipients_collection")
    def test_claim_next_approved_filters_due_and_sorts_by_approval(self, mock_coll):
        from database import Recipient, RecipientStatus

        mock_coll.find_one_and_update.return_value = None
        cid = ObjectId()
        now = datetime(2026, 1, 1, 12, 0, 0)

        Recipient.claim_next_approved(str(cid), now=now)

        query, update = mock_coll.find_one_and_update.call_args[0]
        kwargs = mock_coll.find_one_and_update.call_args[1]
        self.assertEqual(query["campaign_id"], cid)
        self.assertEqual(query["status"], RecipientStatus.APPROVED)
        self.assertIn({"scheduled_at": {"$lte": now}}, query["$or"])
        self.assertEqual(update["$set"]["status"], RecipientStatus.SENDING)
        self.assertEqual(kwargs["sort"][0], ("approved_at", 1))

    @patch("database.campaigns_collection")
    def test_transition_with_no_legal_source_skips_the_write(self, mock_coll):
        from database import Campaign, CampaignStatus

        result = Campaign.transition(ObjectId(), [CampaignStatus.COMPLETED], CampaignStatus.RUNNING)

        self.assertIsNone(result)
        mock_coll.find_one_and_update.assert_not_called()

    @patch("database.campaigns_collection")
    def test_transition_drops_illegal_sources_from_guard(self, mock_coll):
        from database import Campaign, CampaignStatus

        mock_coll.find_one_and_update.return_value = {"status": "cancelled"}
        Campaign.transition(
            ObjectId(), [CampaignStatus.RUNNING, CampaignStatus.COMPLETED], CampaignStatus.CANCELLED
        )

        query = mock_coll.find_one_and_update.call_args[0][0]
        self.assertEqual(query["status"], {"$in": [CampaignStatus.RUNNING]})


class TestCampaignStore(MongoTestCase):

    def _campaign(self):
        from database import Campaign
        return Campaign.create("Promo", "Tell them about the new menu", 1, 2)

    def test_create_defaults(self):
        campaign = self.campaign(self._campaign())

        self.assertEqual(campaign["status"], "draft")
        self.assertEqual(campaign["total_recipients"], 0)
        self.assertFalse(campaign["auto_approve"])
        self.assertIsNone(campaign["last_dispatch_at"])

    def test_guarded_transition(self):
        from database import Campaign, CampaignStatus

        cid = self._campaign()
        self.assertIsNone(Campaign.transition(cid, [CampaignStatus.RUNNING], CampaignStatus.PAUSED))
        doc = Campaign.transition(cid, [CampaignStatus.DRAFT], CampaignStatus.RUNNING)
        self.assertEqual(doc["status"], CampaignStatus.RUNNING)
        self.assertEqual(self.campaign(cid)["status"], CampaignStatus.RUNNING)

    def test_generation_lease_is_single_flight(self):
        from database import Campaign

        cid = self._campaign()
        self.assertTrue(Campaign.acquire_generation_lease(cid, 900))
        self.assertFalse(Campaign.acquire_generation_lease(cid, 900))

        Campaign.release_generation_lease(cid)
        self.assertTrue(Campaign.acquire_generation_lease(cid, 900))

    def test_stale_generation_lease_is_taken_over(self):
        from database import Campaign

        cid = self._campaign()
        self.set_campaign(
            cid, is_generating=True, generating_since=datetime.utcnow() - timedelta(hours=1)
        )
        self.assertTrue(Campaign.acquire_generation_lease(cid, 900))

    def test_clear_generation_leases(self):
        from database import Campaign

        first, second = self._campaign(), self._campaign()
        Campaign.acquire_generation_lease(first, 900)
        Campaign.acquire_generation_lease(second, 900)

        self.assertEqual(Campaign.clear_generation_leases(), 2)
        self.assertFalse(self.campaign(first)["is_generating"])

    def test_delete_cascades_to_recipients(self):
        from database import Campaign, Recipient

        cid = self._campaign()
        Recipient.create_many(cid, self.add_contacts("Ana", "Budi"))

        self.assertFalse(Campaign.delete(cid, ["completed"]))
        self.assertTrue(Campaign.delete(cid, ["draft"]))
        self.assertIsNone(self.campaign(cid))
        self.assertEqual(self.recipients(cid), [])

    def test_due_scheduled(self):
        from database import Campaign

        due = self._campaign()
        later = self._campaign()
        self.set_campaign(due, status="scheduled", scheduled_at=datetime.utcnow() - timedelta(minutes=1))
        self.set_campaign(later, status="scheduled", scheduled_at=datetime.utcnow() + timedelta(hours=1))

        self.assertEqual([str(c["_id"]) for c in Campaign.due_scheduled()], [due])


class TestRecipientStore(MongoTestCase):

    def setUp(self):
        super().setUp()
        from database import Campaign
        self.cid = Campaign.create("Promo", "prompt", 0, 0)

    def test_create_many_skips_contacts_already_present(self):
        from database import Recipient

        ana, budi = self.add_contacts("Ana", "Budi")
        self.assertEqual(Recipient.create_many(self.cid, [ana, budi, ana]), 2)
        self.assertEqual(Recipient.create_many(self.cid, [budi]), 0)
        self.assertEqual(len(self.recipients(self.cid)), 2)

    def test_claim_pending_takes_oldest_once(self):
        from database import Recipient

        Recipient.create_many(self.cid, self.add_contacts("Ana", "Budi"))
        first = Recipient.claim_pending(self.cid)
        second = Recipient.claim_pending(self.cid)

        self.assertEqual(first["status"], "generating")
        self.assertNotEqual(first["_id"], second["_id"])
        self.assertIsNone(Recipient.claim_pending(self.cid))

    def test_claim_next_approved_honours_deferral(self):
        from database import Recipient

        Recipient.create_many(self.cid, self.add_contacts("Ana"))
        rid = self.recipients(self.cid)[0]["_id"]
        later = datetime.utcnow() + timedelta(minutes=5)
        self.set_recipient(rid, status="approved", approved_at=datetime.utcnow(), scheduled_at=later)

        self.assertFalse(Recipient.has_due_approved(self.cid))
        self.assertIsNone(Recipient.claim_next_approved(self.cid))
        self.assertLess(abs((Recipient.next_deferred_at(self.cid) - later).total_seconds()), 0.01)

        claimed = Recipient.claim_next_approved(self.cid, now=later + timedelta(seconds=1))
        self.assertEqual(claimed["status"], "sending")
        self.assertIsNone(Recipient.claim_next_approved(self.cid, now=later + timedelta(seconds=1)))

    def test_transition_guard_and_inc(self):
        from database import Recipient, RecipientStatus

        Recipient.create_many(self.cid, self.add_contacts("Ana"))
        rid = self.recipients(self.cid)[0]["_id"]

        self.assertIsNone(Recipient.transition(rid, [RecipientStatus.APPROVED], RecipientStatus.SENDING))
        Recipient.claim_pending(self.cid)
        doc = Recipient.transition(
            rid, [RecipientStatus.GENERATING], RecipientStatus.AWAITING_REVIEW,
            {"generated_message": "hi"}, inc={"times_generated": 1},
        )
        self.assertEqual(doc["status"], RecipientStatus.AWAITING_REVIEW)
        self.assertEqual(doc["times_generated"], 1)

    def test_skip_open_leaves_sending_and_terminal_alone(self):
        from database import Recipient

        Recipient.create_many(self.cid, self.add_contacts("A", "B", "C", "D"))
        rows = self.recipients(self.cid)
        self.set_recipient(rows[1]["_id"], status="sending")
        self.set_recipient(rows[2]["_id"], status="sent")
        self.set_recipient(rows[3]["_id"], status="approved")

        self.assertEqual(Recipient.skip_open(self.cid), 2)
        self.assertEqual(self.statuses(self.cid), ["sending", "sent", "skipped", "skipped"])

    def test_reset_stuck_rows(self):
        from database import Recipient

        Recipient.create_many(self.cid, self.add_contacts("A", "B"))
        rows = self.recipients(self.cid)
        self.set_recipient(rows[0]["_id"], status="generating")
        self.set_recipient(rows[1]["_id"], status="sending")

        self.assertEqual(Recipient.reset_stuck_generating(), 1)
        self.assertEqual(Recipient.reset_stuck_sending("interrupted"), 1)
        self.assertEqual(self.statuses(self.cid), ["approved", "pending"])
        self.assertEqual(Recipient.get(rows[1]["_id"])["error_message"], "interrupted")

    def test_count_by_status(self):
        from database import Recipient

        Recipient.create_many(self.cid, self.add_contacts("A", "B", "C"))
        self.set_recipient(self.recipients(self.cid)[0]["_id"], status="sent")

        self.assertEqual(Recipient.count_by_status(self.cid), {"pending": 2, "sent": 1})

    def test_sent_messages_prefer_reviewed_text(self):
        from database import Recipient

        Recipient.create_many(self.cid, self.add_contacts("A", "B"))
        rows = self.recipients(self.cid)
        self.set_recipient(rows[0]["_id"], status="sent", generated_message="draft", reviewed_message="edited",
                           sent_at=datetime.utcnow())
        self.set_recipient(rows[1]["_id"], status="approved", generated_message="not yet")

        self.assertEqual(Recipient.sent_messages(self.cid), ["edited"])


class TestContactAndConversation(MongoTestCase):

    def test_destination_prefers_platform_id(self):
        from database import Contact

        self.assertEqual(Contact.destination({"platform_id": "wa:1", "phone_number": "+62"}), "wa:1")
        self.assertEqual(Contact.destination({"phone_number": "+62"}), "+62")
        self.assertIsNone(Contact.destination({}))

    def test_display_name(self):
        from database import Contact

        self.assertEqual(Contact.display_name(None), "Unknown")
        self.assertEqual(Contact.display_name({"phone_number": "+62"}), "+62")

    def test_conversation_reused_until_closed(self):
        from database import Conversation

        contact_id = self.add_contact("Ana")
        first = Conversation.get_or_create(contact_id, channel="test")
        self.assertEqual(Conversation.get_or_create(contact_id), first)

        self.db["conversations"].update_one({"_id": first}, {"$set": {"status": "closed"}})
        self.assertNotEqual(Conversation.get_or_create(contact_id), first)

    def test_record_outbound(self):
        from database import Conversation

        conv = Conversation.get_or_create(self.add_contact("Ana"))
        Conversation.record_outbound(conv, "Hello", "msg-1", str(ObjectId()))

        message = self.db["messages"].find_one({"conversation_id": conv})
        self.assertEqual(message["direction"], "outbound")
        self.assertEqual(message["external_message_id"], "msg-1")


class TestHeartbeat(MongoTestCase):

    def test_beat_then_stopped(self):
        from database import Heartbeat

        Heartbeat.beat("blast_engine", pid=123, status="running")
        self.assertEqual(Heartbeat.get("blast_engine")["pid"], 123)

        Heartbeat.stopped("blast_engine")
        doc = Heartbeat.get("blast_engine")
        self.assertEqual(doc["status"], "stopped")
        self.assertIn("stopped_at", doc)


if __name__ == "__main__":
    unittest.main()
