"""
Unit tests for blast/campaign_manager.py

Tests cover:
- create / add_recipients / update validation
- start / pause / resume / cancel transitions
- schedule / unschedule / activate_due_scheduled
- delete cascade
"""

import asyncio
import os
import sys
import unittest
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from blast_fixtures import MongoTestCase, run_async  # noqa: E402


class ManagerTestCase(MongoTestCase):

    def setUp(self):
        super().setUp()
        from blast.campaign_manager import CampaignStateManager

        patcher = patch.object(CampaignStateManager, "in_flight_poll_seconds", 0.01)
        patcher.start()
        self.addCleanup(patcher.stop)

        self.manager = CampaignStateManager()
        self.contacts = self.add_contacts("Ana", "Budi", "Citra")

    def create(self, contacts=None, **kwargs):
        kwargs.setdefault("min_interval", 0)
        kwargs.setdefault("max_interval", 0)
        return run_async(self.manager.create(
            "Menu launch", "Tell them about the new menu",
            self.contacts if contacts is None else contacts, **kwargs
        ))


class TestCreate(ManagerTestCase):

    def test_create_draft_with_pending_recipients(self):
        campaign = self.create(template_id="HX1", created_by="ops")

        self.assertEqual(campaign["status"], "draft")
        self.assertEqual(campaign["total_recipients"], 3)
        self.assertEqual(campaign["template_id"], "HX1")
        self.assertEqual(self.statuses(campaign["_id"]), ["pending"] * 3)

    def test_duplicate_contacts_collapse(self):
        ana = self.contacts[0]
        campaign = self.create([ana, str(ana), ana])

        self.assertEqual(campaign["total_recipients"], 1)

    def test_defaults_intervals_from_config(self):
        with patch("config.DEFAULT_MIN_INTERVAL_SECONDS", 120), patch("config.DEFAULT_MAX_INTERVAL_SECONDS", 180):
            campaign = run_async(self.manager.create("n", "p", self.contacts))

        self.assertEqual(campaign["min_interval_seconds"], 120)
        self.assertEqual(campaign["max_interval_seconds"], 180)

    def test_rejects_bad_input_without_writing(self):
        from blast.errors import ValidationError

        bad_calls = [
            lambda: self.create([]),
            lambda: self.create(min_interval=10, max_interval=5),
            lambda: self.create(min_interval=-1),
            lambda: self.create(min_interval=1.5, max_interval=2),
            lambda: self.create(["000000000000000000000000"]),
            lambda: run_async(self.manager.create("", "prompt", self.contacts)),
            lambda: run_async(self.manager.create("name", "  ", self.contacts)),
        ]
        for call in bad_calls:
            with self.assertRaises(ValidationError):
                call()
        self.assertEqual(self.db["blast_campaigns"].count_documents({}), 0)
        self.assertEqual(self.db["blast_recipients"].count_documents({}), 0)

    def test_equal_intervals_allowed(self):
        campaign = self.create(min_interval=5, max_interval=5)
        self.assertEqual(campaign["min_interval_seconds"], 5)


class TestAddRecipients(ManagerTestCase):

    def test_adds_only_new_contacts(self):
        campaign = self.create(self.contacts[:2])
        dewi = self.add_contact("Dewi")

        result = run_async(self.manager.add_recipients(campaign["_id"], [self.contacts[1], self.contacts[2], dewi]))

        self.assertEqual(result["added"], 2)
        self.assertEqual(result["campaign"]["total_recipients"], 4)
        self.assertCountersConsistent(campaign["_id"])

    def test_only_in_draft(self):
        from blast.errors import InvalidTransition

        campaign = self.create()
        run_async(self.manager.start(campaign["_id"]))

        with self.assertRaises(InvalidTransition):
            run_async(self.manager.add_recipients(campaign["_id"], [self.add_contact("Dewi")]))


class TestUpdate(ManagerTestCase):

    def test_update_draft(self):
        campaign = self.create()
        doc = run_async(self.manager.update(campaign["_id"], name="Renamed", max_interval=30))

        self.assertEqual(doc["name"], "Renamed")
        self.assertEqual(doc["max_interval_seconds"], 30)

    def test_update_validates_against_existing_interval(self):
        from blast.errors import ValidationError

        campaign = self.create(min_interval=10, max_interval=20)
        with self.assertRaises(ValidationError):
            run_async(self.manager.update(campaign["_id"], max_interval=5))

    def test_update_rejected_while_running(self):
        from blast.errors import InvalidTransition

        campaign = self.create()
        run_async(self.manager.start(campaign["_id"]))
        with self.assertRaises(InvalidTransition):
            run_async(self.manager.update(campaign["_id"], name="x"))


class TestLifecycle(ManagerTestCase):

    def test_start_pause_resume(self):
        campaign = self.create()
        cid = campaign["_id"]

        started = run_async(self.manager.start(cid))
        self.assertEqual(started["status"], "running")
        self.assertIsNotNone(started["started_at"])

        paused = run_async(self.manager.pause(cid))
        self.assertEqual(paused["status"], "paused")

        resumed = run_async(self.manager.start(cid))
        self.assertEqual(resumed["status"], "running")
        self.assertEqual(resumed["started_at"], started["started_at"])

    def test_start_running_is_noop(self):
        cid = self.create()["_id"]
        run_async(self.manager.start(cid))

        again = run_async(self.manager.start(cid))
        self.assertEqual(again["status"], "running")

    def test_start_ensures_pacer_and_generation(self):
        from blast.campaign_manager import CampaignStateManager

        pacers, generation = MagicMock(), MagicMock()
        manager = CampaignStateManager(generation, pacers)
        cid = self.create()["_id"]

        run_async(manager.start(cid))

        pacers.ensure.assert_called_once_with(cid)
        generation.spawn_batch.assert_called_once_with(cid)

    def test_start_empty_campaign_rejected(self):
        from blast.errors import ValidationError

        cid = self.create()["_id"]
        self.db["blast_recipients"].delete_many({})
        self.set_campaign(cid, total_recipients=0)

        with self.assertRaises(ValidationError):
            run_async(self.manager.start(cid))
        self.assertEqual(self.campaign(cid)["status"], "draft")

    def test_illegal_transitions(self):
        from blast.errors import InvalidTransition

        cid = self.create()["_id"]
        with self.assertRaises(InvalidTransition):
            run_async(self.manager.pause(cid))

        run_async(self.manager.cancel(cid))
        for action in (self.manager.start, self.manager.pause, self.manager.cancel):
            with self.assertRaises(InvalidTransition):
                run_async(action(cid))
        self.assertEqual(self.campaign(cid)["status"], "cancelled")

    def test_unknown_campaign(self):
        from blast.errors import NotFound

        with self.assertRaises(NotFound):
            run_async(self.manager.start("000000000000000000000000"))


class TestCancel(ManagerTestCase):

    def test_cancel_skips_open_recipients(self):
        cid = self.create()["_id"]
        rows = self.recipients(cid)
        self.set_recipient(rows[0]["_id"], status="sent")
        self.set_recipient(rows[1]["_id"], status="approved")
        run_async(self.manager.start(cid))

        campaign = run_async(self.manager.cancel(cid))

        self.assertEqual(campaign["status"], "cancelled")
        self.assertIsNotNone(campaign["completed_at"])
        self.assertEqual(self.statuses(cid), ["sent", "skipped", "skipped"])

    def test_cancel_waits_for_in_flight_send(self):
        cid = self.create()["_id"]
        rows = self.recipients(cid)
        self.set_recipient(rows[0]["_id"], status="sending")
        run_async(self.manager.start(cid))

        async def finish_send_later():
            await asyncio.sleep(0.05)
            self.set_recipient(rows[0]["_id"], status="sent")

        async def go():
            finisher = asyncio.create_task(finish_send_later())
            campaign = await self.manager.cancel(cid)
            await finisher
            return campaign

        run_async(go())
        self.assertEqual(self.statuses(cid), ["sent", "skipped", "skipped"])

    def test_cancel_skips_send_deferred_while_waiting(self):
        cid = self.create()["_id"]
        rows = self.recipients(cid)
        self.set_recipient(rows[0]["_id"], status="sending")
        run_async(self.manager.start(cid))

        async def defer_send_later():
            await asyncio.sleep(0.05)
            self.set_recipient(rows[0]["_id"], status="approved")

        async def go():
            deferrer = asyncio.create_task(defer_send_later())
            await self.manager.cancel(cid)
            await deferrer

        run_async(go())
        self.assertEqual(self.statuses(cid), ["skipped", "skipped", "skipped"])

    def test_cancel_wait_is_bounded(self):
        cid = self.create()["_id"]
        self.set_recipient(self.recipients(cid)[0]["_id"], status="sending")
        run_async(self.manager.start(cid))

        with patch("config.CANCEL_WAIT_SECONDS", 0.05):
            campaign = run_async(self.manager.cancel(cid))

        self.assertEqual(campaign["status"], "cancelled")
        self.assertIn("sending", self.statuses(cid))


class TestSchedule(ManagerTestCase):

    def test_schedule_and_unschedule(self):
        cid = self.create()["_id"]
        at = datetime.utcnow() + timedelta(hours=1)

        doc = run_async(self.manager.schedule(cid, at))
        self.assertEqual(doc["status"], "scheduled")

        doc = run_async(self.manager.unschedule(cid))
        self.assertEqual(doc["status"], "draft")
        self.assertIsNone(doc["scheduled_at"])

    def test_activate_due_scheduled(self):
        due = self.create()["_id"]
        later = self.create()["_id"]
        run_async(self.manager.schedule(due, datetime.utcnow() - timedelta(seconds=1)))
        run_async(self.manager.schedule(later, datetime.utcnow() + timedelta(hours=1)))

        started = run_async(self.manager.activate_due_scheduled())

        self.assertEqual(started, [str(due)])
        self.assertEqual(self.campaign(due)["status"], "running")
        self.assertEqual(self.campaign(later)["status"], "scheduled")

    def test_schedule_requires_datetime(self):
        from blast.errors import ValidationError

        cid = self.create()["_id"]
        with self.assertRaises(ValidationError):
            run_async(self.manager.schedule(cid, "tomorrow"))


class TestDeleteAndRead(ManagerTestCase):

    def test_delete_draft(self):
        cid = self.create()["_id"]
        self.assertTrue(run_async(self.manager.delete(cid)))
        self.assertIsNone(self.campaign(cid))
        self.assertEqual(self.db["blast_recipients"].count_documents({}), 0)

    def test_delete_running_rejected(self):
        from blast.errors import InvalidTransition

        cid = self.create()["_id"]
        run_async(self.manager.start(cid))
        with self.assertRaises(InvalidTransition):
            run_async(self.manager.delete(cid))

    def test_get_includes_recipient_counts(self):
        cid = self.create()["_id"]
        campaign = run_async(self.manager.get(cid))
        self.assertEqual(campaign["recipient_counts"], {"pending": 3})

    def test_list_newest_first(self):
        first = self.create()["_id"]
        second = self.create()["_id"]
        self.set_campaign(second, created_at=datetime.utcnow() + timedelta(seconds=1))

        ids = [c["_id"] for c in run_async(self.manager.list())]
        self.assertEqual(ids, [second, first])


if __name__ == "__main__":
    unittest.main()
