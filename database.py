import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient

import config

logger = logging.getLogger("blast.database")

# connect=False defers the connection until the first operation
client = MongoClient(config.DATABASE_URL, connect=False)
db = client.get_database(config.DATABASE_NAME)

# Collections
campaigns_collection = db["blast_campaigns"]
recipients_collection = db["blast_recipients"]
contacts_collection = db["contacts"]
conversations_collection = db["conversations"]
messages_collection = db["messages"]
heartbeat_collection = db["heartbeat"]


def ensure_indexes():
    """Create the indexes the engine relies on. Safe to call repeatedly."""
    campaigns_collection.create_index("status")
    recipients_collection.create_index(
        [("campaign_id", ASCENDING), ("contact_id", ASCENDING)], unique=True
    )
    recipients_collection.create_index([("campaign_id", ASCENDING), ("status", ASCENDING)])
    recipients_collection.create_index(
        [("campaign_id", ASCENDING), ("status", ASCENDING), ("approved_at", ASCENDING)]
    )
    conversations_collection.create_index("contact_id")
    messages_collection.create_index("conversation_id")


def as_id(value: Any) -> Any:
    """Coerce a hex string into an ObjectId; anything else is used as-is."""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return value


def _short(value: Any) -> str:
    return str(value)[:8]


class CampaignStatus:
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    ALL = (DRAFT, SCHEDULED, RUNNING, PAUSED, COMPLETED, CANCELLED)
    LIVE = (SCHEDULED, RUNNING, PAUSED)
    TERMINAL = (COMPLETED, CANCELLED)

    TRANSITIONS = {
        DRAFT: (SCHEDULED, RUNNING, CANCELLED),
        SCHEDULED: (DRAFT, RUNNING, CANCELLED),
        RUNNING: (PAUSED, CANCELLED, COMPLETED),
        PAUSED: (RUNNING, CANCELLED),
        COMPLETED: (),
        CANCELLED: (),
    }

    @classmethod
    def can_transition(cls, current: str, target: str) -> bool:
        return target in cls.TRANSITIONS.get(current, ())

    @classmethod
    def sources_for(cls, target: str) -> List[str]:
        """Every status from which `target` is reachable."""
        return [s for s, targets in cls.TRANSITIONS.items() if target in targets]


class RecipientStatus:
    PENDING = "pending"
    GENERATING = "generating"
    AWAITING_REVIEW = "awaiting_review"
    APPROVED = "approved"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"

    ALL = (PENDING, GENERATING, AWAITING_REVIEW, APPROVED, SENDING, SENT, FAILED, SKIPPED)
    # Work still owed to the recipient; a campaign completes when none remain
    OPEN = (PENDING, GENERATING, AWAITING_REVIEW, APPROVED, SENDING)
    # Shown in the review queue
    QUEUE = (PENDING, GENERATING, AWAITING_REVIEW, APPROVED)
    # Never leave these
    FINAL = (SENT, SKIPPED)

    TRANSITIONS = {
        PENDING: (GENERATING, SKIPPED),
        GENERATING: (AWAITING_REVIEW, APPROVED, FAILED, PENDING, SKIPPED),
        AWAITING_REVIEW: (APPROVED, PENDING, SKIPPED),
        APPROVED: (SENDING, PENDING, SKIPPED),
        SENDING: (SENT, FAILED, APPROVED),
        FAILED: (PENDING,),
        SENT: (),
        SKIPPED: (),
    }

    @classmethod
    def can_transition(cls, current: str, target: str) -> bool:
        return target in cls.TRANSITIONS.get(current, ())


class FailureStage:
    GENERATION = "generation"
    DISPATCH = "dispatch"


class Campaign:
    """Blast campaign rows. Every status write is guarded on the current status."""

    @staticmethod
    def create(
        name: str,
        prompt: str,
        min_interval_seconds: int,
        max_interval_seconds: int,
        template_id: str = None,
        created_by: str = None,
        auto_approve: bool = False,
    ) -> str:
        now = datetime.utcnow()
        doc = {
            "name": name,
            "prompt": prompt,
            "template_id": template_id,
            "min_interval_seconds": min_interval_seconds,
            "max_interval_seconds": max_interval_seconds,
            "auto_approve": auto_approve,
            "status": CampaignStatus.DRAFT,
            "total_recipients": 0,
            "generated_count": 0,
            "sent_count": 0,
            "failed_count": 0,
            "generation_failed_count": 0,
            "is_generating": False,
            "generating_since": None,
            "created_by": created_by,
            "created_at": now,
            "updated_at": now,
            "scheduled_at": None,
            "started_at": None,
            "completed_at": None,
            "last_dispatch_at": None,
        }
        result = campaigns_collection.insert_one(doc)
        campaign_id = str(result.inserted_id)
        logger.info(f"campaign_created: {_short(campaign_id)}... name={name!r}")
        return campaign_id

    @staticmethod
    def get(campaign_id) -> Optional[Dict]:
        return campaigns_collection.find_one({"_id": as_id(campaign_id)})

    @staticmethod
    def list_all() -> List[Dict]:
        return list(campaigns_collection.find().sort("created_at", DESCENDING))

    @staticmethod
    def find_by_status(statuses: Iterable[str]) -> List[Dict]:
        return list(
            campaigns_collection.find({"status": {"$in": list(statuses)}}).sort("created_at", ASCENDING)
        )

    @staticmethod
    def due_scheduled(now: datetime = None) -> List[Dict]:
        now = now or datetime.utcnow()
        return list(
            campaigns_collection.find(
                {"status": CampaignStatus.SCHEDULED, "scheduled_at": {"$lte": now}}
            )
        )

    @staticmethod
    def transition(campaign_id, from_statuses: Iterable[str], to_status: str, **fields) -> Optional[Dict]:
        """
        Move a campaign to `to_status` only if it is currently in one of
        `from_statuses`. Returns the updated document, or None when the
        guard did not match.
        """
        sources = [s for s in from_statuses if CampaignStatus.can_transition(s, to_status)]
        if not sources:
            return None
        fields.update({"status": to_status, "updated_at": datetime.utcnow()})
        doc = campaigns_collection.find_one_and_update(
            {"_id": as_id(campaign_id), "status": {"$in": sources}},
            {"$set": fields},
            return_document=True,
        )
        if doc:
            logger.info(f"campaign_transition: {_short(campaign_id)}... -> {to_status}")
        return doc

    @staticmethod
    def update_fields(campaign_id, allowed_statuses: Iterable[str], fields: Dict) -> Optional[Dict]:
        fields = dict(fields, updated_at=datetime.utcnow())
        return campaigns_collection.find_one_and_update(
            {"_id": as_id(campaign_id), "status": {"$in": list(allowed_statuses)}},
            {"$set": fields},
            return_document=True,
        )

    @staticmethod
    def increment(campaign_id, **counters):
        """Apply counter deltas, e.g. increment(cid, sent_count=1)."""
        if not counters:
            return
        campaigns_collection.update_one(
            {"_id": as_id(campaign_id)},
            {"$inc": counters, "$set": {"updated_at": datetime.utcnow()}},
        )

    @staticmethod
    def set_counters(campaign_id, counters: Dict[str, int]):
        campaigns_collection.update_one(
            {"_id": as_id(campaign_id)},
            {"$set": dict(counters, updated_at=datetime.utcnow())},
        )

    @staticmethod
    def mark_dispatched(campaign_id, at: datetime = None):
        campaigns_collection.update_one(
            {"_id": as_id(campaign_id)},
            {"$set": {"last_dispatch_at": at or datetime.utcnow()}},
        )

    @staticmethod
    def acquire_generation_lease(campaign_id, ttl_seconds: int) -> bool:
        """
        Atomically take the single-flight generation flag. A flag older
        than `ttl_seconds` is considered abandoned and is taken over.
        """
        now = datetime.utcnow()
        doc = campaigns_collection.find_one_and_update(
            {
                "_id": as_id(campaign_id),
                "$or": [
                    {"is_generating": {"$ne": True}},
                    {"generating_since": {"$lt": now - timedelta(seconds=ttl_seconds)}},
                ],
            },
            {"$set": {"is_generating": True, "generating_since": now}},
        )
        return doc is not None

    @staticmethod
    def release_generation_lease(campaign_id):
        campaigns_collection.update_one(
            {"_id": as_id(campaign_id)},
            {"$set": {"is_generating": False, "generating_since": None}},
        )

    @staticmethod
    def clear_generation_leases() -> int:
        result = campaigns_collection.update_many(
            {"is_generating": True},
            {"$set": {"is_generating": False, "generating_since": None}},
        )
        if result.modified_count:
            logger.info(f"Cleared {result.modified_count} stale generation flags")
        return result.modified_count

    @staticmethod
    def delete(campaign_id, allowed_statuses: Iterable[str]) -> bool:
        """Delete the campaign and its recipients if it is in an allowed status."""
        result = campaigns_collection.delete_one(
            {"_id": as_id(campaign_id), "status": {"$in": list(allowed_statuses)}}
        )
        if not result.deleted_count:
            return False
        removed = Recipient.delete_for_campaign(campaign_id)
        logger.info(f"campaign_deleted: {_short(campaign_id)}... recipients={removed}")
        return True


class Recipient:
    """Per-contact rows of a blast campaign."""

    @staticmethod
    def create_many(campaign_id, contact_ids: Iterable) -> int:
        """Insert a pending row per contact not yet on the campaign. Returns how many were added."""
        cid = as_id(campaign_id)
        existing = {
            r["contact_id"]
            for r in recipients_collection.find({"campaign_id": cid}, {"contact_id": 1})
        }
        now = datetime.utcnow()
        docs = []
        for contact_id in contact_ids:
            contact_id = as_id(contact_id)
            if contact_id in existing:
                continue
            existing.add(contact_id)
            docs.append({
                "campaign_id": cid,
                "contact_id": contact_id,
                "conversation_id": None,
                "status": RecipientStatus.PENDING,
                "generated_message": None,
                "generated_at": None,
                "times_generated": 0,
                "reviewed_message": None,
                "reviewed_by": None,
                "approved_at": None,
                "error_message": None,
                "failure_stage": None,
                "retry_count": 0,
                "scheduled_at": None,
                "sent_at": None,
                "external_message_id": None,
                "created_at": now,
                "updated_at": now,
            })
        if docs:
            recipients_collection.insert_many(docs)
        return len(docs)

    @staticmethod
    def get(recipient_id) -> Optional[Dict]:
        return recipients_collection.find_one({"_id": as_id(recipient_id)})

    @staticmethod
    def list_for_campaign(campaign_id, statuses: Iterable[str] = None) -> List[Dict]:
        query = {"campaign_id": as_id(campaign_id)}
        if statuses is not None:
            query["status"] = {"$in": list(statuses)}
        return list(recipients_collection.find(query).sort("created_at", ASCENDING))

    @staticmethod
    def count_by_status(campaign_id) -> Dict[str, int]:
        pipeline = [
            {"$match": {"campaign_id": as_id(campaign_id)}},
            {"$group": {"_id": "$status", "count": {"$sum": 1}}},
        ]
        return {r["_id"]: r["count"] for r in recipients_collection.aggregate(pipeline)}

    @staticmethod
    def count(campaign_id, **filters) -> int:
        query = {"campaign_id": as_id(campaign_id)}
        query.update(filters)
        return recipients_collection.count_documents(query)

    @staticmethod
    def has_open(campaign_id) -> bool:
        return recipients_collection.find_one(
            {"campaign_id": as_id(campaign_id), "status": {"$in": list(RecipientStatus.OPEN)}}
        ) is not None

    @staticmethod
    def transition(
        recipient_id,
        from_statuses: Iterable[str],
        to_status: str,
        set_fields: Dict = None,
        inc: Dict = None,
    ) -> Optional[Dict]:
        """
        Guarded status write. Returns the updated document, or None when
        the recipient was no longer in one of `from_statuses`. Sources the
        transition table does not allow are dropped from the guard.
        """
        sources = [s for s in from_statuses if RecipientStatus.can_transition(s, to_status)]
        if not sources:
            return None
        fields = dict(set_fields or {})
        fields.update({"status": to_status, "updated_at": datetime.utcnow()})
        update = {"$set": fields}
        if inc:
            update["$inc"] = inc
        doc = recipients_collection.find_one_and_update(
            {"_id": as_id(recipient_id), "status": {"$in": sources}},
            update,
            return_document=True,
        )
        if doc:
            logger.debug(f"recipient_transition: {_short(recipient_id)}... -> {to_status}")
        return doc

    @staticmethod
    def update_open(recipient_id, allowed_statuses: Iterable[str], fields: Dict) -> Optional[Dict]:
        """Set fields without changing status, guarded on the current status."""
        fields = dict(fields, updated_at=datetime.utcnow())
        return recipients_collection.find_one_and_update(
            {"_id": as_id(recipient_id), "status": {"$in": list(allowed_statuses)}},
            {"$set": fields},
            return_document=True,
        )

    @staticmethod
    def claim_pending(campaign_id) -> Optional[Dict]:
        """Atomically move the oldest pending recipient to generating."""
        return recipients_collection.find_one_and_update(
            {"campaign_id": as_id(campaign_id), "status": RecipientStatus.PENDING},
            {"$set": {"status": RecipientStatus.GENERATING, "updated_at": datetime.utcnow()}},
            sort=[("created_at", ASCENDING), ("_id", ASCENDING)],
            return_document=True,
        )

    @staticmethod
    def _due_approved_query(campaign_id, now: datetime) -> Dict:
        return {
            "campaign_id": as_id(campaign_id),
            "status": RecipientStatus.APPROVED,
            "$or": [{"scheduled_at": None}, {"scheduled_at": {"$lte": now}}],
        }

    @staticmethod
    def has_due_approved(campaign_id, now: datetime = None) -> bool:
        now = now or datetime.utcnow()
        return recipients_collection.find_one(Recipient._due_approved_query(campaign_id, now)) is not None

    @staticmethod
    def next_deferred_at(campaign_id) -> Optional[datetime]:
        """Earliest scheduled_at among approved recipients that are not yet due."""
        doc = recipients_collection.find_one(
            {
                "campaign_id": as_id(campaign_id),
                "status": RecipientStatus.APPROVED,
                "scheduled_at": {"$ne": None},
            },
            sort=[("scheduled_at", ASCENDING)],
        )
        return doc["scheduled_at"] if doc else None

    @staticmethod
    def claim_next_approved(campaign_id, now: datetime = None) -> Optional[Dict]:
        """
        Atomically claim the oldest due approved recipient (approved -> sending).
        Two pacers racing for the same row cannot both win.
        """
        now = now or datetime.utcnow()
        doc = recipients_collection.find_one_and_update(
            Recipient._due_approved_query(campaign_id, now),
            {"$set": {"status": RecipientStatus.SENDING, "sending_at": now, "updated_at": now}},
            sort=[("approved_at", ASCENDING), ("_id", ASCENDING)],
            return_document=True,
        )
        if doc:
            logger.info(f"recipient_claimed: {_short(doc['_id'])}... campaign={_short(campaign_id)}...")
        return doc

    @staticmethod
    def skip_open(campaign_id) -> int:
        """Skip every recipient of the campaign that is not terminal and not mid-send."""
        result = recipients_collection.update_many(
            {"campaign_id": as_id(campaign_id), "status": {"$in": list(RecipientStatus.QUEUE)}},
            {"$set": {"status": RecipientStatus.SKIPPED, "updated_at": datetime.utcnow()}},
        )
        return result.modified_count

    @staticmethod
    def reset_stuck_generating() -> int:
        result = recipients_collection.update_many(
            {"status": RecipientStatus.GENERATING},
            {"$set": {"status": RecipientStatus.PENDING, "updated_at": datetime.utcnow()}},
        )
        if result.modified_count:
            logger.info(f"Returned {result.modified_count} interrupted generations to pending")
        return result.modified_count

    @staticmethod
    def reset_stuck_sending(note: str) -> int:
        """
        Return interrupted sends to approved. Delivery is unconfirmed, so
        they are never assumed sent.
        """
        result = recipients_collection.update_many(
            {"status": RecipientStatus.SENDING},
            {
                "$set": {
                    "status": RecipientStatus.APPROVED,
                    "error_message": note,
                    "updated_at": datetime.utcnow(),
                }
            },
        )
        if result.modified_count:
            logger.warning(f"Returned {result.modified_count} interrupted sends to approved")
        return result.modified_count

    @staticmethod
    def close_out(campaign_ids: Iterable, note: str) -> int:
        """
        Settle work left open in campaigns that have already ended. Queued
        recipients are skipped; unconfirmed sends become dispatch failures
        (never assumed sent, never sent again).
        """
        ids = [as_id(c) for c in campaign_ids]
        if not ids:
            return 0
        now = datetime.utcnow()
        skipped = recipients_collection.update_many(
            {"campaign_id": {"$in": ids}, "status": {"$in": list(RecipientStatus.QUEUE)}},
            {"$set": {"status": RecipientStatus.SKIPPED, "updated_at": now}},
        ).modified_count
        failed = recipients_collection.update_many(
            {"campaign_id": {"$in": ids}, "status": RecipientStatus.SENDING},
            {
                "$set": {
                    "status": RecipientStatus.FAILED,
                    "error_message": note,
                    "failure_stage": FailureStage.DISPATCH,
                    "updated_at": now,
                },
                "$inc": {"retry_count": 1},
            },
        ).modified_count
        if skipped or failed:
            logger.warning(f"Closed out ended campaigns: skipped={skipped} unconfirmed_sends={failed}")
        return skipped + failed

    @staticmethod
    def sent_messages(campaign_id, limit: int = 50) -> List[str]:
        """Texts already delivered for a campaign, newest first."""
        cursor = recipients_collection.find(
            {"campaign_id": as_id(campaign_id), "status": RecipientStatus.SENT},
            {"generated_message": 1, "reviewed_message": 1},
        ).sort("sent_at", DESCENDING).limit(limit)
        return [r.get("reviewed_message") or r.get("generated_message") or "" for r in cursor]

    @staticmethod
    def delete_for_campaign(campaign_id) -> int:
        return recipients_collection.delete_many({"campaign_id": as_id(campaign_id)}).deleted_count


class Contact:
    """Read-only access to helpdesk contacts."""

    @staticmethod
    def get(contact_id) -> Optional[Dict]:
        return contacts_collection.find_one({"_id": as_id(contact_id)})

    @staticmethod
    def get_many(contact_ids: Iterable) -> Dict[Any, Dict]:
        ids = [as_id(c) for c in contact_ids]
        if not ids:
            return {}
        return {c["_id"]: c for c in contacts_collection.find({"_id": {"$in": ids}})}

    @staticmethod
    def existing_ids(contact_ids: Iterable) -> List:
        return list(Contact.get_many(contact_ids).keys())

    @staticmethod
    def display_name(contact: Optional[Dict]) -> str:
        if not contact:
            return "Unknown"
        return contact.get("name") or contact.get("phone_number") or "Unknown"

    @staticmethod
    def destination(contact: Dict) -> Optional[str]:
        """Channel address: the platform id when known, else the phone number."""
        return contact.get("platform_id") or contact.get("phone_number")


class Conversation:
    """Helpdesk conversations touched by blast sends."""

    @staticmethod
    def get_or_create(contact_id, channel: str = None):
        """Return the id of the contact's open conversation, creating one if needed."""
        contact_id = as_id(contact_id)
        now = datetime.utcnow()
        doc = conversations_collection.find_one_and_update(
            {"contact_id": contact_id, "status": {"$ne": "closed"}},
            {"$set": {"last_message_at": now, "updated_at": now}},
        )
        if doc:
            return doc["_id"]
        result = conversations_collection.insert_one({
            "contact_id": contact_id,
            "channel": channel,
            "status": "open",
            "created_at": now,
            "updated_at": now,
            "last_message_at": now,
        })
        logger.info(f"conversation_created: {_short(result.inserted_id)}... contact={_short(contact_id)}...")
        return result.inserted_id

    @staticmethod
    def record_outbound(conversation_id, text: str, external_message_id: str = None, campaign_id=None) -> str:
        result = messages_collection.insert_one({
            "conversation_id": as_id(conversation_id),
            "direction": "outbound",
            "content": text,
            "external_message_id": external_message_id,
            "blast_campaign_id": as_id(campaign_id) if campaign_id else None,
            "created_at": datetime.utcnow(),
        })
        return str(result.inserted_id)


class Heartbeat:
    """Liveness document for health monitoring."""

    @staticmethod
    def beat(name: str, **fields):
        fields["last_heartbeat"] = datetime.utcnow()
        heartbeat_collection.update_one({"_id": name}, {"$set": fields}, upsert=True)

    @staticmethod
    def stopped(name: str):
        heartbeat_collection.update_one(
            {"_id": name},
            {"$set": {"status": "stopped", "stopped_at": datetime.utcnow()}},
            upsert=True,
        )

    @staticmethod
    def get(name: str) -> Optional[Dict]:
        return heartbeat_collection.find_one({"_id": name})
