#!/usr/bin/env python3
"""
Blast Campaign Engine — operator CLI
====================================

Usage:
    python main.py create "Ramadan check-in" --prompt "..." --contacts 65f0...,65f1...
    python main.py list
    python main.py show <campaign_id>
    python main.py start <campaign_id>
    python main.py queue <campaign_id>
    python main.py approve <recipient_id> [--text "..."]
    python main.py engine [--dry-run]
"""

import argparse
import asyncio
import sys
from datetime import datetime

import pytz

import config
from blast.aggregator import StatusAggregator
from blast.campaign_manager import CampaignStateManager
from blast.errors import BlastError
from blast.generation import GenerationScheduler
from blast.review import ReviewGate, final_text
from database import Contact, RecipientStatus, ensure_indexes
from message_generator import GenerationError
from utils.logging_utils import setup_logging

STATUS_EMOJI = {
    "draft": "📝",
    "scheduled": "⏰",
    "running": "🟢",
    "paused": "⏸️",
    "completed": "✅",
    "cancelled": "🚫",
}


def _parse_contacts(value: str = None, path: str = None):
    ids = []
    if value:
        ids.extend(v.strip() for v in value.split(",") if v.strip())
    if path:
        with open(path) as f:
            ids.extend(line.strip() for line in f if line.strip() and not line.startswith("#"))
    return ids


def _parse_local_time(value: str) -> datetime:
    """'YYYY-MM-DD HH:MM' in TARGET_TIMEZONE -> naive UTC."""
    local = datetime.strptime(value, "%Y-%m-%d %H:%M")
    tz = pytz.timezone(config.TARGET_TIMEZONE)
    return tz.localize(local).astimezone(pytz.utc).replace(tzinfo=None)


def _print_campaign(c: dict, detailed: bool = False):
    emoji = STATUS_EMOJI.get(c["status"], "•")
    print(f"{emoji} {c['name']} [{c['status']}]")
    print(f"   ID: {c['_id']}")
    print(
        f"   Recipients: {c.get('total_recipients', 0)} | generated {c.get('generated_count', 0)} | "
        f"sent {c.get('sent_count', 0)} | failed {c.get('failed_count', 0)} | "
        f"generation failed {c.get('generation_failed_count', 0)}"
    )
    if not detailed:
        return
    print(f"   Interval: {c['min_interval_seconds']}-{c['max_interval_seconds']}s")
    print(f"   Auto-approve: {'yes' if c.get('auto_approve') else 'no'}")
    if c.get("template_id"):
        print(f"   Template: {c['template_id']}")
    for field in ("created_at", "scheduled_at", "started_at", "completed_at", "last_dispatch_at"):
        if c.get(field):
            print(f"   {field.replace('_', ' ').capitalize()}: {c[field]}")
    if c.get("is_generating"):
        print("   ⚙️  Generating messages...")
    counts = c.get("recipient_counts") or {}
    if counts:
        print("   By status: " + ", ".join(f"{s}={counts[s]}" for s in RecipientStatus.ALL if counts.get(s)))
    print(f"\n   Prompt:\n   {c['prompt']}")


# ── Campaign commands ────────────────────────────────────────────────

async def cmd_create(manager: CampaignStateManager, args):
    contacts = _parse_contacts(args.contacts, args.contacts_file)
    campaign = await manager.create(
        args.name,
        args.prompt,
        contacts,
        min_interval=args.min_interval,
        max_interval=args.max_interval,
        template_id=args.template,
        created_by=args.created_by,
        auto_approve=args.auto_approve,
    )
    print("\n✅ Campaign created!")
    _print_campaign(campaign)
    print("\n📨 Next steps:")
    print(f"   1. Draft messages: python main.py generate {campaign['_id']}")
    print(f"   2. Review:         python main.py queue {campaign['_id']}")
    print(f"   3. Start sending:  python main.py start {campaign['_id']}")


async def cmd_list(manager: CampaignStateManager, args):
    campaigns = await manager.list()
    if not campaigns:
        print("No campaigns yet.")
        return
    print(f"\n📋 Campaigns ({len(campaigns)}):\n")
    for c in campaigns:
        _print_campaign(c)
        print()


async def cmd_show(manager: CampaignStateManager, args):
    _print_campaign(await manager.get(args.campaign_id), detailed=True)


async def cmd_update(manager: CampaignStateManager, args):
    campaign = await manager.update(
        args.campaign_id,
        name=args.name,
        prompt=args.prompt,
        template_id=args.template,
        min_interval=args.min_interval,
        max_interval=args.max_interval,
    )
    print("✅ Campaign updated")
    _print_campaign(campaign, detailed=True)


async def cmd_delete(manager: CampaignStateManager, args):
    await manager.delete(args.campaign_id)
    print(f"🗑️  Campaign {args.campaign_id} deleted")


async def cmd_add_recipients(manager: CampaignStateManager, args):
    result = await manager.add_recipients(args.campaign_id, _parse_contacts(args.contacts, args.contacts_file))
    print(f"✅ Added {result['added']} recipient(s); total now {result['campaign']['total_recipients']}")


async def cmd_schedule(manager: CampaignStateManager, args):
    if args.clear:
        await manager.unschedule(args.campaign_id)
        print("✅ Schedule cleared, campaign is back to draft")
        return
    if not args.at:
        raise BlastError("--at is required (YYYY-MM-DD HH:MM)")
    campaign = await manager.schedule(args.campaign_id, _parse_local_time(args.at))
    print(f"⏰ Scheduled for {args.at} {config.TARGET_TIMEZONE} (UTC {campaign['scheduled_at']})")


async def cmd_start(manager: CampaignStateManager, args):
    campaign = await manager.start(args.campaign_id)
    print(f"🟢 Campaign '{campaign['name']}' is running")
    print("   The engine (python main.py engine) paces delivery.")


async def cmd_pause(manager: CampaignStateManager, args):
    campaign = await manager.pause(args.campaign_id)
    print(f"⏸️  Campaign '{campaign['name']}' paused")


async def cmd_cancel(manager: CampaignStateManager, args):
    campaign = await manager.cancel(args.campaign_id)
    print(f"🚫 Campaign '{campaign['name']}' cancelled")


# ── Review commands ──────────────────────────────────────────────────

async def cmd_queue(manager: CampaignStateManager, args):
    queue = ReviewGate().list_queue(args.campaign_id)
    counts = queue["counts"]
    print("\n📬 Queue: " + ", ".join(f"{s}={n}" for s, n in counts.items()))
    for r in queue["recipients"]:
        print(f"\n   [{r['status']}] {r['contact_name']}  (recipient {r['_id']})")
        text = r.get("final_message")
        if text:
            marker = "✏️ " if r.get("reviewed_message") else ""
            print(f"   {marker}{text}")
        if r.get("error_message"):
            print(f"   ⚠️  {r['error_message']}")


async def cmd_approve(manager: CampaignStateManager, args):
    doc = ReviewGate().approve(args.recipient_id, override_text=args.text, reviewer=args.reviewer)
    print(f"✅ Approved: {final_text(doc)}")


async def cmd_edit(manager: CampaignStateManager, args):
    ReviewGate().edit(args.recipient_id, args.text)
    print("✏️  Message updated")


async def cmd_skip(manager: CampaignStateManager, args):
    ReviewGate().skip(args.recipient_id)
    print("⏭️  Recipient skipped")


# ── Generation commands ──────────────────────────────────────────────

async def cmd_generate(manager: CampaignStateManager, args):
    result = await GenerationScheduler().generate_batch(args.campaign_id, args.batch)
    if result["busy"]:
        print("⚙️  Another batch is already generating for this campaign")
        return
    print(f"🤖 Generated {result['generated']}, failed {result['failed']}, {result['remaining']} still pending")


async def cmd_regenerate(manager: CampaignStateManager, args):
    generation = GenerationScheduler()
    await generation.regenerate(args.recipient_id)
    await generation.drain()
    print("🔄 Recipient sent back for a fresh draft")


async def cmd_preview(manager: CampaignStateManager, args):
    text = await GenerationScheduler().preview(args.campaign_id, args.contact_id)
    contact = Contact.get(args.contact_id)
    print(f"\n👀 Preview for {Contact.display_name(contact)}:\n")
    print(text)


async def cmd_reconcile(manager: CampaignStateManager, args):
    aggregator = StatusAggregator()
    if args.campaign_id:
        corrected = {args.campaign_id: aggregator.reconcile(args.campaign_id)}
        corrected = {k: v for k, v in corrected.items() if v}
    else:
        corrected = aggregator.reconcile_all()
    if not corrected:
        print("✅ Counters are consistent")
        return
    for cid, fields in corrected.items():
        for field, change in fields.items():
            print(f"🔧 {cid}: {field} {change['was']} -> {change['now']}")


async def cmd_recover(manager: CampaignStateManager, args):
    summary = StatusAggregator().recovery_sweep()
    print("🩹 Recovery sweep: " + ", ".join(f"{k}={v}" for k, v in summary.items()))


COMMANDS = {
    "create": cmd_create,
    "list": cmd_list,
    "show": cmd_show,
    "update": cmd_update,
    "delete": cmd_delete,
    "add-recipients": cmd_add_recipients,
    "schedule": cmd_schedule,
    "start": cmd_start,
    "pause": cmd_pause,
    "cancel": cmd_cancel,
    "queue": cmd_queue,
    "approve": cmd_approve,
    "edit": cmd_edit,
    "skip": cmd_skip,
    "generate": cmd_generate,
    "regenerate": cmd_regenerate,
    "preview": cmd_preview,
    "reconcile": cmd_reconcile,
    "recover": cmd_recover,
}


async def run_command(args) -> int:
    manager = CampaignStateManager()
    try:
        await COMMANDS[args.command](manager, args)
    except (BlastError, GenerationError) as e:
        print(f"❌ {e}")
        return 1
    return 0


def run_engine(dry_run: bool = False):
    """Pre-flight checks, then run the engine until SIGTERM/SIGINT."""
    print("=" * 60)
    print("  Blast Campaign Engine")
    print("=" * 60)
    print()

    try:
        from database import db
        db.command("ping")
        print("✅ MongoDB connected")
        ensure_indexes()

        if dry_run:
            print("🧪 Dry run: messages are logged, not sent")
        elif not config.CHANNEL_API_URL:
            print("❌ CHANNEL_API_URL not set (use --dry-run to test without a channel)")
            sys.exit(1)
        print(f"✅ LLM provider: {config.LLM_PROVIDER}")
        print()
    except Exception as e:
        print(f"❌ Pre-flight check failed: {e}")
        sys.exit(1)

    from blast.channel import DryRunChannel
    from blast.engine import BlastEngine

    engine = BlastEngine(channel=DryRunChannel() if dry_run else None)
    asyncio.run(engine.start())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Blast Campaign Engine — AI-personalised bulk messaging",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create "Ramadan check-in" --prompt "Wish them well, ask about their order" --contacts-file ids.txt
  python main.py generate <campaign_id> --batch 5
  python main.py queue <campaign_id>
  python main.py approve <recipient_id> --text "Edited message"
  python main.py start <campaign_id>
  python main.py engine
        """
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    def with_contacts(p):
        p.add_argument("--contacts", help="Comma-separated contact ids")
        p.add_argument("--contacts-file", help="File with one contact id per line")

    create_parser = subparsers.add_parser("create", help="Create a draft campaign")
    create_parser.add_argument("name", help="Campaign name")
    create_parser.add_argument("--prompt", required=True, help="Instructions for the AI writer")
    with_contacts(create_parser)
    create_parser.add_argument("--min-interval", type=int, default=None, help="Min seconds between sends")
    create_parser.add_argument("--max-interval", type=int, default=None, help="Max seconds between sends")
    create_parser.add_argument("--template", help="Channel template id ({{1}}=name, {{2}}=message)")
    create_parser.add_argument("--created-by", help="Operator name")
    create_parser.add_argument("--auto-approve", action="store_true", help="Skip manual review")

    subparsers.add_parser("list", help="List campaigns")

    for name, help_text in (
        ("show", "Show campaign details"),
        ("delete", "Delete a draft, completed or cancelled campaign"),
        ("start", "Start or resume a campaign"),
        ("pause", "Pause a running campaign"),
        ("cancel", "Cancel a campaign"),
        ("queue", "Show the review queue"),
    ):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("campaign_id", help="Campaign ID")

    update_parser = subparsers.add_parser("update", help="Edit a draft or paused campaign")
    update_parser.add_argument("campaign_id", help="Campaign ID")
    update_parser.add_argument("--name")
    update_parser.add_argument("--prompt")
    update_parser.add_argument("--template", help="Template id ('' clears it)")
    update_parser.add_argument("--min-interval", type=int)
    update_parser.add_argument("--max-interval", type=int)

    add_parser = subparsers.add_parser("add-recipients", help="Add contacts to a draft campaign")
    add_parser.add_argument("campaign_id", help="Campaign ID")
    with_contacts(add_parser)

    schedule_parser = subparsers.add_parser("schedule", help="Schedule a draft campaign")
    schedule_parser.add_argument("campaign_id", help="Campaign ID")
    schedule_parser.add_argument("--at", help=f"Local time 'YYYY-MM-DD HH:MM' ({config.TARGET_TIMEZONE})")
    schedule_parser.add_argument("--clear", action="store_true", help="Unschedule (back to draft)")

    approve_parser = subparsers.add_parser("approve", help="Approve a drafted message")
    approve_parser.add_argument("recipient_id", help="Recipient ID")
    approve_parser.add_argument("--text", help="Send this text instead of the draft")
    approve_parser.add_argument("--reviewer", help="Reviewer name")

    edit_parser = subparsers.add_parser("edit", help="Replace the text of a drafted message")
    edit_parser.add_argument("recipient_id", help="Recipient ID")
    edit_parser.add_argument("text", help="New message text")

    skip_parser = subparsers.add_parser("skip", help="Skip a recipient")
    skip_parser.add_argument("recipient_id", help="Recipient ID")

    generate_parser = subparsers.add_parser("generate", help="Draft messages for pending recipients")
    generate_parser.add_argument("campaign_id", help="Campaign ID")
    generate_parser.add_argument("--batch", type=int, default=config.GENERATION_BATCH_SIZE, help="Batch size")

    regenerate_parser = subparsers.add_parser("regenerate", help="Discard a draft and write a new one")
    regenerate_parser.add_argument("recipient_id", help="Recipient ID")

    preview_parser = subparsers.add_parser("preview", help="Preview a message for one contact")
    preview_parser.add_argument("campaign_id", help="Campaign ID")
    preview_parser.add_argument("contact_id", help="Contact ID")

    reconcile_parser = subparsers.add_parser("reconcile", help="Rebuild campaign counters from recipients")
    reconcile_parser.add_argument("campaign_id", nargs="?", help="Campaign ID (default: all)")

    subparsers.add_parser("recover", help="Run the crash-recovery sweep (engine must be stopped)")

    engine_parser = subparsers.add_parser("engine", help="Run the delivery engine")
    engine_parser.add_argument("--dry-run", action="store_true", help="Log messages instead of sending")

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()
    setup_logging(config.LOG_LEVEL, config.LOG_FILE or None)

    if args.command == "engine":
        run_engine(dry_run=args.dry_run)
    elif args.command in COMMANDS:
        sys.exit(asyncio.run(run_command(args)))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
