"""
Blast Campaign Engine — AI-personalised bulk outbound messaging.

One prompt plus a recipient list becomes individually generated messages,
each reviewed by an operator and then dispatched to the chat channel at
randomised intervals. MongoDB rows are the only source of truth, so any
process can crash and resume.

Modules:
    errors.py         — Operator-facing exceptions (validation, transitions, not found)
    pacing.py         — Random send intervals, sending-hours window
    channel.py        — Channel adapter contract + aiohttp webhook gateway
    generation.py     — Generation scheduler (lease, batches, replenishment)
    review.py         — Review gate (approve / edit / skip / queue)
    pacer.py          — Per-campaign delivery pacer tasks
    aggregator.py     — Completion rule, counter reconciliation, recovery sweep
    campaign_manager.py — Campaign state manager (create / start / pause / cancel ...)
    engine.py         — Long-running asyncio engine with signal handling
"""
