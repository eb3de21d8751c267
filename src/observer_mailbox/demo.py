"""Scripted driving loop showing the store, observers and retention together.

The "agent" here is a canned list of responses; a keyword observer warns
whenever a response mentions a failure, and a tool observer adds context
after tool calls.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from .config import coordinator_from, injection_config_from, load_config, retention_engine_from, store_from
from .context import ObserverContext
from .events import EventBus, MetricsCollector
from .injection import format_messages
from .logging_setup import setup_logging
from .registry import ObserverRegistry, keyword_observer, tool_call_observer
from .types import PromptMessage, StepResponse, StepSnapshot, ToolCall

logger = logging.getLogger(__name__)

SCRIPT: List[StepResponse] = [
    StepResponse(text="Searching flights to Lisbon."),
    StepResponse(text="Calling the fare tool.", tool_calls=(ToolCall("search_fares", {"to": "LIS"}),)),
    StepResponse(text="The fare search failed with a timeout."),
    StepResponse(text="Retrying the fare tool.", tool_calls=(ToolCall("search_fares", {"to": "LIS"}),)),
    StepResponse(text="Found three fares; the cheapest is 89 EUR."),
]


def _warn_on_failure(snapshot: StepSnapshot, matched: List[str]) -> List[Dict[str, Any]]:
    return [{
        "category": "warning",
        "content": f"Last step reported {', '.join(matched)}; consider a different approach.",
        "confidence": 0.8,
    }]


def _note_tool_use(snapshot: StepSnapshot) -> List[Dict[str, Any]]:
    names = sorted({tc.name for tc in snapshot.response.tool_calls})
    return [{
        "category": "context",
        "content": f"Tools used at step {snapshot.step_number}: {', '.join(names)}",
        "confidence": 0.7,
        "expires_at_step": snapshot.step_number + 2,
    }]


async def run(cfg: Dict[str, Any], steps: Sequence[StepResponse] = SCRIPT) -> Dict[str, Any]:
    """Drive ``steps`` through a fresh store; return a summary of what happened."""
    bus = EventBus()
    metrics = MetricsCollector(bus)
    store = store_from(cfg, events=bus)
    coordinator = coordinator_from(cfg, store)
    retention = retention_engine_from(cfg, events=bus)
    ctx = ObserverContext(store, "demo", injection=injection_config_from(cfg), coordinator=coordinator)

    registry = ObserverRegistry()
    registry.register(keyword_observer("failure-watch", ["failed", "timeout"], _warn_on_failure, priority=100))
    registry.register(tool_call_observer("tool-notes", _note_tool_use))

    injected = 0
    sent = 0
    for response in steps:
        ctx.next_step()
        pending = ctx.get_pending_context()
        kept = retention.apply(pending.messages).keep
        prompt: List[PromptMessage] = [
            {"role": "system", "content": "You are a travel agent."},
            {"role": "user", "content": "Find me a cheap flight."},
        ]
        prompt = ctx.inject_context(prompt, format_messages(kept))
        injected += len(kept)
        logger.info("step %d: injected %d message(s)", ctx.current_step, len(kept))

        ctx.mark_incorporated([m.id for m in kept])
        snapshot = ctx.create_snapshot(prompt, response)
        result = await ctx.dispatch(snapshot, registry)
        sent += result.messages_sent
        ctx.gc()

    counts = metrics.metrics()
    metrics.dispose()
    return {
        "steps": ctx.current_step,
        "messages_sent": sent,
        "messages_injected": injected,
        "remaining": store.message_count("demo"),
        "snapshots": store.snapshot_count("demo"),
        "steps_completed": counts.steps_completed,
        "observer_failures": counts.observer_failures,
    }


def main(argv: Optional[Sequence[str]] = None) -> Dict[str, Any]:
    parser = argparse.ArgumentParser(description="Run a scripted observer-mailbox loop.")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML config (default: $OBSERVER_MAILBOX_CONFIG or config/default.yaml)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Override the configured log level (e.g. DEBUG)",
    )
    args = parser.parse_args(argv)

    cfg = load_config(args.config)
    setup_logging(args.log_level or cfg.get("logging", {}).get("level", "INFO"))

    summary = asyncio.run(run(cfg))
    logger.info("summary: %s", summary)
    return summary


if __name__ == "__main__":
    main()
