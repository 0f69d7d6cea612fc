"""Offline replay of recorded agent events.

An event log is a JSON-lines file, one ``{"channel": ..., "payload": ...}``
record per line. Replaying it through a session rebuilds the same state a
live session would have reached, which makes recorded runs usable for
debugging and tests.

Usage:
    python -m warden.replay events.jsonl > conversation.json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Iterable

import structlog

from warden.config import Settings, settings
from warden.events.transport import LocalEventBus
from warden.observability.logging import configure_logging
from warden.session import SyncSession

logger = structlog.get_logger()

RecordedEvent = tuple[str, Any]


def load_event_log(path: Path | str) -> list[RecordedEvent]:
    """Read a JSON-lines event log. Malformed lines are skipped with a warning."""
    events: list[RecordedEvent] = []
    with open(path, encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning("event_log_line_invalid", line=lineno, error=str(e))
                continue
            if not isinstance(record, dict) or not isinstance(record.get("channel"), str):
                logger.warning("event_log_line_without_channel", line=lineno)
                continue
            events.append((record["channel"], record.get("payload")))
    return events


async def replay_events(session: SyncSession, events: Iterable[RecordedEvent]) -> int:
    """Publish ``events`` in order on the session's bus and wait until idle."""
    bus = session.transport
    if not isinstance(bus, LocalEventBus):
        raise TypeError("replay needs a session running on a LocalEventBus")
    count = 0
    for channel, payload in events:
        bus.publish(channel, payload)
        count += 1
    await session.drain()
    logger.info("event_log_replayed", events=count)
    return count


async def _replay_file(path: Path, config: Settings) -> dict[str, Any]:
    # Recorded decisions are already in the log; replay never prompts locally.
    session = SyncSession(config=config.model_copy(update={"preflight_policy": "queue"}))
    async with session:
        await replay_events(session, load_event_log(path))
        state = session.store.state
        return {
            "conversation": json.loads(session.export_conversation()),
            "actionLog": len(state.action_log),
            "pendingApprovals": len(session.store.pending_approvals()),
            "metrics": session.metrics.snapshot(),
        }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Replay a recorded agent event log.")
    parser.add_argument("path", type=Path, help="JSON-lines event log")
    args = parser.parse_args(argv)

    configure_logging(settings.log_level, settings.env, stream=sys.stderr)
    if not args.path.exists():
        logger.error("event_log_not_found", path=str(args.path))
        return 1
    summary = asyncio.run(_replay_file(args.path, settings))
    json.dump(summary, sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
