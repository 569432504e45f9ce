"""Push trigger events onto the per-agent workflow streams.

Either replays a directory of contract fixtures or builds one trigger from
flags, e.g. to poke a running listener by hand:

    python tools/replay/publish_trigger_events.py --redis-url redis://localhost:6379/0 \
        --agent openai/gpt-5 --trigger-type price_swing --instrument KXFED-26MAR-H0
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Iterator

# Allow running from repo root without installing as a package.
sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

import redis  # type: ignore

from predarena.contracts.streams import WORKFLOW_TRIGGER_V1, trigger_stream
from predarena.contracts.validation import validate_envelope_dict
from predarena.core.models import envelope_to_wire
from predarena.workflow.triggers import build_trigger_event


def fixture_events(events_dir: Path) -> Iterator[tuple[str, dict]]:
    files = sorted(events_dir.glob("*.json"))
    if not files:
        raise SystemExit(f"no events found under {events_dir}")
    for fp in files:
        yield fp.name, json.loads(fp.read_text(encoding="utf-8"))


def cli_event(agent_id: str, trigger_type: str, instrument: str | None) -> tuple[str, dict]:
    ev = build_trigger_event(
        agent_id=agent_id,
        trigger_type=trigger_type,
        details={"instrument_id": instrument} if instrument else {},
        source_service="publish-tool",
    )
    return f"{trigger_type}:{agent_id}", envelope_to_wire(ev)


def destination(ev: dict) -> str:
    if ev.get("schema") == WORKFLOW_TRIGGER_V1:
        return trigger_stream(ev["payload"]["agent_id"])
    return ev["schema"]


def main() -> None:
    ap = argparse.ArgumentParser(description="Publish workflow trigger events to Redis streams.")
    ap.add_argument("--redis-url", required=True)
    ap.add_argument("--events-dir", default=str(Path("contracts") / "golden_events" / "v1"))
    ap.add_argument("--agent", help="publish one trigger for this agent instead of replaying fixtures")
    ap.add_argument("--trigger-type", default="manual")
    ap.add_argument("--instrument", help="instrument_id; required by market-signal trigger types")
    ap.add_argument("--dry-run", action="store_true")
    ap.add_argument("--fail-on-invalid", action="store_true", help="stop at the first invalid event instead of skipping it")
    args = ap.parse_args()

    if args.agent:
        events = iter([cli_event(args.agent, args.trigger_type, args.instrument)])
    else:
        events = fixture_events(Path(args.events_dir))

    client = None if args.dry_run else redis.Redis.from_url(args.redis_url, decode_responses=True)
    published = skipped = 0
    for name, ev in events:
        try:
            validate_envelope_dict(ev)
        except ValueError as e:
            if args.fail_on_invalid:
                raise
            print(f"[skip-invalid] {name}: {e}")
            skipped += 1
            continue

        stream = destination(ev)
        if client is None:
            print(f"[dry-run] {stream} <- {name}")
        else:
            message_id = client.xadd(stream, {"event": json.dumps(ev, ensure_ascii=False)})
            print(f"{stream} <- {name} ({message_id})")
        published += 1

    print(f"published={published} skipped={skipped}")


if __name__ == "__main__":
    main()
