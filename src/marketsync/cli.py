"""Command line entry points: offline frame simulation, decoding, live watch."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict, is_dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, List, TextIO

from . import codec
from .config import load_config
from .engine import InboundEvent, SyncEngine
from .ledger import AuctionSnapshot, LedgerCache, LedgerView
from .readstate import Contact, Message, ReadStateTracker


def to_jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        return {key: to_jsonable(item) for key, item in asdict(value).items()}
    if isinstance(value, dict):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    return value


def ledger_to_dict(view: LedgerView) -> dict:
    return {
        "auction_id": view.auction.id,
        "status": view.auction.status.value,
        "current_bid": to_jsonable(view.current_bid),
        "minimum_next_bid": to_jsonable(view.minimum_next_bid),
        "bids": [
            {
                "id": bid.id,
                "amount": to_jsonable(bid.amount),
                "ts_ms": bid.ts_ms,
                "backfilled": bid.backfilled,
            }
            for bid in view.bids
        ],
    }


def decoded_to_dict(decoded: codec.DecodedMessage | None, origin: str | None = None) -> dict | None:
    if decoded is None:
        return None
    body = to_jsonable(decoded.reference)
    body["kind"] = decoded.reference.kind.value
    body["rest"] = decoded.rest
    if decoded.reference.url:
        body["link"] = codec.classify_link(decoded.reference.url, origin).value
    return body


def contact_to_dict(contact: Contact) -> dict:
    last = contact.last_message
    return {
        "contact_id": contact.contact_id,
        "name": contact.name,
        "unread": contact.unread_count,
        "last_message_id": last.id if last else None,
        "last_message_ts_ms": last.ts_ms if last else None,
    }


def simulate(frames: Iterable[dict], output: TextIO, self_id: str, origin: str | None = None) -> None:
    """Apply JSON frames to a ledger cache and a tracker, emitting views."""

    ledgers = LedgerCache()
    tracker = ReadStateTracker(self_id)

    def emit(payload: dict) -> None:
        output.write(json.dumps(payload, ensure_ascii=False) + "\n")

    for frame in frames:
        frame_type = frame.get("t")
        body = frame.get("body") or {}
        if frame_type in ("bids", "auction"):
            snapshot = AuctionSnapshot.from_payload(body)
            if snapshot is None:
                raise ValueError("bids frame needs an auction id")
            ledgers.apply(snapshot)
            view = ledgers.view(snapshot.auction_id)
            if view is not None:
                emit({"t": "ledger", "body": ledger_to_dict(view)})
        elif frame_type == "message":
            message = Message.from_payload(body)
            if message is None:
                raise ValueError("message frame needs id, senderId and receiverId")
            tracker.record_incoming(message)
            contact = tracker.contact(tracker.counterpart(message))  # type: ignore[arg-type]
            emit(
                {
                    "t": "contact",
                    "body": contact_to_dict(contact) if contact else None,
                    "decoded": decoded_to_dict(message.decoded(), origin),
                }
            )
        elif frame_type == "read":
            changed = tracker.mark_read(body.get("message_id"))
            emit({"t": "read", "body": {"message_id": body.get("message_id"), "changed": changed}})
        elif frame_type == "open":
            tracker.open_conversation(body.get("contact_id"))
            flipped = tracker.mark_conversation_read(body.get("contact_id"))
            emit({"t": "open", "body": {"contact_id": body.get("contact_id"), "read": flipped}})
        else:
            raise ValueError(f"unsupported frame type: {frame_type}")
    emit(
        {
            "t": "summary",
            "body": {
                "total_unread": tracker.total_unread(),
                "contacts": [contact_to_dict(contact) for contact in tracker.contacts()],
            },
        }
    )


def read_frames(handle: TextIO) -> List[dict]:
    """Read frames from a JSON array or from one JSON object per line."""

    content = handle.read().strip()
    if not content:
        return []
    if content.startswith("["):
        frames = json.loads(content)
    else:
        frames = [json.loads(line) for line in content.splitlines() if line.strip()]
    for frame in frames:
        if not isinstance(frame, dict):
            raise ValueError(f"frame must be a JSON object: {frame!r}")
    return frames


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    frames = read_frames(args.file or sys.stdin)
    simulate(frames, output, args.self_id, args.origin)
    return 0


def _run_decode(args: argparse.Namespace, output: TextIO) -> int:
    text = args.text.replace("\\n", "\n")
    decoded = codec.decode(text)
    output.write(json.dumps(decoded_to_dict(decoded, args.origin), ensure_ascii=False) + "\n")
    return 0 if decoded is not None else 1


async def _watch(args: argparse.Namespace, output: TextIO) -> None:
    config = load_config(
        args.config,
        base_url=args.base_url,
        access_token=args.token,
        self_id=args.self_id,
    )
    if not config.self_id:
        raise SystemExit("marketsync watch: --self-id or MARKETSYNC_SELF_ID is required")
    engine = SyncEngine(config)

    def on_change(event: InboundEvent) -> None:
        payload: dict = {"t": event.kind.value, "source": event.source}
        if args.auction is not None:
            view = engine.ledger(args.auction)
            if view is not None:
                payload["ledger"] = ledger_to_dict(view)
        payload["unread"] = engine.tracker.total_unread()
        output.write(json.dumps(payload, ensure_ascii=False) + "\n")
        output.flush()

    engine.add_listener(on_change)
    await engine.start()
    try:
        if args.auction is not None:
            await engine.watch_auction(args.auction)
        if args.contact is not None:
            await engine.open_conversation(args.contact)
        if args.duration:
            await asyncio.sleep(args.duration)
        else:
            await asyncio.Event().wait()
    finally:
        await engine.stop()


def _run_watch(args: argparse.Namespace, output: TextIO) -> int:
    try:
        asyncio.run(_watch(args, output))
    except KeyboardInterrupt:
        pass
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(prog="marketsync", description="Marketplace live sync core")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, ...)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Apply JSON frames offline and print views")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r", encoding="utf-8"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )
    simulate_parser.add_argument("--self-id", required=True, help="User id of the signed-in user")
    simulate_parser.add_argument("--origin", default=None, help="Site origin whose absolute links count as internal")

    decode_parser = subparsers.add_parser("decode", help="Decode an object reference from message text")
    decode_parser.add_argument("text", help="Message text; literal \\n sequences become newlines")
    decode_parser.add_argument("--origin", default=None, help="Site origin whose absolute links count as internal")

    watch_parser = subparsers.add_parser("watch", help="Follow a live auction and/or conversation")
    watch_parser.add_argument("--config", default=None, help="Path to JSON settings file")
    watch_parser.add_argument("--base-url", default=None, help="Marketplace API base URL")
    watch_parser.add_argument("--token", default=None, help="Access token")
    watch_parser.add_argument("--self-id", default=None, help="User id of the signed-in user")
    watch_parser.add_argument("--auction", default=None, help="Auction id to follow")
    watch_parser.add_argument("--contact", default=None, help="Contact id whose conversation to open")
    watch_parser.add_argument("--duration", type=float, default=0.0, help="Stop after N seconds (0 = run until interrupted)")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    stream = output or sys.stdout

    if args.command == "simulate":
        return _run_simulation(args, stream)
    if args.command == "decode":
        return _run_decode(args, stream)
    return _run_watch(args, stream)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
