"""Bid ledger reconciliation.

The auction collaborator sometimes reports bids with a zero or missing amount.
:func:`reconcile` repairs those gaps by position so the rendered history is
complete, and :class:`LedgerCache` merges successive polls and pushed auction
updates without letting stale data regress what is already known.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .ids import EntityId, id_order, normalize_id
from .timestamps import now_ms, parse_ts_ms

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class AuctionStatus(str, enum.Enum):
    ACTIVE = "active"
    CLOSED = "closed"

    @classmethod
    def parse(cls, value: object) -> "AuctionStatus | None":
        if value is None:
            return None
        text = str(value).strip().lower()
        if not text:
            return None
        if text in {"closed", "ended", "completed", "cancelled", "canceled", "sold", "expired"}:
            return cls.CLOSED
        return cls.ACTIVE


def to_amount(value: object) -> Decimal | None:
    """Parse a money value, returning ``None`` for anything non-numeric."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    text = str(value).replace(",", "").strip()
    if not text:
        return None
    try:
        amount = Decimal(text)
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def first_of(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


@dataclass(frozen=True)
class Bid:
    id: EntityId
    auction_id: EntityId | None
    bidder_id: EntityId | None
    amount: Decimal | None
    ts_ms: int
    bidder_name: str | None = None
    backfilled: bool = False

    @property
    def has_reported_amount(self) -> bool:
        return self.amount is not None and self.amount > ZERO

    @classmethod
    def from_payload(cls, payload: object, auction_id: EntityId | None = None) -> "Bid | None":
        if not isinstance(payload, Mapping):
            return None
        bid_id = normalize_id(payload.get("id"))
        if bid_id is None:
            logger.debug("dropping bid without id: %r", payload)
            return None
        ts_ms = parse_ts_ms(first_of(payload, "bidTime", "createdAt", "timestamp", "ts_ms"))
        name = first_of(payload, "userName", "bidderName")
        return cls(
            id=bid_id,
            auction_id=normalize_id(first_of(payload, "auctionId", "auction_id")) or auction_id,
            bidder_id=normalize_id(first_of(payload, "userId", "bidderId", "bidder_id")),
            amount=to_amount(first_of(payload, "amount", "bidAmount")),
            ts_ms=ts_ms if ts_ms is not None else 0,
            bidder_name=str(name) if name is not None else None,
        )


def _recency_key(bid: Bid) -> Tuple[int, Tuple[int, Any]]:
    return (bid.ts_ms, id_order(bid.id))


def effective_current_bid(
    current_bid: object,
    reserve_price: Decimal,
    bids: Iterable[Bid],
) -> Decimal:
    """Return the reported current bid, or derive one when it is missing."""

    current = to_amount(current_bid)
    if current is not None and current > ZERO:
        return current
    reported = [bid.amount for bid in bids if bid.has_reported_amount]
    if reported:
        return max(reported)  # type: ignore[type-var]
    return reserve_price


def reconcile(
    current_bid: object,
    bid_increment: object,
    reserve_price: object,
    raw_bids: Iterable[Bid],
) -> List[Bid]:
    """Order bids most recent first and backfill missing amounts.

    The bid at position ``i`` without a reported amount gets
    ``max(current_bid - i * bid_increment, reserve_price)``. Ties on the
    timestamp are broken by bid id descending, so the same input always
    yields the same ledger.
    """

    increment = to_amount(bid_increment)
    if increment is None or increment < ZERO:
        increment = ZERO
    reserve = to_amount(reserve_price)
    if reserve is None or reserve < ZERO:
        reserve = ZERO

    ordered = sorted(raw_bids, key=_recency_key, reverse=True)
    current = effective_current_bid(current_bid, reserve, ordered)

    ledger: List[Bid] = []
    for position, bid in enumerate(ordered):
        if bid.has_reported_amount:
            ledger.append(bid if not bid.backfilled else replace(bid, backfilled=False))
            continue
        synthesized = max(current - position * increment, reserve)
        ledger.append(replace(bid, amount=synthesized, backfilled=True))
    return ledger


def minimum_next_bid(
    current_bid: object,
    bid_increment: object,
    reserve_price: object,
    has_bids: bool,
) -> Decimal:
    increment = to_amount(bid_increment) or ZERO
    reserve = to_amount(reserve_price) or ZERO
    if not has_bids:
        return reserve + increment
    current = to_amount(current_bid)
    if current is None or current <= ZERO:
        current = reserve
    return current + increment


@dataclass(frozen=True)
class Auction:
    id: EntityId
    reserve_price: Decimal
    bid_increment: Decimal
    current_bid: Decimal | None
    end_time_ms: int | None = None
    status: AuctionStatus = AuctionStatus.ACTIVE
    title: str = ""

    def is_open(self, at_ms: int | None = None) -> bool:
        if self.status is AuctionStatus.CLOSED:
            return False
        if self.end_time_ms is None:
            return True
        return (now_ms() if at_ms is None else at_ms) < self.end_time_ms


@dataclass(frozen=True)
class AuctionSnapshot:
    """One observation of an auction's bids, from a poll or a pushed update."""

    auction_id: EntityId
    current_bid: Decimal | None = None
    bid_increment: Decimal | None = None
    reserve_price: Decimal | None = None
    bids: Tuple[Bid, ...] = ()
    status: AuctionStatus | None = None
    end_time_ms: int | None = None
    title: str | None = None

    @property
    def latest_bid_ts_ms(self) -> int:
        return max((bid.ts_ms for bid in self.bids), default=0)

    @property
    def newest_reported_amount(self) -> Decimal | None:
        """Amount of the most recent bid that carries one."""

        reported = [bid for bid in self.bids if bid.has_reported_amount]
        if not reported:
            return None
        return max(reported, key=_recency_key).amount

    @classmethod
    def from_payload(cls, payload: object, auction_id: EntityId | None = None) -> "AuctionSnapshot | None":
        if not isinstance(payload, Mapping):
            return None
        resolved_id = normalize_id(first_of(payload, "auctionId", "auction_id")) or auction_id
        if resolved_id is None:
            resolved_id = normalize_id(payload.get("id"))
        if resolved_id is None:
            logger.debug("dropping auction payload without id: %r", payload)
            return None

        raw_bids = payload.get("bids")
        bid_payloads: List[object] = list(raw_bids) if isinstance(raw_bids, list) else []
        single = first_of(payload, "bid", "lastBid")
        if isinstance(single, Mapping):
            bid_payloads.append(single)
        bids = []
        for item in bid_payloads:
            bid = Bid.from_payload(item, auction_id=resolved_id)
            if bid is not None:
                bids.append(bid)

        title = first_of(payload, "title", "name")
        return cls(
            auction_id=resolved_id,
            current_bid=to_amount(first_of(payload, "currentBid", "currentPrice")),
            bid_increment=to_amount(first_of(payload, "bidIncrement", "minBidIncrement")),
            reserve_price=to_amount(first_of(payload, "reservePrice", "startingPrice")),
            bids=tuple(bids),
            status=AuctionStatus.parse(payload.get("status")),
            end_time_ms=parse_ts_ms(first_of(payload, "endDate", "endTime")),
            title=str(title) if title is not None else None,
        )


@dataclass(frozen=True)
class LedgerView:
    """Read-only, reconciled view of one auction."""

    auction: Auction
    bids: Tuple[Bid, ...]
    minimum_next_bid: Decimal

    @property
    def current_bid(self) -> Decimal | None:
        return self.auction.current_bid


@dataclass
class _LedgerEntry:
    auction_id: EntityId
    bid_increment: Decimal
    reserve_price: Decimal
    current_bid: Decimal | None = None
    status: AuctionStatus = AuctionStatus.ACTIVE
    end_time_ms: int | None = None
    title: str = ""
    bids: Dict[EntityId, Bid] = field(default_factory=dict)
    clock: Tuple[int, Decimal] = (0, ZERO)


class LedgerCache:
    """Per-auction ledger state merged across polls and pushed updates."""

    def __init__(self, default_increment: object = ZERO, default_reserve: object = ZERO) -> None:
        self._default_increment = to_amount(default_increment) or ZERO
        self._default_reserve = to_amount(default_reserve) or ZERO
        self._entries: Dict[EntityId, _LedgerEntry] = {}

    def auction_ids(self) -> List[EntityId]:
        return list(self._entries)

    def forget(self, auction_id: EntityId) -> None:
        self._entries.pop(auction_id, None)

    def apply(self, snapshot: AuctionSnapshot) -> bool:
        """Merge ``snapshot`` into the cache; return True when the view changed."""

        before = self.view(snapshot.auction_id)
        entry = self._entries.get(snapshot.auction_id)
        if entry is None:
            entry = _LedgerEntry(
                auction_id=snapshot.auction_id,
                bid_increment=self._default_increment,
                reserve_price=self._default_reserve,
            )
            self._entries[snapshot.auction_id] = entry

        if snapshot.bid_increment is not None and snapshot.bid_increment > ZERO:
            entry.bid_increment = snapshot.bid_increment
        if snapshot.reserve_price is not None and snapshot.reserve_price >= ZERO:
            entry.reserve_price = snapshot.reserve_price
        if snapshot.title:
            entry.title = snapshot.title

        for bid in snapshot.bids:
            known = entry.bids.get(bid.id)
            if known is not None and not bid.has_reported_amount and known.has_reported_amount:
                bid = replace(bid, amount=known.amount)
            entry.bids[bid.id] = replace(bid, backfilled=False)

        snapshot_current = snapshot.current_bid if snapshot.current_bid is not None else ZERO
        newest_amount = snapshot.newest_reported_amount
        candidate = (snapshot.latest_bid_ts_ms, max(snapshot_current, newest_amount or ZERO))
        if candidate >= entry.clock:
            if snapshot.current_bid is not None and snapshot.current_bid > ZERO:
                entry.current_bid = snapshot.current_bid
            elif newest_amount is not None and (entry.current_bid is None or newest_amount > entry.current_bid):
                # pushed bids often arrive without currentBid
                entry.current_bid = newest_amount
            if snapshot.end_time_ms is not None:
                entry.end_time_ms = snapshot.end_time_ms
            entry.clock = candidate
        else:
            logger.debug(
                "ignoring stale auction snapshot for %s: %s < %s",
                snapshot.auction_id,
                candidate,
                entry.clock,
            )
        # a closed auction never reopens from a late observation
        if snapshot.status is AuctionStatus.CLOSED:
            entry.status = AuctionStatus.CLOSED

        return self.view(snapshot.auction_id) != before

    def view(self, auction_id: EntityId) -> Optional[LedgerView]:
        entry = self._entries.get(auction_id)
        if entry is None:
            return None
        bids = reconcile(entry.current_bid, entry.bid_increment, entry.reserve_price, entry.bids.values())
        current: Decimal | None
        if bids:
            current = effective_current_bid(entry.current_bid, entry.reserve_price, bids)
        else:
            current = entry.current_bid
        auction = Auction(
            id=entry.auction_id,
            reserve_price=entry.reserve_price,
            bid_increment=entry.bid_increment,
            current_bid=current,
            end_time_ms=entry.end_time_ms,
            status=entry.status,
            title=entry.title,
        )
        return LedgerView(
            auction=auction,
            bids=tuple(bids),
            minimum_next_bid=minimum_next_bid(current, entry.bid_increment, entry.reserve_price, bool(bids)),
        )
