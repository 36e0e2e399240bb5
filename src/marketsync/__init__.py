"""Live synchronization core for a marketplace client: bid ledgers, chat references, read state."""

from .channel import ChannelNotConnected, ChannelState, RealtimeChannel
from .client import CollaboratorError, MarketplaceClient
from .codec import (
    AuctionReference,
    DecodedMessage,
    JobReference,
    LinkTarget,
    ProductReference,
    ReferenceKind,
    ServiceReference,
    classify_link,
    decode,
    encode,
)
from .config import SyncConfig, load_config
from .engine import EventKind, InboundEvent, SyncEngine
from .hub import SubscriptionHub
from .hub_protocol import HubProtocolError
from .ledger import Auction, AuctionSnapshot, AuctionStatus, Bid, LedgerCache, LedgerView, minimum_next_bid, reconcile
from .readstate import Contact, Message, Profile, ProfileCache, ReadStateTracker

__all__ = [
    "Auction",
    "AuctionReference",
    "AuctionSnapshot",
    "AuctionStatus",
    "Bid",
    "ChannelNotConnected",
    "ChannelState",
    "CollaboratorError",
    "Contact",
    "DecodedMessage",
    "EventKind",
    "HubProtocolError",
    "InboundEvent",
    "JobReference",
    "LedgerCache",
    "LedgerView",
    "LinkTarget",
    "MarketplaceClient",
    "Message",
    "ProductReference",
    "Profile",
    "ProfileCache",
    "ReadStateTracker",
    "RealtimeChannel",
    "ReferenceKind",
    "ServiceReference",
    "SubscriptionHub",
    "SyncConfig",
    "SyncEngine",
    "classify_link",
    "decode",
    "encode",
    "load_config",
    "minimum_next_bid",
    "reconcile",
]
