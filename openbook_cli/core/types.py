from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Literal

UNAVAILABLE = "unavailable"

VaultBalance = float | Literal["unavailable"]


class Side(StrEnum):
    BID = "bid"
    ASK = "ask"


class OrderType(StrEnum):
    LIMIT = "limit"
    IMMEDIATE_OR_CANCEL = "immediate_or_cancel"
    POST_ONLY = "post_only"
    MARKET = "market"
    POST_ONLY_SLIDE = "post_only_slide"


class ScanStage(StrEnum):
    SIGNATURES = "signatures"
    TRANSACTIONS = "transactions"
    DECODE = "decode"


@dataclass(frozen=True, slots=True)
class MarketAccount:
    address: str
    name: str
    base_mint: str
    quote_mint: str
    base_decimals: int
    quote_decimals: int
    base_lot_size: int
    quote_lot_size: int
    bids: str
    asks: str
    event_heap: str
    market_base_vault: str
    market_quote_vault: str
    market_authority: str
    open_orders_admin: str | None = None
    oracle_a: str | None = None
    oracle_b: str | None = None


@dataclass(frozen=True, slots=True)
class OpenOrder:
    order_id: int
    client_order_id: int
    side: Side
    price_lots: int


@dataclass(frozen=True, slots=True)
class OpenOrdersAccount:
    address: str
    owner: str
    market: str
    name: str
    account_num: int
    base_free_native: int
    quote_free_native: int
    bids_base_lots: int = 0
    asks_base_lots: int = 0
    orders: tuple[OpenOrder, ...] = ()


@dataclass(frozen=True, slots=True)
class OpenOrdersIndexer:
    address: str
    created_counter: int
    addresses: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class BookNode:
    tag: int
    data: bytes


@dataclass(frozen=True, slots=True)
class BookSideNodes:
    """Raw critbit tree of one book side: the fixed-price root and the node slab."""

    side: Side
    root: int | None
    leaf_count: int
    nodes: tuple[BookNode, ...]


@dataclass(frozen=True, slots=True)
class MarketEvent:
    market: str
    base_mint: str
    quote_mint: str
    name: str
    timestamp: int | None
    base_decimals: int
    quote_decimals: int


@dataclass(slots=True)
class MarketRecord:
    event: MarketEvent
    base_vault: str = ""
    quote_vault: str = ""
    base_vault_balance: VaultBalance | None = None
    quote_vault_balance: VaultBalance | None = None


@dataclass(frozen=True, slots=True)
class ScanError:
    stage: ScanStage
    detail: str
    signatures: tuple[str, ...] = field(default_factory=tuple)
