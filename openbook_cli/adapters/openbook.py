from __future__ import annotations

import hashlib
import importlib
import logging
import time
from pathlib import Path
from typing import Any

import base58
from solders.instruction import Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYS_PROGRAM_ID
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    create_idempotent_associated_token_account,
    get_associated_token_address,
)

from openbook_cli.core.types import (
    BookNode,
    BookSideNodes,
    MarketAccount,
    MarketEvent,
    OpenOrder,
    OpenOrdersAccount,
    OpenOrdersIndexer,
    OrderType,
    Side,
)
from openbook_cli.keys.loader import stub_identity

_openbook_logger = logging.getLogger("openbook_cli.openbook")

EVENT_AUTHORITY_SEED = b"__event_authority"
OPEN_ORDERS_INDEXER_SEED = b"OpenOrdersIndexer"
OPEN_ORDERS_SEED = b"OpenOrders"
MARKET_SEED = b"Market"
MARKET_META_DATA_EVENT = "MarketMetaDataLog"
DEFAULT_ORDER_LIMIT = 16
BUNDLED_IDL_PATH = Path(__file__).resolve().parents[1] / "idl" / "openbook_v2.json"

# Byte offsets inside an OpenOrdersAccount, counting the 8-byte discriminator.
OPEN_ORDERS_OWNER_OFFSET = 8
OPEN_ORDERS_MARKET_OFFSET = 40

_ORDER_TYPE_VARIANTS = {
    OrderType.LIMIT: "Limit",
    OrderType.IMMEDIATE_OR_CANCEL: "ImmediateOrCancel",
    OrderType.POST_ONLY: "PostOnly",
    OrderType.MARKET: "Market",
    OrderType.POST_ONLY_SLIDE: "PostOnlySlide",
}
# side_and_tree: 0 bid fixed, 1 ask fixed, 2 bid oracle pegged, 3 ask oracle pegged.
_BID_SIDE_AND_TREE = frozenset({0, 2})


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode()).digest()[:8]


def _import_anchorpy() -> Any:
    return importlib.import_module("anchorpy")


def _pubkey_str(value: Any) -> str:
    return str(value)


def _optional_pubkey(value: Any) -> str | None:
    # NonZeroPubkeyOption is a struct holding one key; the zero key means unset.
    key = getattr(value, "key", value)
    if key is None or bytes(key) == bytes(32):
        return None
    return str(key)


def _fixed_name(raw: Any) -> str:
    return bytes(raw).split(b"\x00", 1)[0].decode("utf-8", errors="replace")


class OpenBookAdapter:
    """OpenBook v2 program access through anchorpy and the program's Anchor IDL.

    PDA derivation is pure and works without the IDL. Account and event
    decoding and instruction building load the IDL on first use; the IDL
    shipped with the package is used unless a path is given.
    """

    def __init__(
        self, *, program_id: str | Pubkey, rpc_url: str, idl_path: str | Path | None = None
    ) -> None:
        self.program_id = program_id if isinstance(program_id, Pubkey) else Pubkey.from_string(program_id)
        self.idl_path = Path(idl_path).expanduser() if idl_path else BUNDLED_IDL_PATH
        self.rpc_url = rpc_url
        self._program: Any = None

    def _load_program(self) -> Any:
        if self._program is not None:
            return self._program
        if not self.idl_path.is_file():
            raise RuntimeError(f"openbook_idl_not_found:{self.idl_path}")
        anchorpy = _import_anchorpy()
        async_api = importlib.import_module("solana.rpc.async_api")
        idl = anchorpy.Idl.from_json(self.idl_path.read_text(encoding="utf-8"))
        # The provider is never used for network calls; only the coder and
        # instruction builders are.
        provider = anchorpy.Provider(async_api.AsyncClient(self.rpc_url), anchorpy.Wallet(stub_identity()))
        self._program = anchorpy.Program(idl, self.program_id, provider)
        _openbook_logger.debug("openbook_idl_loaded path=%s", self.idl_path)
        return self._program

    def sdk_available(self) -> tuple[bool, str]:
        try:
            self._load_program()
        except (RuntimeError, ImportError, ValueError) as exc:
            return False, str(exc)
        return True, "ok"

    # PDAs

    def event_authority(self) -> Pubkey:
        return Pubkey.find_program_address([EVENT_AUTHORITY_SEED], self.program_id)[0]

    def open_orders_indexer_address(self, owner: Pubkey) -> Pubkey:
        return Pubkey.find_program_address([OPEN_ORDERS_INDEXER_SEED, bytes(owner)], self.program_id)[0]

    def open_orders_address(self, owner: Pubkey, account_num: int) -> Pubkey:
        seeds = [OPEN_ORDERS_SEED, bytes(owner), int(account_num).to_bytes(4, "little")]
        return Pubkey.find_program_address(seeds, self.program_id)[0]

    def market_authority_address(self, market: Pubkey) -> Pubkey:
        return Pubkey.find_program_address([MARKET_SEED, bytes(market)], self.program_id)[0]

    def market_vault_addresses(self, market: Pubkey, base_mint: Pubkey, quote_mint: Pubkey) -> tuple[Pubkey, Pubkey]:
        authority = self.market_authority_address(market)
        return (
            get_associated_token_address(authority, base_mint),
            get_associated_token_address(authority, quote_mint),
        )

    # getProgramAccounts filters

    def market_account_filters(self) -> list[dict[str, Any]]:
        return [{"memcmp": {"offset": 0, "bytes": _b58(account_discriminator("Market"))}}]

    def open_orders_filters(self, owner: Pubkey, market: Pubkey | None = None) -> list[dict[str, Any]]:
        filters: list[dict[str, Any]] = [
            {"memcmp": {"offset": 0, "bytes": _b58(account_discriminator("OpenOrdersAccount"))}},
            {"memcmp": {"offset": OPEN_ORDERS_OWNER_OFFSET, "bytes": str(owner)}},
        ]
        if market is not None:
            filters.append({"memcmp": {"offset": OPEN_ORDERS_MARKET_OFFSET, "bytes": str(market)}})
        return filters

    # Decoding

    def _decode_account(self, data: bytes, expected: str) -> Any:
        if data[:8] != account_discriminator(expected):
            raise ValueError(f"account_type_mismatch:expected_{expected}")
        return self._load_program().coder.accounts.decode(data)

    def decode_market(self, address: Pubkey | str, data: bytes) -> MarketAccount:
        raw = self._decode_account(data, "Market")
        return MarketAccount(
            address=str(address),
            name=_fixed_name(raw.name),
            base_mint=_pubkey_str(raw.base_mint),
            quote_mint=_pubkey_str(raw.quote_mint),
            base_decimals=int(raw.base_decimals),
            quote_decimals=int(raw.quote_decimals),
            base_lot_size=int(raw.base_lot_size),
            quote_lot_size=int(raw.quote_lot_size),
            bids=_pubkey_str(raw.bids),
            asks=_pubkey_str(raw.asks),
            event_heap=_pubkey_str(raw.event_heap),
            market_base_vault=_pubkey_str(raw.market_base_vault),
            market_quote_vault=_pubkey_str(raw.market_quote_vault),
            market_authority=_pubkey_str(raw.market_authority),
            open_orders_admin=_optional_pubkey(raw.open_orders_admin),
            oracle_a=_optional_pubkey(raw.oracle_a),
            oracle_b=_optional_pubkey(raw.oracle_b),
        )

    def decode_open_orders(self, address: Pubkey | str, data: bytes) -> OpenOrdersAccount:
        raw = self._decode_account(data, "OpenOrdersAccount")
        position = raw.position
        orders = tuple(
            OpenOrder(
                order_id=int(order.id),
                client_order_id=int(order.client_id),
                side=Side.BID if int(order.side_and_tree) in _BID_SIDE_AND_TREE else Side.ASK,
                price_lots=int(order.locked_price),
            )
            for order in raw.open_orders
            if not int(order.is_free)
        )
        return OpenOrdersAccount(
            address=str(address),
            owner=_pubkey_str(raw.owner),
            market=_pubkey_str(raw.market),
            name=_fixed_name(raw.name),
            account_num=int(raw.account_num),
            base_free_native=int(position.base_free_native),
            quote_free_native=int(position.quote_free_native),
            bids_base_lots=int(position.bids_base_lots),
            asks_base_lots=int(position.asks_base_lots),
            orders=orders,
        )

    def decode_indexer(self, address: Pubkey | str, data: bytes) -> OpenOrdersIndexer:
        raw = self._decode_account(data, "OpenOrdersIndexer")
        return OpenOrdersIndexer(
            address=str(address),
            created_counter=int(raw.created_counter),
            addresses=tuple(str(item) for item in raw.addresses),
        )

    def decode_book_side(self, side: Side, data: bytes) -> BookSideNodes:
        raw = self._decode_account(data, "BookSide")
        fixed_root = raw.roots[0]
        leaf_count = int(fixed_root.leaf_count)
        return BookSideNodes(
            side=side,
            root=int(fixed_root.maybe_node) if leaf_count else None,
            leaf_count=leaf_count,
            nodes=tuple(BookNode(tag=int(node.tag), data=bytes(node.data)) for node in raw.nodes.nodes),
        )

    def decode_market_meta_event(self, payload: bytes, *, timestamp: int | None) -> MarketEvent | None:
        """Decode a self-CPI event payload (8-byte event discriminator + body).

        Returns None for events other than MarketMetaDataLog.
        """
        program = self._load_program()
        try:
            event = program.coder.events.parse(bytes(payload))
        except Exception as exc:
            raise ValueError(f"event_decode_failed:{exc}") from exc
        if event is None or event.name != MARKET_META_DATA_EVENT:
            return None
        data = event.data
        return MarketEvent(
            market=_pubkey_str(data.market),
            base_mint=_pubkey_str(data.base_mint),
            quote_mint=_pubkey_str(data.quote_mint),
            name=str(data.name),
            timestamp=timestamp,
            base_decimals=int(data.base_decimals),
            quote_decimals=int(data.quote_decimals),
        )

    # Instructions

    def _ix(self, name: str, *args: Any, accounts: dict[str, Pubkey]) -> Instruction:
        program = self._load_program()
        anchorpy = _import_anchorpy()
        return program.instruction[name](*args, ctx=anchorpy.Context(accounts=accounts))

    def _side_variant(self, side: Side) -> Any:
        side_type = self._load_program().type["Side"]
        return side_type.Bid() if side == Side.BID else side_type.Ask()

    def create_open_orders_indexer_ix(self, *, payer: Pubkey, owner: Pubkey) -> Instruction:
        return self._ix(
            "create_open_orders_indexer",
            accounts={
                "payer": payer,
                "owner": owner,
                "open_orders_indexer": self.open_orders_indexer_address(owner),
                "system_program": SYS_PROGRAM_ID,
            },
        )

    def create_open_orders_account_ix(
        self,
        *,
        payer: Pubkey,
        owner: Pubkey,
        market: Pubkey,
        account_num: int,
        name: str,
    ) -> tuple[Instruction, Pubkey]:
        open_orders = self.open_orders_address(owner, account_num)
        ix = self._ix(
            "create_open_orders_account",
            name,
            accounts={
                "payer": payer,
                "owner": owner,
                "delegate_account": self.program_id,
                "open_orders_indexer": self.open_orders_indexer_address(owner),
                "open_orders_account": open_orders,
                "market": market,
                "system_program": SYS_PROGRAM_ID,
            },
        )
        return ix, open_orders

    def close_open_orders_account_ix(
        self, *, owner: Pubkey, open_orders: Pubkey, sol_destination: Pubkey | None = None
    ) -> Instruction:
        return self._ix(
            "close_open_orders_account",
            accounts={
                "owner": owner,
                "open_orders_indexer": self.open_orders_indexer_address(owner),
                "open_orders_account": open_orders,
                "sol_destination": sol_destination or owner,
                "system_program": SYS_PROGRAM_ID,
            },
        )

    def close_open_orders_indexer_ix(
        self, *, owner: Pubkey, sol_destination: Pubkey | None = None
    ) -> Instruction:
        return self._ix(
            "close_open_orders_indexer",
            accounts={
                "owner": owner,
                "open_orders_indexer": self.open_orders_indexer_address(owner),
                "sol_destination": sol_destination or owner,
                "token_program": TOKEN_PROGRAM_ID,
            },
        )

    def _optional(self, value: str | None) -> Pubkey:
        return Pubkey.from_string(value) if value else self.program_id

    def place_order_ix(
        self,
        *,
        signer: Pubkey,
        open_orders: Pubkey,
        market: MarketAccount,
        user_token_account: Pubkey,
        side: Side,
        price_lots: int,
        max_base_lots: int,
        max_quote_lots_including_fees: int,
        client_order_id: int | None = None,
        order_type: OrderType = OrderType.LIMIT,
        limit: int = DEFAULT_ORDER_LIMIT,
    ) -> Instruction:
        program = self._load_program()
        order_type_variant = getattr(program.type["PlaceOrderType"], _ORDER_TYPE_VARIANTS[order_type])()
        args = program.type["PlaceOrderArgs"](
            side=self._side_variant(side),
            price_lots=price_lots,
            max_base_lots=max_base_lots,
            max_quote_lots_including_fees=max_quote_lots_including_fees,
            client_order_id=client_order_id if client_order_id is not None else int(time.time() * 1000),
            order_type=order_type_variant,
            expiry_timestamp=0,
            self_trade_behavior=program.type["SelfTradeBehavior"].DecrementTake(),
            limit=limit,
        )
        market_vault = market.market_quote_vault if side == Side.BID else market.market_base_vault
        return self._ix(
            "place_order",
            args,
            accounts={
                "signer": signer,
                "open_orders_account": open_orders,
                "open_orders_admin": self._optional(market.open_orders_admin),
                "user_token_account": user_token_account,
                "market": Pubkey.from_string(market.address),
                "bids": Pubkey.from_string(market.bids),
                "asks": Pubkey.from_string(market.asks),
                "event_heap": Pubkey.from_string(market.event_heap),
                "market_vault": Pubkey.from_string(market_vault),
                "oracle_a": self._optional(market.oracle_a),
                "oracle_b": self._optional(market.oracle_b),
                "token_program": TOKEN_PROGRAM_ID,
            },
        )

    def _cancel_accounts(self, *, signer: Pubkey, open_orders: Pubkey, market: MarketAccount) -> dict[str, Pubkey]:
        return {
            "signer": signer,
            "open_orders_account": open_orders,
            "market": Pubkey.from_string(market.address),
            "bids": Pubkey.from_string(market.bids),
            "asks": Pubkey.from_string(market.asks),
        }

    def cancel_order_ix(
        self, *, signer: Pubkey, open_orders: Pubkey, market: MarketAccount, order_id: int
    ) -> Instruction:
        return self._ix(
            "cancel_order",
            order_id,
            accounts=self._cancel_accounts(signer=signer, open_orders=open_orders, market=market),
        )

    def cancel_order_by_client_order_id_ix(
        self, *, signer: Pubkey, open_orders: Pubkey, market: MarketAccount, client_order_id: int
    ) -> Instruction:
        return self._ix(
            "cancel_order_by_client_order_id",
            client_order_id,
            accounts=self._cancel_accounts(signer=signer, open_orders=open_orders, market=market),
        )

    def cancel_all_orders_ix(
        self,
        *,
        signer: Pubkey,
        open_orders: Pubkey,
        market: MarketAccount,
        limit: int,
        side: Side | None = None,
    ) -> Instruction:
        side_option = self._side_variant(side) if side is not None else None
        return self._ix(
            "cancel_all_orders",
            side_option,
            limit,
            accounts=self._cancel_accounts(signer=signer, open_orders=open_orders, market=market),
        )

    def deposit_ix(
        self,
        *,
        owner: Pubkey,
        open_orders: Pubkey,
        market: MarketAccount,
        user_base_account: Pubkey,
        user_quote_account: Pubkey,
        base_amount: int,
        quote_amount: int,
    ) -> Instruction:
        return self._ix(
            "deposit",
            base_amount,
            quote_amount,
            accounts={
                "owner": owner,
                "user_base_account": user_base_account,
                "user_quote_account": user_quote_account,
                "open_orders_account": open_orders,
                "market": Pubkey.from_string(market.address),
                "market_base_vault": Pubkey.from_string(market.market_base_vault),
                "market_quote_vault": Pubkey.from_string(market.market_quote_vault),
                "token_program": TOKEN_PROGRAM_ID,
            },
        )

    def settle_funds_ix(
        self,
        *,
        owner: Pubkey,
        open_orders: Pubkey,
        market: MarketAccount,
        user_base_account: Pubkey,
        user_quote_account: Pubkey,
        referrer: Pubkey | None = None,
    ) -> Instruction:
        return self._ix(
            "settle_funds",
            accounts={
                "owner": owner,
                "penalty_payer": owner,
                "open_orders_account": open_orders,
                "market": Pubkey.from_string(market.address),
                "market_authority": Pubkey.from_string(market.market_authority),
                "market_base_vault": Pubkey.from_string(market.market_base_vault),
                "market_quote_vault": Pubkey.from_string(market.market_quote_vault),
                "user_base_account": user_base_account,
                "user_quote_account": user_quote_account,
                "referrer_account": referrer or self.program_id,
                "token_program": TOKEN_PROGRAM_ID,
                "system_program": SYS_PROGRAM_ID,
            },
        )


def associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    return get_associated_token_address(owner, mint)


def create_ata_idempotent_ix(*, payer: Pubkey, owner: Pubkey, mint: Pubkey) -> Instruction:
    return create_idempotent_associated_token_account(payer, owner, mint)


def _b58(raw: bytes) -> str:
    return base58.b58encode(raw).decode("ascii")
