from __future__ import annotations

import hashlib
import struct
from pathlib import Path

import base58
import pytest
from solders.pubkey import Pubkey
from solders.system_program import ID as SYS_PROGRAM_ID
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address

from openbook_cli.adapters.openbook import (
    BUNDLED_IDL_PATH,
    OPEN_ORDERS_MARKET_OFFSET,
    OPEN_ORDERS_OWNER_OFFSET,
    OpenBookAdapter,
    account_discriminator,
)
from openbook_cli.config.models import OPENBOOK_V2_PROGRAM_ID
from openbook_cli.core.book import LEAF_NODE_TAG, best_price_lots
from openbook_cli.core.types import MarketAccount, MarketEvent, OrderType, Side

EVENT_DISCRIMINATOR = hashlib.sha256(b"event:MarketMetaDataLog").digest()[:8]


@pytest.fixture(scope="module")
def venue() -> OpenBookAdapter:
    return OpenBookAdapter(program_id=OPENBOOK_V2_PROGRAM_ID, rpc_url="https://rpc.test")


def _adapter(tmp_path: Path) -> OpenBookAdapter:
    return OpenBookAdapter(
        program_id=OPENBOOK_V2_PROGRAM_ID,
        idl_path=tmp_path / "openbook_v2.json",
        rpc_url="https://rpc.test",
    )


def _market() -> MarketAccount:
    keys = [str(Pubkey.new_unique()) for _ in range(9)]
    return MarketAccount(
        address=keys[0],
        name="SOL-USDC",
        base_mint=keys[1],
        quote_mint=keys[2],
        base_decimals=9,
        quote_decimals=6,
        base_lot_size=1_000_000,
        quote_lot_size=1,
        bids=keys[3],
        asks=keys[4],
        event_heap=keys[5],
        market_base_vault=keys[6],
        market_quote_vault=keys[7],
        market_authority=keys[8],
    )


def _sighash(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def _market_data(
    *,
    authority: Pubkey,
    bids: Pubkey,
    asks: Pubkey,
    event_heap: Pubkey,
    oracle_a: Pubkey,
    base_mint: Pubkey,
    quote_mint: Pubkey,
    base_vault: Pubkey,
    quote_vault: Pubkey,
) -> bytes:
    body = b"".join(
        [
            bytes([254, 9, 6]) + bytes(5),
            bytes(authority),
            struct.pack("<q", 0),
            bytes(32),
            bytes(32 * 3),
            b"SOL-USDC".ljust(16, b"\x00"),
            bytes(bids),
            bytes(asks),
            bytes(event_heap),
            bytes(oracle_a),
            bytes(32),
            struct.pack("<dq", 0.1, 100) + bytes(72),
            struct.pack("<qqQqqq", 1, 1_000_000, 7, 1_700_000_000, -200, 400),
            bytes(16 * 2),
            struct.pack("<QQ", 0, 0),
            bytes(16 * 2),
            bytes(base_mint),
            bytes(quote_mint),
            bytes(base_vault),
            struct.pack("<Q", 0),
            bytes(quote_vault),
            struct.pack("<Q", 0),
            bytes(128),
        ]
    )
    assert len(body) == 840
    return account_discriminator("Market") + body


def _open_order_slot(order_id: int, client_id: int, price_lots: int, side_and_tree: int) -> bytes:
    return order_id.to_bytes(16, "little") + struct.pack("<QqBB", client_id, price_lots, 0, side_and_tree) + bytes(6)


def _open_orders_data(owner: Pubkey, market: Pubkey) -> bytes:
    free_slot = bytes(16) + struct.pack("<QqBB", 0, 0, 1, 0) + bytes(6)
    slots = [
        _open_order_slot(11, 101, 150_000, 0),
        _open_order_slot(12, 102, 160_000, 1),
    ] + [free_slot] * 22
    body = b"".join(
        [
            bytes(owner),
            bytes(market),
            b"bot".ljust(32, b"\x00"),
            bytes(32),
            struct.pack("<IBB", 3, 255, 1) + bytes(2),
            struct.pack("<qqQQQQQ", 2_000, 1_000, 2_500_000_000, 1_250_000, 0, 0, 0),
            bytes(16 * 2),
            struct.pack("<q", 0) + bytes(64),
            *slots,
        ]
    )
    return account_discriminator("OpenOrdersAccount") + body


def _book_side_data(price_lots: int) -> bytes:
    leaf = bytearray(120)
    leaf[0] = LEAF_NODE_TAG
    leaf[8:24] = ((price_lots << 64) | 1).to_bytes(16, "little")
    struct.pack_into("<q", leaf, 56, 5)
    empty = bytes(120)
    body = b"".join(
        [
            struct.pack("<II", 0, 1),
            struct.pack("<II", 0, 0),
            bytes(8 * 4),
            bytes(256),
            bytes(4) + struct.pack("<III", 1, 0, 0),
            bytes(512),
            bytes(leaf),
            empty * 1023,
        ]
    )
    return account_discriminator("BookSide") + body


def _event_payload(market: Pubkey, base_mint: Pubkey, quote_mint: Pubkey) -> bytes:
    name = b"SOL-USDC"
    return (
        EVENT_DISCRIMINATOR
        + bytes(market)
        + struct.pack("<I", len(name))
        + name
        + bytes(base_mint)
        + bytes(quote_mint)
        + bytes([9, 6])
        + struct.pack("<qq", 1_000_000, 1)
    )


def test_account_discriminator_is_anchor_sighash() -> None:
    assert len(account_discriminator("Market")) == 8
    assert account_discriminator("Market") != account_discriminator("BookSide")


def test_pdas_are_deterministic_and_distinct(tmp_path: Path) -> None:
    adapter = _adapter(tmp_path)
    owner = Pubkey.new_unique()
    program_id = Pubkey.from_string(OPENBOOK_V2_PROGRAM_ID)
    expected_authority = Pubkey.find_program_address([b"__event_authority"], program_id)[0]
    assert adapter.event_authority() == expected_authority
    first = adapter.open_orders_address(owner, 1)
    assert first == adapter.open_orders_address(owner, 1)
    assert first != adapter.open_orders_address(owner, 2)
    assert adapter.open_orders_indexer_address(owner) not in {first, expected_authority}


def test_market_vaults_are_authority_atas(tmp_path: Path) -> None:
    adapter = _adapter(tmp_path)
    market, base_mint, quote_mint = Pubkey.new_unique(), Pubkey.new_unique(), Pubkey.new_unique()
    authority = adapter.market_authority_address(market)
    base_vault, quote_vault = adapter.market_vault_addresses(market, base_mint, quote_mint)
    assert base_vault == get_associated_token_address(authority, base_mint)
    assert quote_vault == get_associated_token_address(authority, quote_mint)


def test_open_orders_filters(tmp_path: Path) -> None:
    adapter = _adapter(tmp_path)
    owner, market = Pubkey.new_unique(), Pubkey.new_unique()
    filters = adapter.open_orders_filters(owner)
    assert len(filters) == 2
    assert base58.b58decode(filters[0]["memcmp"]["bytes"]) == account_discriminator("OpenOrdersAccount")
    assert filters[1]["memcmp"] == {"offset": OPEN_ORDERS_OWNER_OFFSET, "bytes": str(owner)}
    with_market = adapter.open_orders_filters(owner, market)
    assert with_market[2]["memcmp"] == {"offset": OPEN_ORDERS_MARKET_OFFSET, "bytes": str(market)}


def test_missing_idl_path_reports_sdk_unavailable(tmp_path: Path) -> None:
    ok, detail = _adapter(tmp_path).sdk_available()
    assert ok is False
    assert detail.startswith("openbook_idl_not_found:")


def test_decode_rejects_wrong_account_type_before_loading_idl(tmp_path: Path) -> None:
    adapter = _adapter(tmp_path)
    data = account_discriminator("BookSide") + bytes(64)
    with pytest.raises(ValueError, match="account_type_mismatch:expected_Market"):
        adapter.decode_market(Pubkey.new_unique(), data)


def test_bundled_idl_is_the_default(venue: OpenBookAdapter) -> None:
    assert venue.idl_path == BUNDLED_IDL_PATH
    assert BUNDLED_IDL_PATH.is_file()
    assert venue.sdk_available() == (True, "ok")


def test_decode_market(venue: OpenBookAdapter) -> None:
    names = ("authority", "bids", "asks", "event_heap", "oracle_a", "base_mint", "quote_mint", "base_vault", "quote_vault")
    keys = {name: Pubkey.new_unique() for name in names}
    address = Pubkey.new_unique()
    market = venue.decode_market(address, _market_data(**keys))
    assert market.address == str(address)
    assert market.name == "SOL-USDC"
    assert (market.base_decimals, market.quote_decimals) == (9, 6)
    assert (market.base_lot_size, market.quote_lot_size) == (1_000_000, 1)
    assert market.bids == str(keys["bids"])
    assert market.asks == str(keys["asks"])
    assert market.event_heap == str(keys["event_heap"])
    assert market.base_mint == str(keys["base_mint"])
    assert market.quote_mint == str(keys["quote_mint"])
    assert market.market_base_vault == str(keys["base_vault"])
    assert market.market_quote_vault == str(keys["quote_vault"])
    assert market.market_authority == str(keys["authority"])
    assert market.open_orders_admin is None
    assert market.oracle_a == str(keys["oracle_a"])
    assert market.oracle_b is None


def test_decode_open_orders_skips_free_slots(venue: OpenBookAdapter) -> None:
    owner, market = Pubkey.new_unique(), Pubkey.new_unique()
    account = venue.decode_open_orders(Pubkey.new_unique(), _open_orders_data(owner, market))
    assert account.owner == str(owner)
    assert account.market == str(market)
    assert account.name == "bot"
    assert account.account_num == 3
    assert account.base_free_native == 2_500_000_000
    assert account.quote_free_native == 1_250_000
    assert (account.bids_base_lots, account.asks_base_lots) == (2_000, 1_000)
    assert [(o.order_id, o.client_order_id, o.side, o.price_lots) for o in account.orders] == [
        (11, 101, Side.BID, 150_000),
        (12, 102, Side.ASK, 160_000),
    ]


def test_decode_indexer(venue: OpenBookAdapter) -> None:
    addresses = [Pubkey.new_unique(), Pubkey.new_unique()]
    data = (
        account_discriminator("OpenOrdersIndexer")
        + struct.pack("<BII", 254, 4, len(addresses))
        + b"".join(bytes(a) for a in addresses)
    )
    indexer = venue.decode_indexer(Pubkey.new_unique(), data)
    assert indexer.created_counter == 4
    assert indexer.addresses == tuple(str(a) for a in addresses)


def test_decode_book_side(venue: OpenBookAdapter) -> None:
    book = venue.decode_book_side(Side.ASK, _book_side_data(155_000))
    assert book.side == Side.ASK
    assert book.root == 0
    assert book.leaf_count == 1
    assert len(book.nodes) == 1024
    assert book.nodes[0].tag == LEAF_NODE_TAG
    assert best_price_lots(book) == 155_000


def test_decode_market_meta_event(venue: OpenBookAdapter) -> None:
    market, base_mint, quote_mint = Pubkey.new_unique(), Pubkey.new_unique(), Pubkey.new_unique()
    event = venue.decode_market_meta_event(_event_payload(market, base_mint, quote_mint), timestamp=1_700_000_000)
    assert event == MarketEvent(
        market=str(market),
        base_mint=str(base_mint),
        quote_mint=str(quote_mint),
        name="SOL-USDC",
        timestamp=1_700_000_000,
        base_decimals=9,
        quote_decimals=6,
    )


def test_decode_other_event_returns_none(venue: OpenBookAdapter) -> None:
    other = hashlib.sha256(b"event:FillLog").digest()[:8]
    assert venue.decode_market_meta_event(other + bytes(64), timestamp=None) is None


def test_decode_truncated_event_fails(venue: OpenBookAdapter) -> None:
    with pytest.raises(ValueError, match="event_decode_failed:"):
        venue.decode_market_meta_event(EVENT_DISCRIMINATOR + bytes(10), timestamp=None)


def test_place_bid_instruction_layout(venue: OpenBookAdapter) -> None:
    market = _market()
    signer, open_orders, token_account = Pubkey.new_unique(), Pubkey.new_unique(), Pubkey.new_unique()
    ix = venue.place_order_ix(
        signer=signer,
        open_orders=open_orders,
        market=market,
        user_token_account=token_account,
        side=Side.BID,
        price_lots=150,
        max_base_lots=2,
        max_quote_lots_including_fees=300_000_000,
        client_order_id=77,
        order_type=OrderType.POST_ONLY,
    )
    assert ix.program_id == venue.program_id
    assert ix.data[:8] == _sighash("place_order")
    # side, price, max base, max quote, client id, order type, expiry, self trade, limit
    assert struct.unpack("<BqqqQBQBB", ix.data[8:]) == (0, 150, 2, 300_000_000, 77, 2, 0, 0, 16)
    keys = [meta.pubkey for meta in ix.accounts]
    assert keys == [
        signer,
        open_orders,
        venue.program_id,
        token_account,
        Pubkey.from_string(market.address),
        Pubkey.from_string(market.bids),
        Pubkey.from_string(market.asks),
        Pubkey.from_string(market.event_heap),
        Pubkey.from_string(market.market_quote_vault),
        venue.program_id,
        venue.program_id,
        TOKEN_PROGRAM_ID,
    ]
    assert ix.accounts[0].is_signer
    assert ix.accounts[1].is_writable


def test_place_ask_uses_base_vault_and_default_client_id(venue: OpenBookAdapter) -> None:
    market = _market()
    ix = venue.place_order_ix(
        signer=Pubkey.new_unique(),
        open_orders=Pubkey.new_unique(),
        market=market,
        user_token_account=Pubkey.new_unique(),
        side=Side.ASK,
        price_lots=150,
        max_base_lots=2,
        max_quote_lots_including_fees=300,
    )
    assert ix.accounts[8].pubkey == Pubkey.from_string(market.market_base_vault)
    side, *_rest, client_order_id, order_type, _expiry, _stb, _limit = struct.unpack("<BqqqQBQBB", ix.data[8:])
    assert side == 1
    assert order_type == 0
    assert client_order_id > 0


def test_cancel_all_orders_encodes_optional_side(venue: OpenBookAdapter) -> None:
    accounts = dict(signer=Pubkey.new_unique(), open_orders=Pubkey.new_unique(), market=_market())
    both_sides = venue.cancel_all_orders_ix(**accounts, limit=12)
    assert both_sides.data == _sighash("cancel_all_orders") + bytes([0, 12])
    asks_only = venue.cancel_all_orders_ix(**accounts, limit=5, side=Side.ASK)
    assert asks_only.data == _sighash("cancel_all_orders") + bytes([1, 1, 5])


def test_cancel_order_by_ids(venue: OpenBookAdapter) -> None:
    accounts = dict(signer=Pubkey.new_unique(), open_orders=Pubkey.new_unique(), market=_market())
    by_id = venue.cancel_order_ix(**accounts, order_id=(5 << 64) | 9)
    assert by_id.data == _sighash("cancel_order") + ((5 << 64) | 9).to_bytes(16, "little")
    by_client = venue.cancel_order_by_client_order_id_ix(**accounts, client_order_id=42)
    assert by_client.data == _sighash("cancel_order_by_client_order_id") + struct.pack("<Q", 42)
    assert len(by_client.accounts) == 5


def test_create_open_orders_account_instruction(venue: OpenBookAdapter) -> None:
    owner, market = Pubkey.new_unique(), Pubkey.new_unique()
    ix, address = venue.create_open_orders_account_ix(
        payer=owner, owner=owner, market=market, account_num=3, name="bot"
    )
    assert address == venue.open_orders_address(owner, 3)
    assert ix.data == _sighash("create_open_orders_account") + struct.pack("<I", 3) + b"bot"
    assert [meta.pubkey for meta in ix.accounts] == [
        owner,
        owner,
        venue.program_id,
        venue.open_orders_indexer_address(owner),
        address,
        market,
        SYS_PROGRAM_ID,
    ]


def test_deposit_and_settle_instructions(venue: OpenBookAdapter) -> None:
    market = _market()
    owner, open_orders = Pubkey.new_unique(), Pubkey.new_unique()
    base_account, quote_account = Pubkey.new_unique(), Pubkey.new_unique()
    deposit = venue.deposit_ix(
        owner=owner,
        open_orders=open_orders,
        market=market,
        user_base_account=base_account,
        user_quote_account=quote_account,
        base_amount=1_500_000_000,
        quote_amount=0,
    )
    assert deposit.data == _sighash("deposit") + struct.pack("<QQ", 1_500_000_000, 0)
    assert deposit.accounts[5].pubkey == Pubkey.from_string(market.market_base_vault)

    settle = venue.settle_funds_ix(
        owner=owner,
        open_orders=open_orders,
        market=market,
        user_base_account=base_account,
        user_quote_account=quote_account,
    )
    assert settle.data == _sighash("settle_funds")
    assert len(settle.accounts) == 12
    assert settle.accounts[4].pubkey == Pubkey.from_string(market.market_authority)
    assert settle.accounts[9].pubkey == venue.program_id
