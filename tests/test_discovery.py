from __future__ import annotations

import hashlib
import logging
import struct

import base58
from solders.pubkey import Pubkey

from openbook_cli.adapters.openbook import OpenBookAdapter
from openbook_cli.adapters.solana_rpc import SolanaRpcTransportError
from openbook_cli.config.models import OPENBOOK_V2_PROGRAM_ID, DiscoveryConfig
from openbook_cli.core.types import UNAVAILABLE, MarketEvent, MarketRecord, ScanError, ScanStage
from openbook_cli.discovery import (
    attach_vault_balances,
    collect_markets,
    fetch_vault_balance,
    scan_market_events,
)

PAYER = str(Pubkey.new_unique())
EVENT_TAG = b"\xe4\x45\xa5\x2e\x51\xcb\x9a\x1d"


class _FakeDecoder:
    def __init__(self) -> None:
        self.program_id = Pubkey.new_unique()
        self._event_authority = Pubkey.new_unique()
        self.base_vault = Pubkey.new_unique()
        self.quote_vault = Pubkey.new_unique()

    def event_authority(self) -> Pubkey:
        return self._event_authority

    def decode_market_meta_event(self, payload: bytes, *, timestamp: int | None) -> MarketEvent | None:
        if payload.startswith(b"BAD"):
            raise ValueError("event_decode_failed:truncated")
        if not payload.startswith(b"MKT"):
            return None
        name = payload[3:].decode()
        return MarketEvent(
            market=str(Pubkey.new_unique()),
            base_mint=str(Pubkey.new_unique()),
            quote_mint=str(Pubkey.new_unique()),
            name=name,
            timestamp=timestamp,
            base_decimals=9,
            quote_decimals=6,
        )

    def market_vault_addresses(self, market, base_mint, quote_mint):
        return self.base_vault, self.quote_vault


def _tx(decoder: _FakeDecoder, signature: str, payload: bytes, **overrides) -> dict:
    keys = [PAYER, str(decoder.event_authority()), str(decoder.program_id)]
    inner = {
        "programIdIndex": overrides.get("program_index", 2),
        "accounts": overrides.get("accounts", [1]),
        "data": base58.b58encode(EVENT_TAG + payload).decode(),
    }
    return {
        "blockTime": 1_700_000_000,
        "transaction": {"signatures": [signature], "message": {"accountKeys": keys}},
        "meta": {"innerInstructions": [{"index": 0, "instructions": [inner]}]},
    }


class _FakeRpc:
    def __init__(self, decoder: _FakeDecoder, total: int, *, payloads: dict[str, bytes] | None = None) -> None:
        self.decoder = decoder
        self.signatures = [f"sig{i}" for i in range(total)]
        self.payloads = payloads or {}
        self.page_calls: list[tuple[int, str | None]] = []
        self.batch_calls: list[list[str]] = []
        self.failing_signature: str | None = None
        self.fail_page: int | None = None
        self.tx_overrides: dict[str, dict] = {}

    def get_signatures_for_address(self, address, *, limit, before=None):
        assert address == str(self.decoder.event_authority())
        self.page_calls.append((limit, before))
        if self.fail_page is not None and len(self.page_calls) == self.fail_page:
            raise SolanaRpcTransportError("solana_rpc_http_error:429")
        start = self.signatures.index(before) + 1 if before else 0
        return [{"signature": sig, "err": None} for sig in self.signatures[start : start + limit]]

    def get_transactions(self, signatures):
        self.batch_calls.append(list(signatures))
        if self.failing_signature in signatures:
            raise SolanaRpcTransportError("solana_rpc_timeout")
        return [
            _tx(
                self.decoder,
                sig,
                self.payloads.get(sig, f"MKT{sig}".encode()),
                **self.tx_overrides.get(sig, {}),
            )
            for sig in signatures
        ]


def test_scan_is_lazy() -> None:
    decoder = _FakeDecoder()
    rpc = _FakeRpc(decoder, 3)
    results = scan_market_events(rpc, decoder, sleep_fn=lambda _s: None)
    assert rpc.page_calls == []
    first = next(results)
    assert isinstance(first, MarketEvent)
    assert len(rpc.page_calls) == 1


def test_scan_pages_and_batches_all_signatures() -> None:
    decoder = _FakeDecoder()
    rpc = _FakeRpc(decoder, 450)
    results = list(scan_market_events(rpc, decoder, sleep_fn=lambda _s: None))

    assert len(rpc.page_calls) == 3
    assert rpc.page_calls[0] == (200, None)
    assert rpc.page_calls[1] == (200, "sig199")
    assert len(rpc.batch_calls) == 90
    assert all(len(batch) == 5 for batch in rpc.batch_calls)
    assert len(results) == 450
    assert all(isinstance(item, MarketEvent) for item in results)
    assert results[0].name == "sig0"
    assert results[0].timestamp == 1_700_000_000


def test_scan_with_exact_page_multiple_fetches_one_empty_page() -> None:
    decoder = _FakeDecoder()
    rpc = _FakeRpc(decoder, 20)
    config = DiscoveryConfig(signatures_page_size=10)
    results = list(scan_market_events(rpc, decoder, config=config, sleep_fn=lambda _s: None))
    assert len(rpc.page_calls) == 3
    assert len(results) == 20


def test_failed_batch_is_retried_then_skipped() -> None:
    decoder = _FakeDecoder()
    rpc = _FakeRpc(decoder, 12)
    rpc.failing_signature = "sig7"
    sleeps: list[float] = []
    results = list(scan_market_events(rpc, decoder, sleep_fn=sleeps.append))

    errors = [item for item in results if isinstance(item, ScanError)]
    events = [item for item in results if isinstance(item, MarketEvent)]
    assert len(errors) == 1
    assert errors[0].stage == ScanStage.TRANSACTIONS
    assert errors[0].signatures == ("sig5", "sig6", "sig7", "sig8", "sig9")
    assert len(events) == 7
    assert sleeps == [2.0, 2.0]
    assert sum(1 for batch in rpc.batch_calls if "sig7" in batch) == 3


def test_signature_page_failure_yields_error_and_stops() -> None:
    decoder = _FakeDecoder()
    rpc = _FakeRpc(decoder, 30)
    rpc.fail_page = 2
    config = DiscoveryConfig(signatures_page_size=10)
    results = list(scan_market_events(rpc, decoder, config=config, sleep_fn=lambda _s: None))

    assert len(results) == 11
    assert isinstance(results[-1], ScanError)
    assert results[-1].stage == ScanStage.SIGNATURES
    assert len(rpc.page_calls) == 2


def test_decode_failure_is_reported_and_scan_continues() -> None:
    decoder = _FakeDecoder()
    rpc = _FakeRpc(decoder, 4, payloads={"sig1": b"BADDATA", "sig2": b"OTHEREVENT"})
    results = list(scan_market_events(rpc, decoder, sleep_fn=lambda _s: None))

    kinds = [type(item).__name__ for item in results]
    assert kinds == ["MarketEvent", "ScanError", "MarketEvent"]
    assert results[1].stage == ScanStage.DECODE
    assert results[1].signatures == ("sig1",)


def test_scan_decodes_market_events_with_the_bundled_idl() -> None:
    venue = OpenBookAdapter(program_id=OPENBOOK_V2_PROGRAM_ID, rpc_url="https://rpc.test")
    market, base_mint, quote_mint = Pubkey.new_unique(), Pubkey.new_unique(), Pubkey.new_unique()
    payload = (
        hashlib.sha256(b"event:MarketMetaDataLog").digest()[:8]
        + bytes(market)
        + struct.pack("<I", 4)
        + b"BONK"
        + bytes(base_mint)
        + bytes(quote_mint)
        + bytes([5, 6])
        + struct.pack("<qq", 1_000, 1)
    )
    rpc = _FakeRpc(venue, 2, payloads={"sig0": payload, "sig1": payload})
    results = list(scan_market_events(rpc, venue, sleep_fn=lambda _s: None))
    assert [type(item) for item in results] == [MarketEvent, MarketEvent]
    assert results[0].market == str(market)
    assert results[0].name == "BONK"
    assert (results[0].base_decimals, results[0].quote_decimals) == (5, 6)


def test_inner_instructions_must_match_event_authority_and_program() -> None:
    decoder = _FakeDecoder()
    rpc = _FakeRpc(decoder, 4)
    rpc.tx_overrides = {
        "sig0": {"accounts": [7]},
        "sig1": {"program_index": 9},
        "sig2": {"accounts": [0]},
        "sig3": {"program_index": 1},
    }
    results = list(scan_market_events(rpc, decoder, sleep_fn=lambda _s: None))
    assert results == []


def test_collect_markets_logs_errors_and_keeps_order(caplog) -> None:
    caplog.set_level(logging.WARNING, logger="openbook_cli.discovery")
    first = MarketEvent("m1", "b1", "q1", "ONE", 1, 9, 6)
    second = MarketEvent("m2", "b2", "q2", "TWO", 2, 9, 6)
    records = collect_markets(
        [first, ScanError(stage=ScanStage.DECODE, detail="bad", signatures=("sigx",)), second]
    )
    assert [record.event.name for record in records] == ["ONE", "TWO"]
    assert "market_scan_error stage=decode signatures=sigx" in caplog.text


class _BalanceRpc:
    def __init__(self, balances: dict[str, dict], failing: set[str]) -> None:
        self.balances = balances
        self.failing = failing
        self.calls: list[str] = []

    def get_token_account_balance(self, address: str) -> dict:
        self.calls.append(address)
        if address in self.failing:
            raise SolanaRpcTransportError("solana_rpc_http_error:503")
        return self.balances[address]


def test_vault_balance_sentinel_after_retries() -> None:
    rpc = _BalanceRpc({}, {"vault"})
    sleeps: list[float] = []
    assert fetch_vault_balance(rpc, "vault", sleep_fn=sleeps.append) == UNAVAILABLE
    assert rpc.calls == ["vault", "vault", "vault"]
    assert sleeps == [1.0, 1.0]


def test_vault_balance_reads_ui_amount_or_falls_back_to_raw_amount() -> None:
    rpc = _BalanceRpc(
        {
            "a": {"uiAmount": 12.5, "amount": "12500000", "decimals": 6},
            "b": {"uiAmount": None, "amount": "0", "decimals": 6},
        },
        set(),
    )
    assert fetch_vault_balance(rpc, "a", sleep_fn=lambda _s: None) == 12.5
    assert fetch_vault_balance(rpc, "b", sleep_fn=lambda _s: None) == 0.0


def test_attach_vault_balances_derives_vaults_and_marks_failures() -> None:
    decoder = _FakeDecoder()
    event = MarketEvent(
        str(Pubkey.new_unique()), str(Pubkey.new_unique()), str(Pubkey.new_unique()), "X", None, 9, 6
    )
    rpc = _BalanceRpc(
        {str(decoder.base_vault): {"uiAmount": 3.0}},
        {str(decoder.quote_vault)},
    )
    records = attach_vault_balances([MarketRecord(event=event)], rpc, decoder, sleep_fn=lambda _s: None)
    assert records[0].base_vault == str(decoder.base_vault)
    assert records[0].base_vault_balance == 3.0
    assert records[0].quote_vault_balance == UNAVAILABLE
