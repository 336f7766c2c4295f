from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Iterator
from typing import Any, Protocol

import base58
from solders.pubkey import Pubkey

from openbook_cli.config.models import DiscoveryConfig
from openbook_cli.core.types import UNAVAILABLE, MarketEvent, MarketRecord, ScanError, ScanStage, VaultBalance

_discovery_logger = logging.getLogger("openbook_cli.discovery")

# Anchor's self-CPI event instructions start with this 8-byte tag.
EVENT_IX_TAG_LENGTH = 8


class DiscoveryRpc(Protocol):
    def get_signatures_for_address(
        self, address: str, *, limit: int, before: str | None = None
    ) -> list[dict[str, Any]]: ...

    def get_transactions(self, signatures: list[str]) -> list[dict[str, Any] | None]: ...

    def get_token_account_balance(self, address: str) -> dict[str, Any]: ...


class EventDecoder(Protocol):
    program_id: Pubkey

    def event_authority(self) -> Pubkey: ...

    def decode_market_meta_event(self, payload: bytes, *, timestamp: int | None) -> MarketEvent | None: ...

    def market_vault_addresses(
        self, market: Pubkey, base_mint: Pubkey, quote_mint: Pubkey
    ) -> tuple[Pubkey, Pubkey]: ...


def _chunks(items: list[str], size: int) -> Iterator[list[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _fetch_batch(
    rpc: DiscoveryRpc,
    batch: list[str],
    *,
    config: DiscoveryConfig,
    sleep_fn: Callable[[float], None],
) -> tuple[list[dict[str, Any] | None] | None, str]:
    last_error = ""
    for attempt in range(1, config.transaction_max_attempts + 1):
        try:
            return rpc.get_transactions(batch), ""
        except Exception as exc:
            last_error = str(exc)
            _discovery_logger.warning(
                "transaction_batch_retry attempt=%s max_attempts=%s first_signature=%s error=%s",
                attempt,
                config.transaction_max_attempts,
                batch[0],
                exc,
            )
            if attempt < config.transaction_max_attempts:
                sleep_fn(config.transaction_retry_backoff_seconds)
    return None, last_error


def _transaction_signature(tx: dict[str, Any]) -> str:
    signatures = ((tx.get("transaction") or {}).get("signatures")) or []
    return str(signatures[0]) if signatures else "-"


def _events_in_transaction(
    tx: dict[str, Any],
    decoder: EventDecoder,
    *,
    event_authority: str,
    program_id: str,
) -> Iterator[MarketEvent | ScanError]:
    meta = tx.get("meta") or {}
    message = (tx.get("transaction") or {}).get("message") or {}
    static_keys = message.get("accountKeys") or []
    inner_groups = meta.get("innerInstructions") or []
    if not static_keys or not inner_groups:
        return
    for group in inner_groups:
        for inner in group.get("instructions") or []:
            accounts = inner.get("accounts") or []
            program_index = inner.get("programIdIndex")
            if not accounts or not isinstance(program_index, int):
                continue
            authority_index = accounts[0]
            if not isinstance(authority_index, int):
                continue
            if authority_index >= len(static_keys) or program_index >= len(static_keys):
                continue
            if static_keys[authority_index] != event_authority or static_keys[program_index] != program_id:
                continue
            try:
                data = base58.b58decode(inner.get("data") or "")
                event = decoder.decode_market_meta_event(
                    data[EVENT_IX_TAG_LENGTH:], timestamp=tx.get("blockTime")
                )
            except ValueError as exc:
                signature = _transaction_signature(tx)
                yield ScanError(stage=ScanStage.DECODE, detail=str(exc), signatures=(signature,))
                continue
            if event is not None:
                yield event


def scan_market_events(
    rpc: DiscoveryRpc,
    decoder: EventDecoder,
    *,
    config: DiscoveryConfig | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> Iterator[MarketEvent | ScanError]:
    """Yield every market-creation event found in the event authority's history.

    The scan walks signatures newest first, one page at a time, and yields
    events as each transaction batch is decoded. Failures are yielded as
    ``ScanError`` values; only a signature page failure ends the scan.
    """
    cfg = config or DiscoveryConfig()
    event_authority = str(decoder.event_authority())
    program_id = str(decoder.program_id)
    before: str | None = None
    pages = 0
    while True:
        try:
            page = rpc.get_signatures_for_address(
                event_authority, limit=cfg.signatures_page_size, before=before
            )
        except Exception as exc:
            _discovery_logger.error("signature_page_failed page=%s before=%s error=%s", pages + 1, before, exc)
            yield ScanError(stage=ScanStage.SIGNATURES, detail=str(exc))
            return
        pages += 1
        signatures = [str(entry["signature"]) for entry in page if entry.get("signature")]
        _discovery_logger.debug("signature_page_fetched page=%s count=%s", pages, len(signatures))
        for batch in _chunks(signatures, cfg.transaction_batch_size):
            transactions, error = _fetch_batch(rpc, batch, config=cfg, sleep_fn=sleep_fn)
            if transactions is None:
                yield ScanError(stage=ScanStage.TRANSACTIONS, detail=error, signatures=tuple(batch))
                continue
            for tx in transactions:
                if not tx:
                    continue
                yield from _events_in_transaction(
                    tx, decoder, event_authority=event_authority, program_id=program_id
                )
        if len(page) < cfg.signatures_page_size or not signatures:
            return
        before = signatures[-1]


def collect_markets(results: Iterable[MarketEvent | ScanError]) -> list[MarketRecord]:
    records: list[MarketRecord] = []
    errors = 0
    for item in results:
        if isinstance(item, ScanError):
            errors += 1
            _discovery_logger.warning(
                "market_scan_error stage=%s signatures=%s detail=%s",
                item.stage,
                ",".join(item.signatures) or "-",
                item.detail,
            )
            continue
        records.append(MarketRecord(event=item))
    _discovery_logger.info("market_scan_complete markets=%s errors=%s", len(records), errors)
    return records


def _ui_balance(value: dict[str, Any]) -> float:
    ui_amount = value.get("uiAmount")
    if isinstance(ui_amount, int | float):
        return float(ui_amount)
    ui_string = value.get("uiAmountString")
    if isinstance(ui_string, str) and ui_string:
        return float(ui_string)
    amount = int(value["amount"])
    return amount / 10 ** int(value.get("decimals", 0))


def fetch_vault_balance(
    rpc: DiscoveryRpc,
    vault: str,
    *,
    config: DiscoveryConfig | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> VaultBalance:
    cfg = config or DiscoveryConfig()
    for attempt in range(1, cfg.vault_balance_max_attempts + 1):
        try:
            return _ui_balance(rpc.get_token_account_balance(vault))
        except Exception as exc:
            _discovery_logger.warning(
                "vault_balance_retry vault=%s attempt=%s max_attempts=%s error=%s",
                vault,
                attempt,
                cfg.vault_balance_max_attempts,
                exc,
            )
            if attempt < cfg.vault_balance_max_attempts:
                sleep_fn(cfg.vault_balance_retry_backoff_seconds)
    _discovery_logger.error("vault_balance_unavailable vault=%s", vault)
    return UNAVAILABLE


def attach_vault_balances(
    records: list[MarketRecord],
    rpc: DiscoveryRpc,
    decoder: EventDecoder,
    *,
    config: DiscoveryConfig | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> list[MarketRecord]:
    for record in records:
        event = record.event
        base_vault, quote_vault = decoder.market_vault_addresses(
            Pubkey.from_string(event.market),
            Pubkey.from_string(event.base_mint),
            Pubkey.from_string(event.quote_mint),
        )
        record.base_vault = str(base_vault)
        record.quote_vault = str(quote_vault)
        record.base_vault_balance = fetch_vault_balance(
            rpc, record.base_vault, config=config, sleep_fn=sleep_fn
        )
        record.quote_vault_balance = fetch_vault_balance(
            rpc, record.quote_vault, config=config, sleep_fn=sleep_fn
        )
    return records
