from __future__ import annotations

import argparse
import json
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from openbook_cli.adapters.openbook import (
    OpenBookAdapter,
    associated_token_address,
    create_ata_idempotent_ix,
)
from openbook_cli.adapters.solana_rpc import SolanaRpcAdapter
from openbook_cli.cli.render import (
    format_ui,
    listed_markets_table,
    market_records_table,
    order_book_table,
)
from openbook_cli.config.io import default_program_config_path, load_program_config
from openbook_cli.config.models import ProgramConfig
from openbook_cli.core.book import best_price_lots, l2_levels
from openbook_cli.core.errors import DomainError
from openbook_cli.core.lots import (
    base_ui_to_lots,
    native_to_ui,
    non_negative_amount,
    positive_amount,
    price_lots_to_ui,
    price_ui_to_lots,
    quote_ui_to_lots,
    ui_to_native,
)
from openbook_cli.core.types import MarketAccount, OpenOrdersAccount, OrderType, Side
from openbook_cli.discovery import (
    attach_vault_balances,
    collect_markets,
    fetch_vault_balance,
    scan_market_events,
)
from openbook_cli.keys.loader import load_keypair, parse_public_key
from openbook_cli.logging_setup import initialize_cli_logging
from openbook_cli.submission import (
    SubmissionExhaustedError,
    SubmissionPolicy,
    SubmissionResult,
    TransactionFailedError,
    TransactionSubmitter,
    resolve_priority_fee,
)

_manager_logger = logging.getLogger("openbook_cli.manager")

SERVICE_NAME = "openbook_cli"


@dataclass(slots=True)
class CommandContext:
    program: ProgramConfig
    rpc: Any
    venue: Any
    priority_fee_override: int | None = None
    sleep_fn: Callable[[float], None] = field(default=time.sleep)

    def priority_fee(self) -> int:
        if self.priority_fee_override is not None:
            return self.priority_fee_override
        return resolve_priority_fee(self.rpc, self.program.submission.base_priority_fee_micro_lamports)

    def submit(
        self,
        payer: Keypair,
        instructions: Sequence[Any],
        *,
        additional_signers: Sequence[Keypair] = (),
    ) -> SubmissionResult:
        submitter = TransactionSubmitter(
            self.rpc,
            payer,
            SubmissionPolicy.from_config(self.program.submission),
            sleep_fn=self.sleep_fn,
        )
        return submitter.submit(
            instructions,
            priority_fee_micro_lamports=self.priority_fee(),
            additional_signers=additional_signers,
        )


def _build_context(program: ProgramConfig, *, priority_fee_override: int | None) -> CommandContext:
    rpc = SolanaRpcAdapter(
        program.rpc_url,
        commitment=program.rpc_commitment,
        timeout_seconds=program.rpc_timeout_seconds,
    )
    venue = OpenBookAdapter(
        program_id=program.program_id,
        idl_path=program.idl_path,
        rpc_url=program.rpc_url,
    )
    return CommandContext(program=program, rpc=rpc, venue=venue, priority_fee_override=priority_fee_override)


def _print_json(payload: dict[str, Any]) -> None:
    print(json.dumps(payload))


def _print_lines(lines: Sequence[str]) -> None:
    for line in lines:
        print(line)


def _submission_payload(result: SubmissionResult) -> dict[str, Any]:
    return {
        "signature": result.signature,
        "attempts": result.attempts,
        "priority_fees": list(result.fees),
    }


def _load_market(ctx: CommandContext, market: Pubkey) -> MarketAccount:
    data = ctx.rpc.get_account_info(str(market))
    if data is None:
        raise ValueError("Market data not found")
    return ctx.venue.decode_market(market, data)


def _load_open_orders(ctx: CommandContext, open_orders: Pubkey) -> OpenOrdersAccount:
    data = ctx.rpc.get_account_info(str(open_orders))
    if data is None:
        raise ValueError("OpenOrders account not found")
    return ctx.venue.decode_open_orders(open_orders, data)


def _require_market_match(open_orders: OpenOrdersAccount, market: Pubkey) -> None:
    if open_orders.market != str(market):
        raise ValueError("OpenOrders account does not belong to the specified market")


def _load_market_and_open_orders(
    ctx: CommandContext, *, market: Pubkey, open_orders: Pubkey
) -> tuple[MarketAccount, OpenOrdersAccount]:
    market_account = _load_market(ctx, market)
    open_orders_account = _load_open_orders(ctx, open_orders)
    _require_market_match(open_orders_account, market)
    return market_account, open_orders_account


def _owner_open_orders(
    ctx: CommandContext, owner: Pubkey, market: Pubkey | None = None
) -> list[OpenOrdersAccount]:
    if market is not None:
        accounts = ctx.rpc.get_program_accounts(
            str(ctx.venue.program_id), filters=ctx.venue.open_orders_filters(owner, market)
        )
        return [ctx.venue.decode_open_orders(address, data) for address, data in accounts]
    indexer_address = ctx.venue.open_orders_indexer_address(owner)
    indexer_data = ctx.rpc.get_account_info(str(indexer_address))
    if indexer_data is None:
        return []
    indexer = ctx.venue.decode_indexer(indexer_address, indexer_data)
    if not indexer.addresses:
        return []
    results: list[OpenOrdersAccount] = []
    datas = ctx.rpc.get_multiple_accounts(list(indexer.addresses))
    for address, data in zip(indexer.addresses, datas, strict=True):
        if data is None:
            _manager_logger.warning("open_orders_account_missing address=%s", address)
            continue
        results.append(ctx.venue.decode_open_orders(address, data))
    return results


def _balance(ctx: CommandContext, *, open_orders: str, market: str) -> int:
    open_orders_pk = parse_public_key(open_orders, field_name="OpenOrders public key")
    market_pk = parse_public_key(market, field_name="market public key")
    market_account, account = _load_market_and_open_orders(ctx, market=market_pk, open_orders=open_orders_pk)
    _print_json(
        {
            "open_orders": str(open_orders_pk),
            "market": str(market_pk),
            "base_mint": market_account.base_mint,
            "quote_mint": market_account.quote_mint,
            "base_free": native_to_ui(account.base_free_native, market_account.base_decimals),
            "quote_free": native_to_ui(account.quote_free_native, market_account.quote_decimals),
        }
    )
    return 0


def _create_ooa(ctx: CommandContext, *, market: str, owner_keypair: str, name: str) -> int:
    market_pk = parse_public_key(market, field_name="market public key")
    owner = load_keypair(owner_keypair)
    owner_pk = owner.pubkey()
    _load_market(ctx, market_pk)

    instructions = []
    indexer_address = ctx.venue.open_orders_indexer_address(owner_pk)
    indexer_data = ctx.rpc.get_account_info(str(indexer_address))
    if indexer_data is None:
        _manager_logger.info("open_orders_indexer_create owner=%s indexer=%s", owner_pk, indexer_address)
        instructions.append(ctx.venue.create_open_orders_indexer_ix(payer=owner_pk, owner=owner_pk))
        account_num = 1
    else:
        indexer = ctx.venue.decode_indexer(indexer_address, indexer_data)
        account_num = indexer.created_counter + 1
    create_ix, open_orders = ctx.venue.create_open_orders_account_ix(
        payer=owner_pk,
        owner=owner_pk,
        market=market_pk,
        account_num=account_num,
        name=name,
    )
    instructions.append(create_ix)
    result = ctx.submit(owner, instructions)
    _manager_logger.info(
        "open_orders_created open_orders=%s market=%s signature=%s", open_orders, market_pk, result.signature
    )
    _print_json(
        {
            "open_orders": str(open_orders),
            "open_orders_indexer": str(indexer_address),
            "account_num": account_num,
            **_submission_payload(result),
        }
    )
    return 0


def _close_ooa(
    ctx: CommandContext,
    *,
    owner_keypair: str,
    open_orders: str | None,
    market: str | None,
    close_indexer: bool,
) -> int:
    selected = sum(1 for flag in (open_orders, market, close_indexer) if flag)
    if selected != 1:
        raise ValueError("provide exactly one of --open-orders, --market, --close-indexer")
    open_orders_pk = parse_public_key(open_orders, field_name="OpenOrders public key") if open_orders else None
    market_pk = parse_public_key(market, field_name="market public key") if market else None
    owner = load_keypair(owner_keypair)
    owner_pk = owner.pubkey()

    if open_orders_pk is not None:
        ix = ctx.venue.close_open_orders_account_ix(owner=owner_pk, open_orders=open_orders_pk)
        result = ctx.submit(owner, [ix])
        _print_json({"closed": [str(open_orders_pk)], **_submission_payload(result)})
        return 0

    if close_indexer:
        ix = ctx.venue.close_open_orders_indexer_ix(owner=owner_pk)
        result = ctx.submit(owner, [ix])
        indexer = ctx.venue.open_orders_indexer_address(owner_pk)
        _print_json({"closed_indexer": str(indexer), **_submission_payload(result)})
        return 0

    assert market_pk is not None
    accounts = _owner_open_orders(ctx, owner_pk, market_pk)
    if not accounts:
        _manager_logger.info("close_open_orders_none market=%s owner=%s", market_pk, owner_pk)
        _print_json({"closed": [], "failed": []})
        return 0
    closed: list[dict[str, str]] = []
    failed: list[dict[str, str]] = []
    for account in accounts:
        address = Pubkey.from_string(account.address)
        try:
            ix = ctx.venue.close_open_orders_account_ix(owner=owner_pk, open_orders=address)
            result = ctx.submit(owner, [ix])
        except TransactionFailedError as exc:
            _log_transaction_failure(exc)
            failed.append({"open_orders": account.address, "error": str(exc)})
            continue
        except RuntimeError as exc:
            _manager_logger.error("close_open_orders_failed open_orders=%s error=%s", account.address, exc)
            failed.append({"open_orders": account.address, "error": str(exc)})
            continue
        _manager_logger.info("open_orders_closed open_orders=%s signature=%s", account.address, result.signature)
        closed.append({"open_orders": account.address, "signature": result.signature})
    _print_json({"closed": closed, "failed": failed})
    return 1 if failed else 0


def _fetch_ooa(ctx: CommandContext, *, owner: str, market: str | None) -> int:
    owner_pk = parse_public_key(owner, field_name="owner public key")
    market_pk = parse_public_key(market, field_name="market public key") if market else None
    indexer = ctx.venue.open_orders_indexer_address(owner_pk)
    accounts = _owner_open_orders(ctx, owner_pk, market_pk)
    _print_json(
        {
            "owner": str(owner_pk),
            "open_orders_indexer": str(indexer),
            "market": str(market_pk) if market_pk else None,
            "open_orders": [
                {"address": account.address, "name": account.name or "Unnamed", "market": account.market}
                for account in accounts
            ],
        }
    )
    return 0


def _describe_open_orders(account: OpenOrdersAccount, market: MarketAccount) -> dict[str, Any]:
    return {
        "open_orders": account.address,
        "market": account.market,
        "name": account.name,
        "orders": [
            {
                "order_id": str(order.order_id),
                "client_order_id": str(order.client_order_id),
                "side": order.side.value,
                "price": price_lots_to_ui(market, order.price_lots),
            }
            for order in account.orders
        ],
        "position": {
            "base_free": native_to_ui(account.base_free_native, market.base_decimals),
            "quote_free": native_to_ui(account.quote_free_native, market.quote_decimals),
            "bids_base_lots": account.bids_base_lots,
            "asks_base_lots": account.asks_base_lots,
        },
    }


def _get_order(
    ctx: CommandContext, *, wallet: str | None, open_orders: str | None, market: str | None
) -> int:
    if not wallet and not open_orders:
        raise ValueError("provide --wallet or --open-orders")
    market_pk = parse_public_key(market, field_name="market public key") if market else None
    markets: dict[str, MarketAccount] = {}
    if market_pk is not None:
        markets[str(market_pk)] = _load_market(ctx, market_pk)

    if open_orders:
        open_orders_pk = parse_public_key(open_orders, field_name="OpenOrders public key")
        account = _load_open_orders(ctx, open_orders_pk)
        if market_pk is not None:
            _require_market_match(account, market_pk)
        accounts = [account]
    else:
        wallet_pk = parse_public_key(wallet or "", field_name="wallet public key")
        accounts = _owner_open_orders(ctx, wallet_pk, market_pk)

    described = []
    for account in accounts:
        if account.market not in markets:
            markets[account.market] = _load_market(ctx, Pubkey.from_string(account.market))
        described.append(_describe_open_orders(account, markets[account.market]))
    _print_json({"open_orders": described})
    return 0


def _deposit(
    ctx: CommandContext,
    *,
    market: str,
    open_orders: str,
    owner_keypair: str,
    base_amount: str,
    quote_amount: str,
) -> int:
    market_pk = parse_public_key(market, field_name="market public key")
    open_orders_pk = parse_public_key(open_orders, field_name="OpenOrders public key")
    owner = load_keypair(owner_keypair)
    base_value = non_negative_amount(base_amount, name="base amount")
    quote_value = non_negative_amount(quote_amount, name="quote amount")
    owner_pk = owner.pubkey()
    market_account, _ = _load_market_and_open_orders(ctx, market=market_pk, open_orders=open_orders_pk)

    base_native = ui_to_native(base_value, market_account.base_decimals)
    quote_native = ui_to_native(quote_value, market_account.quote_decimals)
    if base_native == 0 and quote_native == 0:
        raise ValueError("deposit amounts are both zero")
    ix = ctx.venue.deposit_ix(
        owner=owner_pk,
        open_orders=open_orders_pk,
        market=market_account,
        user_base_account=associated_token_address(owner_pk, Pubkey.from_string(market_account.base_mint)),
        user_quote_account=associated_token_address(owner_pk, Pubkey.from_string(market_account.quote_mint)),
        base_amount=base_native,
        quote_amount=quote_native,
    )
    result = ctx.submit(owner, [ix])
    _print_json(
        {
            "open_orders": str(open_orders_pk),
            "base_amount_native": base_native,
            "quote_amount_native": quote_native,
            **_submission_payload(result),
        }
    )
    return 0


def _withdraw(ctx: CommandContext, *, market: str, open_orders: str, owner_keypair: str) -> int:
    market_pk = parse_public_key(market, field_name="market public key")
    open_orders_pk = parse_public_key(open_orders, field_name="OpenOrders public key")
    owner = load_keypair(owner_keypair)
    owner_pk = owner.pubkey()
    market_account, _ = _load_market_and_open_orders(ctx, market=market_pk, open_orders=open_orders_pk)

    base_mint = Pubkey.from_string(market_account.base_mint)
    quote_mint = Pubkey.from_string(market_account.quote_mint)
    instructions = [
        create_ata_idempotent_ix(payer=owner_pk, owner=owner_pk, mint=base_mint),
        create_ata_idempotent_ix(payer=owner_pk, owner=owner_pk, mint=quote_mint),
        ctx.venue.settle_funds_ix(
            owner=owner_pk,
            open_orders=open_orders_pk,
            market=market_account,
            user_base_account=associated_token_address(owner_pk, base_mint),
            user_quote_account=associated_token_address(owner_pk, quote_mint),
        ),
    ]
    result = ctx.submit(owner, instructions)
    _print_json({"open_orders": str(open_orders_pk), **_submission_payload(result)})
    return 0


def _place_order(
    ctx: CommandContext,
    *,
    market: str,
    open_orders: str,
    owner_keypair: str,
    side: str,
    price: str,
    size: str,
    order_type: str,
    client_order_id: int | None,
    limit: int | None,
) -> int:
    order_side = Side(side)
    kind = OrderType(order_type)
    price_value = positive_amount(price, name="price")
    size_value = positive_amount(size, name="size")
    market_pk = parse_public_key(market, field_name="market public key")
    open_orders_pk = parse_public_key(open_orders, field_name="OpenOrders public key")
    owner = load_keypair(owner_keypair)
    owner_pk = owner.pubkey()
    market_account, _ = _load_market_and_open_orders(ctx, market=market_pk, open_orders=open_orders_pk)

    price_lots = price_ui_to_lots(market_account, price_value)
    base_lots = base_ui_to_lots(market_account, size_value)
    max_quote_lots = quote_ui_to_lots(market_account, price_value * size_value)
    mint = market_account.quote_mint if order_side == Side.BID else market_account.base_mint
    ix = ctx.venue.place_order_ix(
        signer=owner_pk,
        open_orders=open_orders_pk,
        market=market_account,
        user_token_account=associated_token_address(owner_pk, Pubkey.from_string(mint)),
        side=order_side,
        price_lots=price_lots,
        max_base_lots=base_lots,
        max_quote_lots_including_fees=max_quote_lots,
        client_order_id=client_order_id,
        order_type=kind,
        limit=limit if limit is not None else ctx.program.orders_default_limit,
    )
    result = ctx.submit(owner, [ix])
    _manager_logger.info(
        "order_placed market=%s side=%s price_lots=%s base_lots=%s signature=%s",
        market_pk,
        order_side,
        price_lots,
        base_lots,
        result.signature,
    )
    _print_json(
        {
            "open_orders": str(open_orders_pk),
            "side": order_side.value,
            "price_lots": price_lots,
            "max_base_lots": base_lots,
            "max_quote_lots_including_fees": max_quote_lots,
            **_submission_payload(result),
        }
    )
    return 0


def _cancel_order(
    ctx: CommandContext,
    *,
    market: str,
    open_orders: str,
    owner_keypair: str,
    order_id: int | None,
    client_order_id: int | None,
    side: str | None,
    limit: int | None,
) -> int:
    if order_id is not None and client_order_id is not None:
        raise ValueError("specify either --order-id or --client-order-id, not both")
    market_pk = parse_public_key(market, field_name="market public key")
    open_orders_pk = parse_public_key(open_orders, field_name="OpenOrders public key")
    owner = load_keypair(owner_keypair)
    owner_pk = owner.pubkey()
    market_account, _ = _load_market_and_open_orders(ctx, market=market_pk, open_orders=open_orders_pk)

    if order_id is not None:
        ix = ctx.venue.cancel_order_ix(
            signer=owner_pk, open_orders=open_orders_pk, market=market_account, order_id=order_id
        )
        scope = {"order_id": str(order_id)}
    elif client_order_id is not None:
        ix = ctx.venue.cancel_order_by_client_order_id_ix(
            signer=owner_pk,
            open_orders=open_orders_pk,
            market=market_account,
            client_order_id=client_order_id,
        )
        scope = {"client_order_id": str(client_order_id)}
    else:
        cancel_limit = limit if limit is not None else ctx.program.orders_cancel_all_limit
        ix = ctx.venue.cancel_all_orders_ix(
            signer=owner_pk,
            open_orders=open_orders_pk,
            market=market_account,
            limit=cancel_limit,
            side=Side(side) if side else None,
        )
        scope = {"cancel_all": True, "side": side, "limit": cancel_limit}
    result = ctx.submit(owner, [ix])
    _print_json({"open_orders": str(open_orders_pk), **scope, **_submission_payload(result)})
    return 0


def _load_book(ctx: CommandContext, market: MarketAccount) -> tuple[Any, Any]:
    bids_data, asks_data = ctx.rpc.get_multiple_accounts([market.bids, market.asks])
    if bids_data is None or asks_data is None:
        raise ValueError("order book accounts not found")
    return ctx.venue.decode_book_side(Side.BID, bids_data), ctx.venue.decode_book_side(Side.ASK, asks_data)


def _market_data(
    ctx: CommandContext,
    *,
    market: str,
    best_bid_ask: bool,
    book: bool,
    max_ticks: int | None = None,
) -> int:
    if not best_bid_ask and not book:
        raise ValueError("provide --best-bid-ask and/or --book")
    market_pk = parse_public_key(market, field_name="market public key")
    market_account = _load_market(ctx, market_pk)
    depth = ctx.program.market_data_book_depth
    interval = ctx.program.market_data_refresh_interval_seconds
    _manager_logger.info("market_data_started market=%s name=%s", market_pk, market_account.name)
    tick = 0
    try:
        while max_ticks is None or tick < max_ticks:
            tick += 1
            try:
                bids, asks = _load_book(ctx, market_account)
                if best_bid_ask:
                    best_bid = best_price_lots(bids)
                    best_ask = best_price_lots(asks)
                    bid_price = price_lots_to_ui(market_account, best_bid) if best_bid is not None else None
                    ask_price = price_lots_to_ui(market_account, best_ask) if best_ask is not None else None
                    print(f"Best Bid: {format_ui(bid_price)} | Best Ask: {format_ui(ask_price)}")
                if book:
                    _print_lines(
                        order_book_table(
                            l2_levels(market_account, bids, depth=depth),
                            l2_levels(market_account, asks, depth=depth),
                            depth=depth,
                        )
                    )
            except Exception as exc:
                _manager_logger.warning("market_data_tick_failed tick=%s error=%s", tick, exc)
            if max_ticks is None or tick < max_ticks:
                ctx.sleep_fn(interval)
    except KeyboardInterrupt:
        _manager_logger.info("market_data_stopped market=%s ticks=%s", market_pk, tick)
    return 0


def _get_markets(ctx: CommandContext, *, with_balances: bool) -> int:
    records = collect_markets(
        scan_market_events(ctx.rpc, ctx.venue, config=ctx.program.discovery, sleep_fn=ctx.sleep_fn)
    )
    if with_balances:
        attach_vault_balances(
            records, ctx.rpc, ctx.venue, config=ctx.program.discovery, sleep_fn=ctx.sleep_fn
        )
    if not records:
        _manager_logger.info("get_markets_empty")
    _print_lines(market_records_table(records, with_balances=with_balances))
    return 0


def _list_markets(ctx: CommandContext) -> int:
    accounts = ctx.rpc.get_program_accounts(
        str(ctx.venue.program_id), filters=ctx.venue.market_account_filters()
    )
    rows: list[dict[str, object]] = []
    for address, data in accounts:
        try:
            market = ctx.venue.decode_market(address, data)
        except ValueError as exc:
            _manager_logger.warning("market_decode_failed market=%s error=%s", address, exc)
            continue
        rows.append(
            {
                "name": market.name,
                "market": address,
                "base_vault": market.market_base_vault,
                "quote_vault": market.market_quote_vault,
                "base_balance": fetch_vault_balance(
                    ctx.rpc, market.market_base_vault, config=ctx.program.discovery, sleep_fn=ctx.sleep_fn
                ),
                "quote_balance": fetch_vault_balance(
                    ctx.rpc, market.market_quote_vault, config=ctx.program.discovery, sleep_fn=ctx.sleep_fn
                ),
            }
        )
    _print_lines(listed_markets_table(rows))
    return 0


def _doctor(ctx: CommandContext) -> int:
    problems: list[str] = []
    warnings: list[str] = []
    rpc_version: str | None = None
    latency_ms: int | None = None
    blockhash: str | None = None

    started = time.monotonic()
    try:
        version = ctx.rpc.get_version()
        latency_ms = int((time.monotonic() - started) * 1000)
        rpc_version = str(version.get("solana-core", "")) or None
    except RuntimeError as exc:
        problems.append(f"rpc_unreachable:{exc}")
    if not problems:
        try:
            blockhash, _ = ctx.rpc.get_latest_blockhash()
        except RuntimeError as exc:
            problems.append(f"rpc_blockhash_error:{exc}")

    sdk_ok, sdk_detail = ctx.venue.sdk_available()
    if not sdk_ok:
        problems.append(f"openbook_sdk_unavailable:{sdk_detail}")
    if ctx.program.rpc_url.rstrip("/") == SolanaRpcAdapter.MAINNET_URL:
        warnings.append("public_rpc_endpoint:consider_a_dedicated_rpc_url")

    _print_json(
        {
            "ok": len(problems) == 0,
            "rpc_url": ctx.program.rpc_url,
            "rpc_version": rpc_version,
            "rpc_latency_ms": latency_ms,
            "latest_blockhash": blockhash,
            "program_id": ctx.program.program_id,
            "idl_path": str(ctx.venue.idl_path),
            "warnings": warnings,
            "problems": problems,
        }
    )
    return 0 if not problems else 2


def _log_transaction_failure(exc: TransactionFailedError) -> None:
    if isinstance(exc.error, DomainError):
        _manager_logger.error(
            "openbook_error code=%s message=%s signature=%s",
            exc.error.code,
            exc.error.message,
            exc.signature,
        )
    else:
        _manager_logger.error("transaction_failed signature=%s error=%s", exc.signature, exc.error.raw)


def _positive_int_arg(value: str) -> int:
    parsed = int(value)
    if parsed <= 0:
        raise argparse.ArgumentTypeError("must be a positive integer")
    return parsed


def _non_negative_int_arg(value: str) -> int:
    parsed = int(value)
    if parsed < 0:
        raise argparse.ArgumentTypeError("must be >= 0")
    return parsed


def _u8_arg(value: str) -> int:
    parsed = _positive_int_arg(value)
    if parsed > 255:
        raise argparse.ArgumentTypeError("must be <= 255")
    return parsed


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="OpenBook v2 command-line client")
    parser.add_argument("--program-config", default=default_program_config_path())
    parser.add_argument("--rpc-url", default="")
    parser.add_argument(
        "--priority-fee",
        type=_non_negative_int_arg,
        default=None,
        help="Priority fee in micro-lamports per compute unit; skips fee estimation",
    )
    parser.add_argument("--log-level", default="")

    sub = parser.add_subparsers(dest="command", required=True)

    p_balance = sub.add_parser("balance", help="Free balances of an OpenOrders account")
    p_balance.add_argument("--open-orders", required=True)
    p_balance.add_argument("--market", required=True)

    p_create = sub.add_parser("create-ooa", help="Create an OpenOrders account for a market")
    p_create.add_argument("--market", required=True)
    p_create.add_argument("--owner-keypair", required=True)
    p_create.add_argument("--name", default="default")

    p_close = sub.add_parser("close-ooa", help="Close OpenOrders accounts or the indexer")
    p_close.add_argument("--owner-keypair", required=True)
    close_target = p_close.add_mutually_exclusive_group(required=True)
    close_target.add_argument("--open-orders", default="")
    close_target.add_argument("--market", default="")
    close_target.add_argument("--close-indexer", action="store_true")

    p_fetch = sub.add_parser("fetch-ooa", help="List an owner's OpenOrders accounts")
    p_fetch.add_argument("owner")
    p_fetch.add_argument("--market", default="")

    p_get_order = sub.add_parser("get-order", help="Show open orders and position")
    p_get_order.add_argument("--wallet", default="")
    p_get_order.add_argument("--open-orders", default="")
    p_get_order.add_argument("--market", default="")

    p_deposit = sub.add_parser("deposit", help="Deposit into an OpenOrders account")
    p_deposit.add_argument("--market", required=True)
    p_deposit.add_argument("--open-orders", required=True)
    p_deposit.add_argument("--owner-keypair", required=True)
    p_deposit.add_argument("--base-amount", required=True)
    p_deposit.add_argument("--quote-amount", required=True)

    p_withdraw = sub.add_parser("withdraw", help="Settle funds back to the owner's token accounts")
    p_withdraw.add_argument("--market", required=True)
    p_withdraw.add_argument("--open-orders", required=True)
    p_withdraw.add_argument("--owner-keypair", required=True)

    p_place = sub.add_parser("place-order", help="Place an order")
    p_place.add_argument("--market", required=True)
    p_place.add_argument("--open-orders", required=True)
    p_place.add_argument("--owner-keypair", required=True)
    p_place.add_argument("--side", required=True, choices=[s.value for s in Side])
    p_place.add_argument("--price", required=True)
    p_place.add_argument("--size", required=True)
    p_place.add_argument("--order-type", default=OrderType.LIMIT.value, choices=[t.value for t in OrderType])
    p_place.add_argument("--client-order-id", type=_non_negative_int_arg, default=None)
    p_place.add_argument("--limit", type=_u8_arg, default=None)

    p_cancel = sub.add_parser("cancel-order", help="Cancel one order or all orders")
    p_cancel.add_argument("--market", required=True)
    p_cancel.add_argument("--open-orders", required=True)
    p_cancel.add_argument("--owner-keypair", required=True)
    cancel_target = p_cancel.add_mutually_exclusive_group()
    cancel_target.add_argument("--order-id", type=_positive_int_arg, default=None)
    cancel_target.add_argument("--client-order-id", type=_non_negative_int_arg, default=None)
    p_cancel.add_argument("--side", choices=[s.value for s in Side], default=None)
    p_cancel.add_argument("--limit", type=_u8_arg, default=None)

    p_market_data = sub.add_parser("market-data", help="Monitor a market's order book")
    p_market_data.add_argument("market")
    p_market_data.add_argument("--best-bid-ask", action="store_true")
    p_market_data.add_argument("--book", action="store_true")

    p_get_markets = sub.add_parser("get-markets", help="Discover markets from creation events")
    p_get_markets.add_argument("--with-balances", action="store_true")

    sub.add_parser("list-markets", help="List Market accounts with vault balances")
    sub.add_parser("doctor", help="Check RPC and SDK availability")
    return parser


def _dispatch(args: argparse.Namespace, ctx: CommandContext) -> int:
    if args.command == "balance":
        return _balance(ctx, open_orders=args.open_orders, market=args.market)
    if args.command == "create-ooa":
        return _create_ooa(ctx, market=args.market, owner_keypair=args.owner_keypair, name=args.name)
    if args.command == "close-ooa":
        return _close_ooa(
            ctx,
            owner_keypair=args.owner_keypair,
            open_orders=args.open_orders or None,
            market=args.market or None,
            close_indexer=bool(args.close_indexer),
        )
    if args.command == "fetch-ooa":
        return _fetch_ooa(ctx, owner=args.owner, market=args.market or None)
    if args.command == "get-order":
        return _get_order(
            ctx,
            wallet=args.wallet or None,
            open_orders=args.open_orders or None,
            market=args.market or None,
        )
    if args.command == "deposit":
        return _deposit(
            ctx,
            market=args.market,
            open_orders=args.open_orders,
            owner_keypair=args.owner_keypair,
            base_amount=args.base_amount,
            quote_amount=args.quote_amount,
        )
    if args.command == "withdraw":
        return _withdraw(
            ctx, market=args.market, open_orders=args.open_orders, owner_keypair=args.owner_keypair
        )
    if args.command == "place-order":
        return _place_order(
            ctx,
            market=args.market,
            open_orders=args.open_orders,
            owner_keypair=args.owner_keypair,
            side=args.side,
            price=args.price,
            size=args.size,
            order_type=args.order_type,
            client_order_id=args.client_order_id,
            limit=args.limit,
        )
    if args.command == "cancel-order":
        return _cancel_order(
            ctx,
            market=args.market,
            open_orders=args.open_orders,
            owner_keypair=args.owner_keypair,
            order_id=args.order_id,
            client_order_id=args.client_order_id,
            side=args.side,
            limit=args.limit,
        )
    if args.command == "market-data":
        return _market_data(ctx, market=args.market, best_bid_ask=bool(args.best_bid_ask), book=bool(args.book))
    if args.command == "get-markets":
        return _get_markets(ctx, with_balances=bool(args.with_balances))
    if args.command == "list-markets":
        return _list_markets(ctx)
    if args.command == "doctor":
        return _doctor(ctx)
    raise ValueError(f"unsupported command: {args.command}")


def _run(args: argparse.Namespace) -> int:
    try:
        program = load_program_config(Path(args.program_config))
    except ValueError as exc:
        _print_json({"error": str(exc)})
        return 1
    if args.rpc_url.strip():
        program.rpc_url = args.rpc_url.strip()
    initialize_cli_logging(
        service_name=SERVICE_NAME,
        home_dir=program.home_dir,
        log_level=args.log_level or program.log_level,
        logger=_manager_logger,
    )
    ctx = _build_context(program, priority_fee_override=args.priority_fee)
    try:
        return _dispatch(args, ctx)
    except TransactionFailedError as exc:
        _log_transaction_failure(exc)
        _print_json({"error": str(exc), "signature": exc.signature})
        return 1
    except SubmissionExhaustedError as exc:
        _manager_logger.error(
            "transaction_expired_all_attempts fees=%s hint=raise_priority_fee_or_use_dedicated_rpc",
            list(exc.fees),
        )
        _print_json({"error": str(exc), "priority_fees": list(exc.fees)})
        return 1
    except ValueError as exc:
        _print_json({"error": str(exc)})
        return 1
    except Exception as exc:
        _manager_logger.exception("command_failed command=%s", args.command)
        _print_json({"error": str(exc)})
        return 1


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()
    if args.command == "get-order" and not (args.wallet or args.open_orders):
        parser.error("get-order requires --wallet or --open-orders")
    if args.command == "market-data" and not (args.best_bid_ask or args.book):
        parser.error("market-data requires --best-bid-ask and/or --book")
    raise SystemExit(_run(args))


if __name__ == "__main__":
    main()
