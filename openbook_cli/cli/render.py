from __future__ import annotations

import datetime as dt
from collections.abc import Sequence

from openbook_cli.core.book import L2Level
from openbook_cli.core.types import MarketRecord, VaultBalance

NOT_AVAILABLE = "N/A"


def format_ui(value: float | None, *, places: int = 4) -> str:
    if value is None:
        return NOT_AVAILABLE
    return f"{value:.{places}f}"


def format_balance(value: VaultBalance | None) -> str:
    if value is None:
        return "-"
    if isinstance(value, str):
        return value
    return format_ui(value)


def format_timestamp(timestamp: int | None) -> str:
    if timestamp is None:
        return NOT_AVAILABLE
    return dt.datetime.fromtimestamp(timestamp, tz=dt.UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def render_table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> list[str]:
    widths = [len(header) for header in headers]
    for row in rows:
        for index, cell in enumerate(row):
            widths[index] = max(widths[index], len(cell))
    header_line = " | ".join(header.ljust(widths[i]) for i, header in enumerate(headers))
    separator = "-+-".join("-" * width for width in widths)
    lines = [header_line.rstrip(), separator]
    for row in rows:
        lines.append(" | ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip())
    return lines


def market_records_table(records: Sequence[MarketRecord], *, with_balances: bool) -> list[str]:
    headers = ["Name", "Market", "Base Mint", "Quote Mint", "Created"]
    if with_balances:
        headers += ["Base Vault Balance", "Quote Vault Balance"]
    rows = []
    for record in records:
        event = record.event
        row = [
            event.name or "Unnamed",
            event.market,
            event.base_mint,
            event.quote_mint,
            format_timestamp(event.timestamp),
        ]
        if with_balances:
            row += [format_balance(record.base_vault_balance), format_balance(record.quote_vault_balance)]
        rows.append(row)
    return render_table(headers, rows)


def listed_markets_table(rows: Sequence[dict[str, object]]) -> list[str]:
    headers = ["Market Name", "Market Pubkey", "Base Vault", "Quote Vault", "Base Balance", "Quote Balance"]
    table_rows = [
        [
            str(row["name"]) or "Unnamed",
            str(row["market"]),
            str(row["base_vault"]),
            str(row["quote_vault"]),
            format_balance(row["base_balance"]),  # type: ignore[arg-type]
            format_balance(row["quote_balance"]),  # type: ignore[arg-type]
        ]
        for row in rows
    ]
    return render_table(headers, table_rows)


def order_book_table(bids: Sequence[L2Level], asks: Sequence[L2Level], *, depth: int) -> list[str]:
    headers = ["Price (Bid)", "Size (Bid)", "Amount (Bid)", "Price (Ask)", "Size (Ask)", "Amount (Ask)"]
    rows = []
    for index in range(depth):
        bid = bids[index] if index < len(bids) else None
        ask = asks[index] if index < len(asks) else None
        rows.append(
            [
                format_ui(bid.price if bid else None),
                format_ui(bid.size if bid else None),
                format_ui(bid.price * bid.size if bid else None),
                format_ui(ask.price if ask else None),
                format_ui(ask.size if ask else None),
                format_ui(ask.price * ask.size if ask else None),
            ]
        )
    return render_table(headers, rows)
