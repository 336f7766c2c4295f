from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from openbook_cli.core.fees import DEFAULT_BASE_PRIORITY_FEE, DEFAULT_FEE_STEPS

OPENBOOK_V2_PROGRAM_ID = "opnb2LAfJYbRMAHHvqjCwQxanZn7ReEHp1k81EohpZb"
MAINNET_RPC_URL = "https://api.mainnet-beta.solana.com"
ALLOWED_COMMITMENTS = frozenset({"processed", "confirmed", "finalized"})


@dataclass(frozen=True, slots=True)
class SubmissionConfig:
    max_attempts: int = 10
    base_priority_fee_micro_lamports: int = DEFAULT_BASE_PRIORITY_FEE
    fee_schedule_micro_lamports: tuple[int, ...] = DEFAULT_FEE_STEPS
    status_poll_interval_seconds: float = 1.5
    max_status_checks: int = 10
    pending_grace_seconds: float = 5.0
    max_pending_windows: int = 6


@dataclass(frozen=True, slots=True)
class DiscoveryConfig:
    signatures_page_size: int = 200
    transaction_batch_size: int = 5
    transaction_max_attempts: int = 3
    transaction_retry_backoff_seconds: float = 2.0
    vault_balance_max_attempts: int = 3
    vault_balance_retry_backoff_seconds: float = 1.0


@dataclass(slots=True)
class ProgramConfig:
    home_dir: str = "~/.openbook-cli"
    log_level: str = "INFO"
    rpc_url: str = MAINNET_RPC_URL
    rpc_commitment: str = "confirmed"
    rpc_timeout_seconds: int = 30
    program_id: str = OPENBOOK_V2_PROGRAM_ID
    idl_path: str = ""
    market_data_refresh_interval_seconds: float = 1.0
    market_data_book_depth: int = 10
    orders_default_limit: int = 16
    orders_cancel_all_limit: int = 12
    submission: SubmissionConfig = field(default_factory=SubmissionConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{key} must be a mapping")
    return value


def _positive_int(section: dict[str, Any], key: str, default: int, *, path: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{path}.{key} must be an integer") from exc
    if value <= 0:
        raise ValueError(f"{path}.{key} must be positive")
    return value


def _non_negative_float(section: dict[str, Any], key: str, default: float, *, path: str) -> float:
    raw = section.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{path}.{key} must be numeric") from exc
    if value < 0:
        raise ValueError(f"{path}.{key} must be >= 0")
    return value


def _parse_fee_schedule(raw: Any) -> tuple[int, ...]:
    if raw is None:
        return DEFAULT_FEE_STEPS
    if not isinstance(raw, list) or not raw:
        raise ValueError("submission.fee_schedule_micro_lamports must be a non-empty list")
    steps: list[int] = []
    for value in raw:
        try:
            step = int(value)
        except (TypeError, ValueError) as exc:
            raise ValueError("submission.fee_schedule_micro_lamports entries must be integers") from exc
        if step <= 0:
            raise ValueError("submission.fee_schedule_micro_lamports entries must be positive")
        if steps and step < steps[-1]:
            raise ValueError("submission.fee_schedule_micro_lamports must be non-decreasing")
        steps.append(step)
    return tuple(steps)


def parse_submission_config(raw: dict[str, Any]) -> SubmissionConfig:
    defaults = SubmissionConfig()
    base_fee_raw = raw.get("base_priority_fee_micro_lamports", defaults.base_priority_fee_micro_lamports)
    try:
        base_fee = int(base_fee_raw)
    except (TypeError, ValueError) as exc:
        raise ValueError("submission.base_priority_fee_micro_lamports must be an integer") from exc
    if base_fee < 0:
        raise ValueError("submission.base_priority_fee_micro_lamports must be >= 0")
    return SubmissionConfig(
        max_attempts=_positive_int(raw, "max_attempts", defaults.max_attempts, path="submission"),
        base_priority_fee_micro_lamports=base_fee,
        fee_schedule_micro_lamports=_parse_fee_schedule(raw.get("fee_schedule_micro_lamports")),
        status_poll_interval_seconds=_non_negative_float(
            raw, "status_poll_interval_seconds", defaults.status_poll_interval_seconds, path="submission"
        ),
        max_status_checks=_positive_int(
            raw, "max_status_checks", defaults.max_status_checks, path="submission"
        ),
        pending_grace_seconds=_non_negative_float(
            raw, "pending_grace_seconds", defaults.pending_grace_seconds, path="submission"
        ),
        max_pending_windows=_positive_int(
            raw, "max_pending_windows", defaults.max_pending_windows, path="submission"
        ),
    )


def parse_discovery_config(raw: dict[str, Any]) -> DiscoveryConfig:
    defaults = DiscoveryConfig()
    page_size = _positive_int(raw, "signatures_page_size", defaults.signatures_page_size, path="discovery")
    if page_size > 1000:
        # getSignaturesForAddress rejects limits above 1000.
        raise ValueError("discovery.signatures_page_size must be <= 1000")
    return DiscoveryConfig(
        signatures_page_size=page_size,
        transaction_batch_size=_positive_int(
            raw, "transaction_batch_size", defaults.transaction_batch_size, path="discovery"
        ),
        transaction_max_attempts=_positive_int(
            raw, "transaction_max_attempts", defaults.transaction_max_attempts, path="discovery"
        ),
        transaction_retry_backoff_seconds=_non_negative_float(
            raw,
            "transaction_retry_backoff_seconds",
            defaults.transaction_retry_backoff_seconds,
            path="discovery",
        ),
        vault_balance_max_attempts=_positive_int(
            raw, "vault_balance_max_attempts", defaults.vault_balance_max_attempts, path="discovery"
        ),
        vault_balance_retry_backoff_seconds=_non_negative_float(
            raw,
            "vault_balance_retry_backoff_seconds",
            defaults.vault_balance_retry_backoff_seconds,
            path="discovery",
        ),
    )


def parse_program_config(raw: dict[str, Any]) -> ProgramConfig:
    defaults = ProgramConfig()
    app = _section(raw, "app")
    rpc = _section(raw, "rpc")
    venue = _section(raw, "venue")
    market_data = _section(raw, "market_data")
    orders = _section(raw, "orders")

    commitment = str(rpc.get("commitment", defaults.rpc_commitment)).strip().lower()
    if commitment not in ALLOWED_COMMITMENTS:
        raise ValueError("rpc.commitment must be one of: processed, confirmed, finalized")
    rpc_url = str(rpc.get("url", defaults.rpc_url)).strip()
    if not rpc_url:
        raise ValueError("rpc.url must be non-empty")
    program_id = str(venue.get("program_id", defaults.program_id)).strip()
    if not program_id:
        raise ValueError("venue.program_id must be non-empty")

    orders_limit = _positive_int(orders, "default_limit", defaults.orders_default_limit, path="orders")
    cancel_limit = _positive_int(
        orders, "cancel_all_limit", defaults.orders_cancel_all_limit, path="orders"
    )
    if orders_limit > 255 or cancel_limit > 255:
        raise ValueError("orders limits must fit in a u8 (<= 255)")

    return ProgramConfig(
        home_dir=str(app.get("home_dir", defaults.home_dir)),
        log_level=str(app.get("log_level", defaults.log_level)),
        rpc_url=rpc_url,
        rpc_commitment=commitment,
        rpc_timeout_seconds=_positive_int(rpc, "timeout_seconds", defaults.rpc_timeout_seconds, path="rpc"),
        program_id=program_id,
        idl_path=str(venue.get("idl_path", defaults.idl_path)),
        market_data_refresh_interval_seconds=_non_negative_float(
            market_data,
            "refresh_interval_seconds",
            defaults.market_data_refresh_interval_seconds,
            path="market_data",
        ),
        market_data_book_depth=_positive_int(
            market_data, "book_depth", defaults.market_data_book_depth, path="market_data"
        ),
        orders_default_limit=orders_limit,
        orders_cancel_all_limit=cancel_limit,
        submission=parse_submission_config(_section(raw, "submission")),
        discovery=parse_discovery_config(_section(raw, "discovery")),
    )
