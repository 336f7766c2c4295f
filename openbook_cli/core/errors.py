from __future__ import annotations

from dataclasses import dataclass
from typing import Any

# Anchor numbers custom program errors from 6000, in enum order.

OPENBOOK_ERRORS: dict[int, str] = {
    6000: "Unspecified OpenBook error.",
    6001: "Name length above limit.",
    6002: "Market cannot be created as expired.",
    6003: "Invalid market fees configuration.",
    6004: "Lots cannot be negative.",
    6005: "Lots size above market limits.",
    6006: "Input amounts above limits.",
    6007: "Expected cancel size should be greater than zero.",
    6008: "Price lots should be greater than zero.",
    6009: "Peg limit should be greater than zero.",
    6010: "Invalid order type. Taker order must be Market or ImmediateOrCancel.",
    6011: "Order ID cannot be zero.",
    6012: "Slot above heap limit.",
    6013: "Cannot combine two oracles of different providers.",
    6014: "Cannot configure secondary oracle without primary.",
    6015: "This market does not have a close market admin.",
    6016: "The signer is not this market's close market admin.",
    6017: "The market's open orders admin is missing or did not sign.",
    6018: "The market's consume events admin is missing or did not sign.",
    6019: "Invalid market vault provided.",
    6020: "Cannot close the OpenOrders indexer because there are still active OpenOrders accounts.",
    6021: "Oracle peg orders cannot be placed while the oracle is invalid.",
    6022: "Oracle type cannot be determined.",
    6023: "Oracle confidence is outside market limits.",
    6024: "Oracle price is stale.",
    6025: "Order ID not found on orderbook.",
    6026: "Market cannot be closed because the event heap is not empty.",
    6027: "ImmediateOrCancel orders cannot be posted.",
    6028: "Market orders cannot be posted.",
    6029: "Would self-trade.",
    6030: "Market has already expired.",
    6031: "Price lots outside market limits.",
    6032: "Oracle price above market limits.",
    6033: "Market has not expired yet.",
    6034: "No correct owner or delegate.",
    6035: "No correct owner.",
    6036: "No free order index in OpenOrders account.",
    6037: "Book contains elements.",
    6038: "Order not found in the OpenOrders account.",
    6039: "Amount to post above book limits.",
    6040: "Oracle peg orders are not enabled for this market.",
    6041: "Market cannot be closed because it has active orders.",
    6042: "Cannot close a non-empty OpenOrders account.",
    6043: "Fill-Or-Kill order would generate a partial execution.",
}


def openbook_error_message(code: int) -> str:
    return OPENBOOK_ERRORS.get(code, f"Unknown OpenBook error: {code}")


@dataclass(frozen=True, slots=True)
class DomainError:
    code: int
    message: str
    instruction_index: int | None = None


@dataclass(frozen=True, slots=True)
class UnrecognizedError:
    raw: Any


def decode_transaction_error(err: Any) -> DomainError | UnrecognizedError:
    """Turn a transaction status ``err`` payload into a typed error.

    Only ``{"InstructionError": [index, {"Custom": code}]}`` is a venue error;
    every other shape is returned untouched as ``UnrecognizedError``.
    """
    if not isinstance(err, dict):
        return UnrecognizedError(raw=err)
    instruction_error = err.get("InstructionError")
    if not isinstance(instruction_error, list | tuple) or len(instruction_error) != 2:
        return UnrecognizedError(raw=err)
    index, detail = instruction_error
    if not isinstance(detail, dict) or "Custom" not in detail:
        return UnrecognizedError(raw=err)
    try:
        code = int(detail["Custom"])
    except (TypeError, ValueError):
        return UnrecognizedError(raw=err)
    return DomainError(
        code=code,
        message=openbook_error_message(code),
        instruction_index=int(index) if isinstance(index, int) else None,
    )
