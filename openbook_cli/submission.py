from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from solders.compute_budget import set_compute_unit_price
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.transaction import VersionedTransaction

from openbook_cli.adapters.solana_rpc import is_transient_rpc_error
from openbook_cli.config.models import SubmissionConfig
from openbook_cli.core.errors import DomainError, UnrecognizedError, decode_transaction_error
from openbook_cli.core.fees import PriorityFeeSchedule, estimate_priority_fee

_submission_logger = logging.getLogger("openbook_cli.submission")

CONFIRMED_STATUSES = frozenset({"confirmed", "finalized"})
EXHAUSTED_MESSAGE = "transaction failed after multiple retries"


class SubmissionRpc(Protocol):
    def get_latest_blockhash(self) -> tuple[str, int]: ...

    def get_block_height(self) -> int: ...

    def send_raw_transaction(
        self, raw_tx: bytes, *, skip_preflight: bool = True, max_retries: int = 0
    ) -> str: ...

    def get_signature_statuses(self, signatures: list[str]) -> list[dict[str, Any] | None]: ...


class AttemptOutcome(StrEnum):
    CONFIRMED = "confirmed"
    EXPIRED = "expired"


class TransactionFailedError(RuntimeError):
    """The transaction landed and the program rejected it. Never retried."""

    def __init__(self, signature: str, error: DomainError | UnrecognizedError) -> None:
        if isinstance(error, DomainError):
            message = f"openbook_error:{error.code}:{error.message}"
        else:
            message = f"transaction_failed:{error.raw}"
        super().__init__(message)
        self.signature = signature
        self.error = error


class SubmissionExhaustedError(RuntimeError):
    def __init__(self, *, signatures: Sequence[str], fees: Sequence[int]) -> None:
        super().__init__(EXHAUSTED_MESSAGE)
        self.signatures = tuple(signatures)
        self.fees = tuple(fees)


@dataclass(frozen=True, slots=True)
class SubmissionPolicy:
    max_attempts: int = 10
    fee_schedule: PriorityFeeSchedule = field(default_factory=PriorityFeeSchedule)
    status_poll_interval_seconds: float = 1.5
    max_status_checks: int = 10
    pending_grace_seconds: float = 5.0
    max_pending_windows: int = 6

    @classmethod
    def from_config(cls, config: SubmissionConfig) -> SubmissionPolicy:
        return cls(
            max_attempts=config.max_attempts,
            fee_schedule=PriorityFeeSchedule(config.fee_schedule_micro_lamports),
            status_poll_interval_seconds=config.status_poll_interval_seconds,
            max_status_checks=config.max_status_checks,
            pending_grace_seconds=config.pending_grace_seconds,
            max_pending_windows=config.max_pending_windows,
        )


@dataclass(frozen=True, slots=True)
class SubmissionResult:
    signature: str
    attempts: int
    fees: tuple[int, ...]


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    signature: str
    raw: bytes
    priority_fee: int
    blockhash: str
    last_valid_block_height: int


def build_transaction(
    *,
    payer: Keypair,
    instructions: Sequence[Instruction],
    priority_fee: int,
    blockhash: str,
    last_valid_block_height: int,
    additional_signers: Sequence[Keypair] = (),
) -> PendingTransaction:
    ixs = list(instructions)
    if priority_fee > 0:
        ixs.insert(0, set_compute_unit_price(priority_fee))
    message = MessageV0.try_compile(payer.pubkey(), ixs, [], Hash.from_string(blockhash))
    signers = [payer]
    for signer in additional_signers:
        if signer.pubkey() != payer.pubkey():
            signers.append(signer)
    tx = VersionedTransaction(message, signers)
    return PendingTransaction(
        signature=str(tx.signatures[0]),
        raw=bytes(tx),
        priority_fee=priority_fee,
        blockhash=blockhash,
        last_valid_block_height=last_valid_block_height,
    )


class TransactionSubmitter:
    """Send a transaction until it confirms, raising the priority fee on each expiry.

    Every attempt signs against a fresh blockhash, so at most one attempt
    can land. An attempt is only abandoned once its blockhash is past
    ``last_valid_block_height`` (or the pending budget is spent) and a final
    status check still shows it unconfirmed.
    """

    def __init__(
        self,
        rpc: SubmissionRpc,
        payer: Keypair,
        policy: SubmissionPolicy | None = None,
        *,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self._rpc = rpc
        self._payer = payer
        self._policy = policy or SubmissionPolicy()
        self._sleep = sleep_fn

    @property
    def policy(self) -> SubmissionPolicy:
        return self._policy

    def submit(
        self,
        instructions: Sequence[Instruction],
        *,
        priority_fee_micro_lamports: int,
        additional_signers: Sequence[Keypair] = (),
    ) -> SubmissionResult:
        if not instructions:
            raise ValueError("no instructions to submit")
        if priority_fee_micro_lamports < 0:
            raise ValueError("priority fee must be >= 0")
        policy = self._policy
        fee = priority_fee_micro_lamports
        fees: list[int] = []
        signatures: list[str] = []
        for attempt in range(1, policy.max_attempts + 1):
            if attempt > 1:
                previous_fee = fee
                fee = policy.fee_schedule.next_fee(attempt - 2, previous_fee)
                _submission_logger.info(
                    "priority_fee_escalated attempt=%s previous_fee=%s fee=%s",
                    attempt,
                    previous_fee,
                    fee,
                )
            fees.append(fee)
            signature, outcome = self._run_attempt(
                attempt=attempt,
                instructions=instructions,
                fee=fee,
                additional_signers=additional_signers,
            )
            if signature:
                signatures.append(signature)
            if outcome == AttemptOutcome.CONFIRMED:
                _submission_logger.info(
                    "transaction_confirmed signature=%s attempt=%s fee=%s", signature, attempt, fee
                )
                return SubmissionResult(signature=signature, attempts=attempt, fees=tuple(fees))
            _submission_logger.warning(
                "transaction_expired signature=%s attempt=%s fee=%s", signature or "-", attempt, fee
            )
        _submission_logger.error(
            "transaction_submission_exhausted attempts=%s fees=%s", policy.max_attempts, fees
        )
        raise SubmissionExhaustedError(signatures=signatures, fees=fees)

    def _run_attempt(
        self,
        *,
        attempt: int,
        instructions: Sequence[Instruction],
        fee: int,
        additional_signers: Sequence[Keypair],
    ) -> tuple[str, AttemptOutcome]:
        signature = ""
        try:
            blockhash, last_valid = self._rpc.get_latest_blockhash()
            pending = build_transaction(
                payer=self._payer,
                instructions=instructions,
                priority_fee=fee,
                blockhash=blockhash,
                last_valid_block_height=last_valid,
                additional_signers=additional_signers,
            )
            signature = pending.signature
            self._rpc.send_raw_transaction(pending.raw, skip_preflight=True, max_retries=0)
            _submission_logger.info(
                "transaction_sent signature=%s attempt=%s fee=%s last_valid_block_height=%s",
                signature,
                attempt,
                fee,
                last_valid,
            )
            outcome = self._await_confirmation(pending)
        except TransactionFailedError:
            raise
        except Exception as exc:
            if not is_transient_rpc_error(exc):
                raise
            _submission_logger.warning(
                "transaction_attempt_transient_error attempt=%s error=%s", attempt, exc
            )
            outcome = AttemptOutcome.EXPIRED
        if outcome == AttemptOutcome.EXPIRED and signature and self._requery_confirmed(signature):
            outcome = AttemptOutcome.CONFIRMED
        return signature, outcome

    def _status(self, signature: str) -> dict[str, Any] | None:
        statuses = self._rpc.get_signature_statuses([signature])
        return statuses[0] if statuses else None

    def _check_status(self, signature: str) -> bool:
        status = self._status(signature)
        if status is None:
            return False
        if status.get("err") is not None:
            error = decode_transaction_error(status["err"])
            raise TransactionFailedError(signature, error)
        return status.get("confirmationStatus") in CONFIRMED_STATUSES

    def _await_confirmation(self, pending: PendingTransaction) -> AttemptOutcome:
        policy = self._policy
        for window in range(1, policy.max_pending_windows + 1):
            for check in range(1, policy.max_status_checks + 1):
                if self._check_status(pending.signature):
                    return AttemptOutcome.CONFIRMED
                if check < policy.max_status_checks:
                    self._sleep(policy.status_poll_interval_seconds)
            block_height = self._rpc.get_block_height()
            if block_height > pending.last_valid_block_height:
                return AttemptOutcome.EXPIRED
            _submission_logger.info(
                "transaction_pending signature=%s window=%s block_height=%s last_valid_block_height=%s",
                pending.signature,
                window,
                block_height,
                pending.last_valid_block_height,
            )
            if window < policy.max_pending_windows:
                self._sleep(policy.pending_grace_seconds)
        return AttemptOutcome.EXPIRED

    def _requery_confirmed(self, signature: str) -> bool:
        try:
            return self._check_status(signature)
        except TransactionFailedError:
            raise
        except Exception as exc:
            if not is_transient_rpc_error(exc):
                raise
            _submission_logger.warning("transaction_requery_failed signature=%s error=%s", signature, exc)
            return False


class PrioritizationFeeRpc(Protocol):
    def get_recent_prioritization_fees(self, addresses: list[str] | None = None) -> list[int]: ...


def resolve_priority_fee(
    rpc: PrioritizationFeeRpc,
    base_fee: int,
    *,
    addresses: list[str] | None = None,
) -> int:
    try:
        samples = rpc.get_recent_prioritization_fees(addresses)
    except Exception as exc:
        _submission_logger.warning(
            "priority_fee_estimate_failed base_fee=%s error=%s", base_fee, exc
        )
        return base_fee
    fee = estimate_priority_fee(samples, base_fee)
    _submission_logger.info(
        "priority_fee_estimated samples=%s fee=%s base_fee=%s", len(samples), fee, base_fee
    )
    return fee
