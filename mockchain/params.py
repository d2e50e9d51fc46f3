"""
params.py - Protocol parameters and the size, fee and min-ada formulas derived from them.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional

from .core import (
    Output, Tx,
    COLLATERAL_MIN_FEE, WITNESS_SIZE,
)


@dataclass(frozen=True, slots=True)
class SlotConfig:
    """
    Mapping between slots and POSIX time in milliseconds.

    Slot s covers [zero_time + s * slot_length, zero_time + (s + 1) * slot_length).
    """
    zero_time: int = 1_596_059_091_000
    slot_length: int = 1_000

    def slot_to_begin_time(self, slot: int) -> int:
        return self.zero_time + slot * self.slot_length

    def slot_to_end_time(self, slot: int) -> int:
        return self.slot_to_begin_time(slot) + self.slot_length - 1

    def time_to_enclosing_slot(self, time_ms: int) -> int:
        return (time_ms - self.zero_time) // self.slot_length


@dataclass(frozen=True, slots=True)
class ProtocolParams:
    """
    Ledger protocol parameters.

    Attributes:
        min_fee_a: Fee per byte of serialized transaction (lovelace).
        min_fee_b: Constant fee component; also the protocol minimum fee (lovelace).
        script_execution_fee: Fee charged per script run (lovelace).
        min_ada_per_output: Base min-ada floor of any output (lovelace).
        min_ada_per_asset: Extra floor per non-ada asset held (lovelace).
        min_ada_per_datum: Extra floor for outputs carrying a datum (lovelace).
        collateral_percentage: Collateral required as a percentage of the fee.
            None disables the percentage (automatic selection then targets the
            nominal minimum fee itself).
        max_collateral_inputs: Maximum number of collateral inputs (None = unbounded).
        max_tx_size: Maximum serialized size in bytes, witnesses included.
        slot_config: Slot/time conversion.
    """
    min_fee_a: int = 44
    min_fee_b: int = 155_381
    script_execution_fee: int = 250_000
    min_ada_per_output: int = 1_000_000
    min_ada_per_asset: int = 150_000
    min_ada_per_datum: int = 200_000
    collateral_percentage: Optional[int] = 150
    max_collateral_inputs: Optional[int] = 3
    max_tx_size: int = 16_384
    slot_config: SlotConfig = field(default_factory=SlotConfig)


def default_params() -> ProtocolParams:
    """Protocol parameters used when an environment does not provide its own."""
    return ProtocolParams()


def protocol_min_fee(params: ProtocolParams) -> int:
    """Smallest fee the protocol could accept for any transaction."""
    return params.min_fee_b


def tx_size(tx: Tx, witness_count: int) -> int:
    """Serialized size of tx in bytes with witness_count key witnesses attached."""
    return len(tx.body_bytes()) + witness_count * WITNESS_SIZE


def size_fee(params: ProtocolParams, size: int) -> int:
    return params.min_fee_a * size + params.min_fee_b


def min_ada_for(params: ProtocolParams, output: Output) -> int:
    """Minimum lovelace output must carry to be accepted by the ledger."""
    floor = params.min_ada_per_output + params.min_ada_per_asset * output.value.non_ada_count()
    if output.has_datum:
        floor += params.min_ada_per_datum
    return floor


def clears_floor(params: ProtocolParams, output: Output) -> bool:
    return output.value.is_non_negative() and output.value.lovelace >= min_ada_for(params, output)


def _ceil_percent(amount: int, percentage: int) -> int:
    return -(-amount * percentage // 100)


def collateral_threshold(params: ProtocolParams) -> int:
    """Ada automatic collateral selection must reach (lovelace)."""
    if params.collateral_percentage is None:
        return COLLATERAL_MIN_FEE
    return _ceil_percent(COLLATERAL_MIN_FEE, params.collateral_percentage)


def required_collateral(params: ProtocolParams, fee: int) -> int:
    """Ada the ledger requires as collateral for a transaction paying fee."""
    if params.collateral_percentage is None:
        return 0
    return _ceil_percent(fee, params.collateral_percentage)
