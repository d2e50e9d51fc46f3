"""
skeleton.py - Transaction skeletons: declared intents plus submission options.

A TxSkeleton says what a transaction should do (pay, spend, mint) without
saying which wallet UTxOs fund it or what fee it pays. The generator resolves
it into an UnbalancedTx and the balancer completes it.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple, Union

from .core import (
    Address, Datum, MintingPolicy, Output, OutputRef, PubKeyHash, Redeemer,
    Tx, ValidityRange, Validator, Value, ALWAYS, datum_hash,
)


# ============================================================================
# OPTIONS
# ============================================================================

class BalanceOutputPolicy(Enum):
    """
    Whether the balancer may return change into an existing output.

    ADJUST_EXISTING_OUTPUT: Add change to the fee payer's best ada-only output.
    DONT_ADJUST_EXISTING_OUTPUT: Always return change in a new output.
    """
    ADJUST_EXISTING_OUTPUT = "adjust_existing_output"
    DONT_ADJUST_EXISTING_OUTPUT = "dont_adjust_existing_output"


@dataclass(frozen=True)
class CollateralAuto:
    """Select collateral automatically from the fee payer's plain ada UTxOs."""
    pass


@dataclass(frozen=True)
class CollateralUtxos:
    """Use exactly these UTxOs as collateral."""
    refs: Tuple[OutputRef, ...]


Collateral = Union[CollateralAuto, CollateralUtxos]


class RawModStage(Enum):
    BEFORE_BALANCING = "before_balancing"
    AFTER_BALANCING = "after_balancing"


@dataclass(frozen=True)
class RawModTx:
    """
    Arbitrary transformation of the transaction at a given stage.

    Test-only escape hatch for building transactions the normal pipeline
    would never produce.
    """
    stage: RawModStage
    fn: Callable[[Tx], Tx]


@dataclass(frozen=True)
class TxOptions:
    """
    Submission options.

    Attributes:
        auto_slot_increase: Advance the slot clock by one after a successful submission.
        balance: Balance the transaction and resolve its fee. When False, the
            draft is signed and submitted as generated.
        adjust_unbalanced_tx: Raise every draft output to its min-ada floor.
        collateral: Automatic or explicit collateral.
        balance_output_policy: Where change goes.
        force_output_ordering: Keep outputs in declared payment order.
        raw_mods: Raw transformations applied before and after balancing.
    """
    auto_slot_increase: bool = True
    balance: bool = True
    adjust_unbalanced_tx: bool = False
    collateral: Collateral = field(default_factory=CollateralAuto)
    balance_output_policy: BalanceOutputPolicy = BalanceOutputPolicy.ADJUST_EXISTING_OUTPUT
    force_output_ordering: bool = False
    raw_mods: Tuple[RawModTx, ...] = ()


# ============================================================================
# INTENTS
# ============================================================================

@dataclass(frozen=True)
class PaysPK:
    """Pay value to a public key, optionally attaching a hashed datum."""
    pkh: PubKeyHash
    value: Value
    datum: Optional[Datum] = None

    def to_output(self) -> Output:
        return Output(
            Address.pubkey(self.pkh),
            self.value,
            datum_hash=datum_hash(self.datum) if self.datum is not None else None,
        )


@dataclass(frozen=True)
class PaysScript:
    """Lock value at a validator's address with a datum (hashed or inline)."""
    validator: Validator
    datum: Datum
    value: Value
    inline: bool = False

    def to_output(self) -> Output:
        if self.inline:
            return Output(self.validator.address, self.value, inline_datum=self.datum)
        return Output(self.validator.address, self.value, datum_hash=datum_hash(self.datum))


Payment = Union[PaysPK, PaysScript]


@dataclass(frozen=True)
class SpendsPK:
    """Spend a public-key output."""
    ref: OutputRef


@dataclass(frozen=True)
class SpendsScript:
    """Spend a script output with a redeemer."""
    validator: Validator
    redeemer: Redeemer
    ref: OutputRef


Spend = Union[SpendsPK, SpendsScript]


@dataclass(frozen=True)
class Mints:
    """Mint (positive) or burn (negative) value under a policy."""
    policy: MintingPolicy
    redeemer: Redeemer
    value: Value


@dataclass(frozen=True)
class IncludesDatum:
    """Attach a datum witness to the transaction."""
    datum: Datum


@dataclass(frozen=True)
class TxSkeleton:
    """
    Declarative description of a transaction.

    Attributes:
        payments: Outputs to create, in declared order.
        spends: Outputs to consume.
        mints: Mints and burns.
        validity: Slot interval in which the transaction is valid.
        signatories: Key hashes that must sign.
        misc: Other constraints (IncludesDatum).
        options: Submission options.
        label: Free-form tag carried on the generated transaction.
    """
    payments: Tuple[Payment, ...] = ()
    spends: Tuple[Spend, ...] = ()
    mints: Tuple[Mints, ...] = ()
    validity: ValidityRange = ALWAYS
    signatories: Tuple[PubKeyHash, ...] = ()
    misc: Tuple[Any, ...] = ()
    options: TxOptions = field(default_factory=TxOptions)
    label: Optional[str] = None

    def datums(self) -> List[Datum]:
        """Every datum the skeleton mentions, in declaration order."""
        found: List[Datum] = []
        for payment in self.payments:
            if payment.datum is not None:
                found.append(payment.datum)
        for item in self.misc:
            if isinstance(item, IncludesDatum):
                found.append(item.datum)
        return found


def pays(*payments: Payment, **kwargs: Any) -> TxSkeleton:
    """Skeleton that only makes payments; kwargs are passed to TxSkeleton."""
    return TxSkeleton(payments=tuple(payments), **kwargs)
