"""
Core types and pure functions for the mock chain.

This module provides the foundational data structures of the simulator:
1. Constants: fee search bounds, collateral defaults, witness sizing
2. Exceptions: MockChainError and the pipeline's error taxonomy
3. Canonical serialization and content hashing (tx ids, datum and script hashes)
4. Immutable value types: AssetClass, Value, Address, OutputRef, Output
5. Scripts and their execution context: Validator, MintingPolicy, ScriptContext
6. Transactions: TxInput, ValidityRange, Tx, UnbalancedTx

All functions in this module are pure. Chain state lives in state.py and is
only mutated by validation.commit_outcome().
"""

from __future__ import annotations
from dataclasses import dataclass, field, fields, is_dataclass, replace
from enum import Enum
from functools import cached_property
import hashlib
from typing import (
    Any, Callable, Dict, FrozenSet, Iterable, Iterator, List, Mapping,
    Optional, Tuple, Union,
)


# ============================================================================
# CONSTANTS
# ============================================================================

LOVELACE_PER_ADA = 1_000_000

# Fee search starts high and walks down to the fixpoint.
STARTING_FEE = 3_000_000
MAX_FEE_ITERATIONS = 5

# Automatic collateral is sized against a nominal 2 ada minimum fee.
COLLATERAL_MIN_FEE = 2_000_000

# Serialized size charged for each verification-key witness.
WITNESS_SIZE = 101

# Hex length of public key, script and policy hashes (28 bytes).
HASH_LENGTH = 56


# ============================================================================
# TYPE ALIASES
# ============================================================================

PubKeyHash = str
ScriptHash = str
DatumHash = str
TxId = str

# Datums and redeemers are arbitrary canonicalizable Python values.
Datum = Any
Redeemer = Any


# ============================================================================
# EXCEPTIONS
# ============================================================================

class MockChainError(Exception):
    """Base exception for every failure surfaced by the mock chain."""
    pass


class ValidationPhase(Enum):
    """
    Ledger validation phase that rejected a transaction.

    PHASE1: Structural, fee and signature checks. No state change.
    PHASE2: Script execution. Collateral is forfeited.
    """
    PHASE1 = "phase1"
    PHASE2 = "phase2"


class ValidationError(MockChainError):
    """Raised when the ledger rejects a transaction."""

    def __init__(self, phase: ValidationPhase, kind: str, detail: str = ""):
        self.phase = phase
        self.kind = kind
        self.detail = detail
        super().__init__(f"{phase.value} {kind}: {detail}" if detail else f"{phase.value} {kind}")


class ConstructionError(MockChainError):
    """Raised when a skeleton cannot be resolved into an unbalanced transaction."""
    pass


class BalanceStage(Enum):
    """
    Stage of the balancing process that failed.

    CALC_FEE: Failure during the fee search; the fee resolver may retry at the minimum fee.
    FINALIZING: No retry remains; the transaction cannot be balanced.
    """
    CALC_FEE = "calc_fee"
    FINALIZING = "finalizing"


class Unbalanceable(MockChainError):
    """Raised when no combination of owned UTxOs balances a transaction."""

    def __init__(self, stage: BalanceStage, tx: 'Tx', result: Any):
        self.stage = stage
        self.tx = tx
        self.result = result
        super().__init__(f"Unbalanceable at {stage.value}: {result!r}")


class NoSuitableCollateral(MockChainError):
    """Raised when automatic collateral selection cannot meet its threshold."""
    pass


class FailWith(MockChainError):
    """Generic failure carrying a message."""
    pass


# ============================================================================
# CANONICAL SERIALIZATION
# ============================================================================

def _canonicalize(value: Any) -> str:
    """
    Produce a canonical string representation of a value for hashing and sizing.

    Deterministic regardless of dict insertion order or object construction
    history. Types may provide their own form through a _canonical() method;
    dataclasses without one are serialized field by field.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return f"I:{value}"
    if isinstance(value, float):
        return f"N:{value!r}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, bytes):
        return f"B:{value.hex()}"
    if isinstance(value, Enum):
        return f"E:{value.value}"
    canonical = getattr(value, "_canonical", None)
    if callable(canonical):
        return canonical()
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: _canonicalize(kv[0]))
        serialized = ",".join(f"{_canonicalize(k)}:{_canonicalize(v)}" for k, v in items)
        return f"{{{serialized}}}"
    if isinstance(value, (list, tuple)):
        serialized = ",".join(_canonicalize(item) for item in value)
        return f"[{serialized}]"
    if isinstance(value, (set, frozenset)):
        serialized = ",".join(sorted(_canonicalize(item) for item in value))
        return f"<{serialized}>"
    if is_dataclass(value) and not isinstance(value, type):
        serialized = ",".join(
            f"{f.name}={_canonicalize(getattr(value, f.name))}" for f in fields(value)
        )
        return f"{type(value).__name__}({serialized})"
    return f"R:{value!r}"


def hash_content(value: Any, length: int = 64) -> str:
    """SHA-256 of the canonical form of value, as hex truncated to length."""
    return hashlib.sha256(_canonicalize(value).encode()).hexdigest()[:length]


def datum_hash(datum: Datum) -> DatumHash:
    """Content hash of a datum."""
    return hash_content(("datum", datum))


def signature_for(pkh: PubKeyHash, tx_id: TxId) -> str:
    """Mock signature of tx_id by the key behind pkh."""
    return hashlib.sha256(f"sig:{pkh}:{tx_id}".encode()).hexdigest()


# ============================================================================
# ASSETS AND VALUES
# ============================================================================

@dataclass(frozen=True, slots=True, order=True)
class AssetClass:
    """
    An asset identified by minting policy and token name.

    Ada is the asset class with an empty policy id and token name.
    """
    policy_id: str
    token_name: str

    def is_ada(self) -> bool:
        return not self.policy_id and not self.token_name

    def _canonical(self) -> str:
        return "ada" if self.is_ada() else f"{self.policy_id}.{self.token_name}"

    def __repr__(self) -> str:
        return "ada" if self.is_ada() else f"{self.policy_id[:8]}.{self.token_name}"


ADA = AssetClass("", "")


class Value:
    """
    Immutable multi-asset bag mapping AssetClass to an integer amount.

    Ada amounts are in lovelace. Zero entries are dropped so that equal bags
    compare equal. Amounts may be negative for intermediate balancing
    arithmetic; outputs must only carry non-negative values.
    """

    __slots__ = ("_amounts",)

    def __init__(self, amounts: Optional[Mapping[AssetClass, int]] = None):
        cleaned: Dict[AssetClass, int] = {}
        for asset, quantity in (amounts or {}).items():
            if not isinstance(asset, AssetClass):
                raise ValueError(f"Value key must be AssetClass, got {type(asset)}")
            if isinstance(quantity, bool) or not isinstance(quantity, int):
                raise ValueError(f"Value amount must be int, got {type(quantity)}")
            if quantity != 0:
                cleaned[asset] = quantity
        object.__setattr__(self, "_amounts", dict(sorted(cleaned.items())))

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("Value is immutable")

    def __reduce__(self):
        return (Value, (self._amounts,))

    @classmethod
    def of(cls, asset: AssetClass, quantity: int) -> Value:
        return cls({asset: quantity})

    @classmethod
    def sum(cls, values: Iterable[Value]) -> Value:
        """Sum an iterable of values (the empty sum is the zero value)."""
        totals: Dict[AssetClass, int] = {}
        for v in values:
            for asset, quantity in v.items():
                totals[asset] = totals.get(asset, 0) + quantity
        return cls(totals)

    @property
    def lovelace(self) -> int:
        """Ada amount in lovelace."""
        return self._amounts.get(ADA, 0)

    def amount_of(self, asset: AssetClass) -> int:
        return self._amounts.get(asset, 0)

    def assets(self) -> List[AssetClass]:
        return list(self._amounts)

    def items(self) -> Iterator[Tuple[AssetClass, int]]:
        return iter(self._amounts.items())

    def is_zero(self) -> bool:
        return not self._amounts

    def is_ada_only(self) -> bool:
        return all(asset.is_ada() for asset in self._amounts)

    def is_non_negative(self) -> bool:
        return all(quantity > 0 for quantity in self._amounts.values())

    def non_ada_count(self) -> int:
        return sum(1 for asset in self._amounts if not asset.is_ada())

    def positive_part(self) -> Value:
        """Entries with positive amounts."""
        return Value({a: q for a, q in self._amounts.items() if q > 0})

    def negative_part(self) -> Value:
        """Negated entries with negative amounts (so the result is non-negative)."""
        return Value({a: -q for a, q in self._amounts.items() if q < 0})

    def covers(self, other: Value) -> bool:
        """True if this value holds at least other in every asset."""
        return all(self.amount_of(asset) >= quantity for asset, quantity in other.items())

    def __add__(self, other: Value) -> Value:
        return Value.sum((self, other))

    def __sub__(self, other: Value) -> Value:
        return Value.sum((self, -other))

    def __neg__(self) -> Value:
        return Value({a: -q for a, q in self._amounts.items()})

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Value):
            return NotImplemented
        return self._amounts == other._amounts

    def __hash__(self) -> int:
        return hash(tuple(self._amounts.items()))

    def _canonical(self) -> str:
        entries = ",".join(f"{a._canonical()}:{q}" for a, q in self._amounts.items())
        return f"V{{{entries}}}"

    def __repr__(self) -> str:
        if not self._amounts:
            return "Value()"
        parts = []
        for asset, quantity in self._amounts.items():
            if asset.is_ada():
                parts.append(f"{quantity / LOVELACE_PER_ADA:g} ada")
            else:
                parts.append(f"{quantity} {asset!r}")
        return f"Value({', '.join(parts)})"


def lovelace(quantity: int) -> Value:
    """A value of quantity lovelace."""
    return Value.of(ADA, quantity)


def ada(quantity: Union[int, float]) -> Value:
    """A value of quantity ada (converted to whole lovelace)."""
    return Value.of(ADA, round(quantity * LOVELACE_PER_ADA))


def token(policy_id: str, token_name: str, quantity: int) -> Value:
    """A value of quantity units of a native token."""
    return Value.of(AssetClass(policy_id, token_name), quantity)


# ============================================================================
# ADDRESSES AND OUTPUTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Address:
    """
    Owner of an output: exactly one of a public key hash or a script hash.
    """
    pubkey_hash: Optional[PubKeyHash] = None
    script_hash: Optional[ScriptHash] = None

    def __post_init__(self):
        if (self.pubkey_hash is None) == (self.script_hash is None):
            raise ValueError("Address needs exactly one of pubkey_hash or script_hash")

    @classmethod
    def pubkey(cls, pkh: PubKeyHash) -> Address:
        return cls(pubkey_hash=pkh)

    @classmethod
    def script(cls, script_hash: ScriptHash) -> Address:
        return cls(script_hash=script_hash)

    @property
    def is_script(self) -> bool:
        return self.script_hash is not None

    def _canonical(self) -> str:
        if self.is_script:
            return f"A:script:{self.script_hash}"
        return f"A:pk:{self.pubkey_hash}"

    def __lt__(self, other: Address) -> bool:
        return self._canonical() < other._canonical()

    def __repr__(self) -> str:
        if self.is_script:
            return f"script:{self.script_hash[:10]}"
        return f"pk:{self.pubkey_hash[:10]}"


@dataclass(frozen=True, slots=True, order=True)
class OutputRef:
    """Identifier of a UTxO entry: the producing transaction and output index."""
    tx_id: TxId
    index: int

    def _canonical(self) -> str:
        return f"R:{self.tx_id}#{self.index}"

    def __repr__(self) -> str:
        return f"{self.tx_id[:10]}#{self.index}"


@dataclass(frozen=True, slots=True)
class Output:
    """
    A transaction output.

    Attributes:
        address: Owner of the output.
        value: Multi-asset value locked in the output.
        datum_hash: Hash of an attached datum (the datum lives in the datum store).
        inline_datum: Datum carried by the output itself.

    At most one of datum_hash and inline_datum may be set.
    """
    address: Address
    value: Value
    datum_hash: Optional[DatumHash] = None
    inline_datum: Optional[Datum] = None

    def __post_init__(self):
        if self.datum_hash is not None and self.inline_datum is not None:
            raise ValueError("Output cannot carry both a datum hash and an inline datum")

    @property
    def has_datum(self) -> bool:
        return self.datum_hash is not None or self.inline_datum is not None

    @property
    def owner(self) -> Optional[PubKeyHash]:
        return self.address.pubkey_hash

    def is_plain_ada_of(self, pkh: PubKeyHash) -> bool:
        """True if the output pays only ada, without datum, to pkh."""
        return self.owner == pkh and self.value.is_ada_only() and not self.has_datum

    def with_value(self, value: Value) -> Output:
        return replace(self, value=value)

    def _canonical(self) -> str:
        return (
            f"O({_canonicalize(self.address)},{_canonicalize(self.value)},"
            f"{_canonicalize(self.datum_hash)},{_canonicalize(self.inline_datum)})"
        )


# ============================================================================
# SCRIPTS AND SCRIPT CONTEXT
# ============================================================================

@dataclass(frozen=True, slots=True)
class Validator:
    """
    A spending validator script.

    fn(datum, redeemer, ctx) must return a truthy value to accept. Returning a
    falsy value or raising is a script failure. The script hash is derived from
    the name, so names must be unique per behaviour.
    """
    name: str
    fn: Callable[[Datum, Redeemer, 'ScriptContext'], Any] = field(compare=False, repr=False)

    @property
    def hash(self) -> ScriptHash:
        return hash_content(("validator", self.name), HASH_LENGTH)

    @property
    def address(self) -> Address:
        return Address.script(self.hash)

    def _canonical(self) -> str:
        return f"VS:{self.hash}"


@dataclass(frozen=True, slots=True)
class MintingPolicy:
    """
    A minting policy script; fn(redeemer, ctx) must return a truthy value.
    """
    name: str
    fn: Callable[[Redeemer, 'ScriptContext'], Any] = field(compare=False, repr=False)

    @property
    def policy_id(self) -> str:
        return hash_content(("policy", self.name), HASH_LENGTH)

    def asset(self, token_name: str) -> AssetClass:
        return AssetClass(self.policy_id, token_name)

    def _canonical(self) -> str:
        return f"MP:{self.policy_id}"


@dataclass(frozen=True, slots=True)
class Spending:
    """Script purpose: validating the spend of an output."""
    ref: OutputRef


@dataclass(frozen=True, slots=True)
class Minting:
    """Script purpose: validating a mint under a policy."""
    policy_id: str


@dataclass(frozen=True)
class TxInfo:
    """Read-only view of a transaction as seen by scripts."""
    id: TxId
    inputs: Tuple[Tuple[OutputRef, Output], ...]
    outputs: Tuple[Output, ...]
    fee: int
    mint: Value
    validity: 'ValidityRange'
    signatories: FrozenSet[PubKeyHash]
    data: Mapping[DatumHash, Datum]

    def value_paid_to(self, pkh: PubKeyHash) -> Value:
        return Value.sum(o.value for o in self.outputs if o.owner == pkh)

    def value_locked_by(self, script_hash: ScriptHash) -> Value:
        return Value.sum(o.value for o in self.outputs if o.address.script_hash == script_hash)

    def signed_by(self, pkh: PubKeyHash) -> bool:
        return pkh in self.signatories


@dataclass(frozen=True)
class ScriptContext:
    tx_info: TxInfo
    purpose: Union[Spending, Minting]


# ============================================================================
# TRANSACTIONS
# ============================================================================

@dataclass(frozen=True, slots=True)
class ValidityRange:
    """Slot interval [start, end); None means unbounded on that side."""
    start: Optional[int] = None
    end: Optional[int] = None

    def __post_init__(self):
        if self.start is not None and self.end is not None and self.end < self.start:
            raise ValueError(f"Validity range end {self.end} precedes start {self.start}")

    def contains(self, slot: int) -> bool:
        if self.start is not None and slot < self.start:
            return False
        if self.end is not None and slot >= self.end:
            return False
        return True


ALWAYS = ValidityRange()


@dataclass(frozen=True, slots=True)
class TxInput:
    """
    A consumed output. Script inputs name their validator and redeemer.
    """
    ref: OutputRef
    validator: Optional[Validator] = None
    redeemer: Optional[Redeemer] = None

    @property
    def is_script(self) -> bool:
        return self.validator is not None

    def _canonical(self) -> str:
        if not self.is_script:
            return f"In({_canonicalize(self.ref)})"
        return (
            f"In({_canonicalize(self.ref)},{_canonicalize(self.validator)},"
            f"{_canonicalize(self.redeemer)})"
        )


@dataclass(frozen=True)
class Tx:
    """
    A concrete transaction.

    Attributes:
        inputs: Consumed outputs, in order.
        outputs: Produced outputs; the i-th gets OutputRef(id, i).
        collateral_inputs: Outputs forfeited if script execution fails.
        mint: Net minted (positive) and burned (negative) value.
        mint_scripts: Minting policies with their redeemers.
        fee: Fee in lovelace.
        validity: Slot interval in which the transaction may be accepted.
        data: Datum witnesses as (hash, datum) pairs.
        signatures: (pubkey hash, signature) pairs; not part of the body.
        label: Free-form tag carried for display; not part of the body.

    The id is the content hash of the body (everything but signatures and label).
    """
    inputs: Tuple[TxInput, ...] = ()
    outputs: Tuple[Output, ...] = ()
    collateral_inputs: Tuple[OutputRef, ...] = ()
    mint: Value = field(default_factory=Value)
    mint_scripts: Tuple[Tuple[MintingPolicy, Redeemer], ...] = ()
    fee: int = 0
    validity: ValidityRange = ALWAYS
    data: Tuple[Tuple[DatumHash, Datum], ...] = ()
    signatures: Tuple[Tuple[PubKeyHash, str], ...] = ()
    label: Optional[str] = None

    def body(self) -> Tuple[Any, ...]:
        return (
            self.inputs, self.outputs, self.collateral_inputs, self.mint,
            self.mint_scripts, self.fee, self.validity, self.data,
        )

    def body_bytes(self) -> bytes:
        return _canonicalize(self.body()).encode()

    @cached_property
    def id(self) -> TxId:
        return hashlib.sha256(self.body_bytes()).hexdigest()

    @property
    def input_refs(self) -> Tuple[OutputRef, ...]:
        return tuple(i.ref for i in self.inputs)

    @property
    def datum_map(self) -> Dict[DatumHash, Datum]:
        return dict(self.data)

    @property
    def signers(self) -> FrozenSet[PubKeyHash]:
        return frozenset(pkh for pkh, _ in self.signatures)

    @property
    def runs_scripts(self) -> bool:
        return any(i.is_script for i in self.inputs) or bool(self.mint_scripts)

    def output_refs(self) -> List[Tuple[OutputRef, Output]]:
        return [(OutputRef(self.id, i), out) for i, out in enumerate(self.outputs)]

    def with_fee(self, fee: int) -> Tx:
        return replace(self, fee=fee)

    def __repr__(self) -> str:
        w = 100
        bar = "─" * w

        def pad(text: str) -> str:
            """Pad or truncate text to exactly w characters."""
            if len(text) > w:
                return text[:w-3] + "..."
            return text + " " * (w - len(text))

        lines = [
            "",
            f"┌{bar}┐",
            f"│{pad(' Tx: ' + self.id)}│",
            f"├{bar}┤",
            f"│{pad('   label      : ' + str(self.label))}│",
            f"│{pad('   fee        : ' + str(self.fee))}│",
            f"│{pad('   validity   : ' + repr(self.validity))}│",
            f"│{pad('   signers    : ' + ', '.join(s[:10] for s in sorted(self.signers)))}│",
            f"├{bar}┤",
            f"│{pad(' Inputs (' + str(len(self.inputs)) + '):')}│",
        ]
        for i, inp in enumerate(self.inputs):
            script = f" [{inp.validator.name}]" if inp.validator else ""
            lines.append(f"│{pad(f'   [{i}] {inp.ref!r}{script}')}│")
        if self.collateral_inputs:
            lines.append(f"│{pad(' Collateral (' + str(len(self.collateral_inputs)) + '):')}│")
            for ref in self.collateral_inputs:
                lines.append(f"│{pad(f'   {ref!r}')}│")
        lines.append(f"├{bar}┤")
        lines.append(f"│{pad(' Outputs (' + str(len(self.outputs)) + '):')}│")
        for i, out in enumerate(self.outputs):
            lines.append(f"│{pad(f'   [{i}] {out.address!r} {out.value!r}')}│")
        if not self.mint.is_zero():
            lines.append(f"├{bar}┤")
            lines.append(f"│{pad(' Mint: ' + repr(self.mint))}│")
        lines.append(f"└{bar}┘")
        return "\n".join(lines)


@dataclass(frozen=True)
class UnbalancedTx:
    """A resolved transaction draft and the signers its constraints require."""
    tx: Tx
    required_signers: FrozenSet[PubKeyHash] = frozenset()

    def map_tx(self, fn: Callable[[Tx], Tx]) -> UnbalancedTx:
        return replace(self, tx=fn(self.tx))
