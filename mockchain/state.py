"""
state.py - Chain state store, environment, genesis and the read-only state projection.

ChainState holds the UTxO index, the datum store and the slot clock. Only the
validator (validation.commit_outcome) replaces the index and datum store; the
engine raises the slot clock. Everything else reads.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from .core import (
    Address, Datum, DatumHash, Output, OutputRef, PubKeyHash, Tx, Value,
    ada, datum_hash,
)
from .params import ProtocolParams, default_params
from .wallet import Wallet, known_wallets, wallet


# Mapping from wallet to the value bags it receives at genesis (one UTxO per bag).
InitialDistribution = Dict[Wallet, List[Value]]

UTxOIndex = Dict[OutputRef, Output]


# ============================================================================
# DATUM STORE
# ============================================================================

class DatumStore:
    """
    Datums of hashed-datum outputs, keyed by hash, with a display string each.

    Display strings registered ahead of time (from skeletons) take precedence
    over repr() when the datum is added.
    """

    def __init__(self, entries: Optional[Dict[DatumHash, Tuple[Datum, str]]] = None):
        self._entries: Dict[DatumHash, Tuple[Datum, str]] = dict(entries or {})
        self._displays: Dict[DatumHash, str] = {}

    def get(self, h: DatumHash) -> Optional[Datum]:
        entry = self._entries.get(h)
        return entry[0] if entry is not None else None

    def display(self, h: DatumHash) -> Optional[str]:
        entry = self._entries.get(h)
        return entry[1] if entry is not None else None

    def add(self, h: DatumHash, datum: Datum) -> None:
        self._entries[h] = (datum, self._displays.get(h, repr(datum)))

    def remove(self, h: DatumHash) -> None:
        self._entries.pop(h, None)

    def register_display(self, datum: Datum, display: Optional[str] = None) -> None:
        self._displays[datum_hash(datum)] = display if display is not None else repr(datum)

    def hashes(self) -> List[DatumHash]:
        return sorted(self._entries)

    def copy(self) -> DatumStore:
        cloned = DatumStore(self._entries)
        cloned._displays = dict(self._displays)
        return cloned

    def __contains__(self, h: object) -> bool:
        return h in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DatumStore):
            return NotImplemented
        return self._entries == other._entries


# ============================================================================
# CHAIN STATE
# ============================================================================

class ChainState:
    """
    UTxO index, datum store and slot clock of a mock chain.

    Attributes:
        index: Mapping OutputRef -> Output of every unspent output.
        datums: Datum store for hashed datums of outputs in the index.
        current_slot: Logical clock; never decreases.
        fees_collected: Lovelace paid as fees or forfeited as collateral.
        minted: Net value minted since genesis.
        genesis_supply: Total value created by the genesis transaction.
    """

    def __init__(
        self,
        index: Optional[UTxOIndex] = None,
        datums: Optional[DatumStore] = None,
        current_slot: int = 0,
        genesis_supply: Optional[Value] = None,
    ):
        if current_slot < 0:
            raise ValueError(f"Slot must be non-negative, got {current_slot}")
        self.index: UTxOIndex = dict(index or {})
        self.datums: DatumStore = datums if datums is not None else DatumStore()
        self.current_slot: int = current_slot
        self.fees_collected: int = 0
        self.minted: Value = Value()
        self.genesis_supply: Value = (
            genesis_supply if genesis_supply is not None
            else Value.sum(o.value for o in self.index.values())
        )

    # ========================================================================
    # QUERIES (read-only)
    # ========================================================================

    def lookup(self, ref: OutputRef) -> Optional[Output]:
        return self.index.get(ref)

    def outputs_at(self, address: Address) -> List[Tuple[OutputRef, Output]]:
        """Outputs locked at address, ordered by reference."""
        return sorted(
            ((ref, out) for ref, out in self.index.items() if out.address == address),
            key=lambda item: item[0],
        )

    def utxos_of(self, pkh: PubKeyHash) -> List[Tuple[OutputRef, Output]]:
        """Outputs at the public key address of pkh, ordered by reference."""
        return self.outputs_at(Address.pubkey(pkh))

    def total_value(self) -> Value:
        return Value.sum(o.value for o in self.index.values())

    def datum_of(self, output: Output) -> Optional[Datum]:
        """The datum attached to output, from the output itself or the datum store."""
        if output.inline_datum is not None:
            return output.inline_datum
        if output.datum_hash is not None:
            return self.datums.get(output.datum_hash)
        return None

    # ========================================================================
    # MUTATION
    # ========================================================================

    def advance_slot(self, new_slot: int) -> None:
        """
        Move the slot clock forward.

        Raises:
            ValueError: If new_slot is before the current slot.
        """
        if new_slot < self.current_slot:
            raise ValueError(f"Cannot move slot backwards: {new_slot} < {self.current_slot}")
        self.current_slot = new_slot

    def clone(self) -> ChainState:
        """Independent copy; outputs and values are immutable and shared."""
        cloned = ChainState.__new__(ChainState)
        cloned.index = dict(self.index)
        cloned.datums = self.datums.copy()
        cloned.current_slot = self.current_slot
        cloned.fees_collected = self.fees_collected
        cloned.minted = self.minted
        cloned.genesis_supply = self.genesis_supply
        return cloned

    def to_utxo_state(self) -> UtxoState:
        entries: Dict[Address, List[Tuple[Value, Optional[UtxoDatum]]]] = {}
        for ref, out in sorted(self.index.items(), key=lambda item: item[0]):
            entries.setdefault(out.address, []).append((out.value, self._utxo_datum(out)))
        return UtxoState(entries)

    def _utxo_datum(self, output: Output) -> Optional[UtxoDatum]:
        if output.inline_datum is not None:
            return UtxoDatum(output.inline_datum, repr(output.inline_datum))
        if output.datum_hash is not None and output.datum_hash in self.datums:
            return UtxoDatum(self.datums.get(output.datum_hash), self.datums.display(output.datum_hash))
        return None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ChainState):
            return NotImplemented
        return (
            self.index == other.index
            and self.datums == other.datums
            and self.current_slot == other.current_slot
        )


# ============================================================================
# STATE PROJECTION
# ============================================================================

@dataclass(frozen=True)
class UtxoDatum:
    datum: Datum
    display: str


class UtxoState:
    """
    Read-only projection: address -> list of (value, optional datum) per UTxO.
    """

    def __init__(self, entries: Dict[Address, List[Tuple[Value, Optional[UtxoDatum]]]]):
        self._entries = {addr: list(items) for addr, items in entries.items()}

    def __getitem__(self, address: Address) -> List[Tuple[Value, Optional[UtxoDatum]]]:
        return list(self._entries.get(address, []))

    def __iter__(self) -> Iterator[Address]:
        return iter(sorted(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, UtxoState):
            return NotImplemented
        return self._entries == other._entries

    def addresses(self) -> List[Address]:
        return sorted(self._entries)

    def value_at(self, address: Address) -> Value:
        return Value.sum(value for value, _ in self._entries.get(address, []))


# ============================================================================
# ENVIRONMENT
# ============================================================================

@dataclass(frozen=True)
class ChainEnv:
    """
    Read-only environment of a pipeline run.

    Attributes:
        params: Protocol parameters.
        signers: Wallets signing every transaction, in order; the first pays fees.
    """
    params: ProtocolParams = field(default_factory=default_params)
    signers: Tuple[Wallet, ...] = (Wallet(1),)

    def __post_init__(self):
        if not self.signers:
            raise ValueError("ChainEnv needs at least one signer")
        object.__setattr__(self, "signers", tuple(self.signers))

    @property
    def fee_payer(self) -> Wallet:
        return self.signers[0]


def default_env(params: Optional[ProtocolParams] = None) -> ChainEnv:
    """Environment signing with wallet(1) only."""
    return ChainEnv(params=params or default_params(), signers=(wallet(1),))


# ============================================================================
# GENESIS
# ============================================================================

def default_distribution(wallet_count: int = 10, ada_each: int = 100) -> InitialDistribution:
    """
    Initial distribution giving each of the first wallet_count wallets a single
    UTxO of ada_each ada.
    """
    return {w: [ada(ada_each)] for w in known_wallets()[:wallet_count]}


def genesis_tx(distribution: InitialDistribution) -> Tx:
    """
    The funding transaction for a distribution: no inputs, one output per bag,
    wallets in number order and bags in list order. Its mint is the total supply.
    """
    outputs = []
    for w in sorted(distribution):
        for bag in distribution[w]:
            if bag.is_zero() or not bag.is_non_negative():
                raise ValueError(f"Genesis bag for {w!r} must be positive, got {bag!r}")
            outputs.append(Output(w.address, bag))
    return Tx(outputs=tuple(outputs), mint=Value.sum(o.value for o in outputs), label="genesis")


def state_from_distribution(distribution: InitialDistribution) -> ChainState:
    """Fresh chain state at slot 0 seeded by the genesis transaction of distribution."""
    tx = genesis_tx(distribution)
    return ChainState(index=dict(tx.output_refs()), current_slot=0)
