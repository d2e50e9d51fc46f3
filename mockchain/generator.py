"""
generator.py - Turning a TxSkeleton into an UnbalancedTx.

The generator resolves declared intents through a ConstraintResolver, then
applies the draft-level options: output reordering, raw pre-balancing
transformations and min-ada adjustment. It never balances or sets fees.
"""

from __future__ import annotations
from dataclasses import replace
from typing import Dict, List, Protocol, Sequence, Tuple

from .core import (
    Datum, DatumHash, MintingPolicy, Output, Redeemer, Tx, TxInput,
    UnbalancedTx, Value, ConstructionError, datum_hash, lovelace,
)
from .params import ProtocolParams, min_ada_for
from .skeleton import (
    IncludesDatum, PaysPK, PaysScript, Payment, RawModStage, RawModTx,
    SpendsPK, SpendsScript, TxSkeleton,
)
from .state import ChainState


class ConstraintResolver(Protocol):
    """
    Resolves a skeleton against the chain into an unbalanced draft.

    Implementations raise ConstructionError when the skeleton cannot be
    resolved; the engine forwards it unchanged.
    """

    def __call__(self, params: ProtocolParams, state: ChainState, skeleton: TxSkeleton) -> UnbalancedTx:
        ...


def resolve_constraints(params: ProtocolParams, state: ChainState, skeleton: TxSkeleton) -> UnbalancedTx:
    """
    Default resolver for the intent vocabulary of skeleton.py.

    Spends become inputs (script spends carry validator and redeemer, and
    their datum is attached as a witness), payments become outputs in
    declared order, mints accumulate into the mint value.

    Raises:
        ConstructionError: If an input is unknown, a script spend targets an
            output its validator does not lock, a spent datum is not managed,
            a mint leaves its policy, or a payment value is negative.
    """
    inputs: List[TxInput] = []
    data: Dict[DatumHash, Datum] = {}

    for spend in skeleton.spends:
        out = state.lookup(spend.ref)
        if out is None:
            raise ConstructionError(f"Unknown output {spend.ref!r}")
        if isinstance(spend, SpendsScript):
            if out.address != spend.validator.address:
                raise ConstructionError(
                    f"Output {spend.ref!r} is not locked by validator {spend.validator.name}"
                )
            if out.datum_hash is not None:
                datum = state.datums.get(out.datum_hash)
                if datum is None:
                    raise ConstructionError(f"Unmanaged datum with hash {out.datum_hash} at {spend.ref!r}")
                data[out.datum_hash] = datum
            inputs.append(TxInput(spend.ref, spend.validator, spend.redeemer))
        elif isinstance(spend, SpendsPK):
            if out.address.is_script:
                raise ConstructionError(f"Output {spend.ref!r} is locked by a script")
            inputs.append(TxInput(spend.ref))
        else:
            raise ConstructionError(f"Unknown spend intent {spend!r}")

    outputs: List[Output] = []
    for payment in skeleton.payments:
        if not isinstance(payment, (PaysPK, PaysScript)):
            raise ConstructionError(f"Unknown payment intent {payment!r}")
        if not payment.value.is_non_negative():
            raise ConstructionError(f"Payment value must be non-negative, got {payment.value!r}")
        outputs.append(payment.to_output())
        if payment.datum is not None:
            data[datum_hash(payment.datum)] = payment.datum

    mint = Value()
    mint_scripts: List[Tuple[MintingPolicy, Redeemer]] = []
    for m in skeleton.mints:
        if m.value.is_zero():
            raise ConstructionError(f"Empty mint under policy {m.policy.name}")
        foreign = [a for a in m.value.assets() if a.policy_id != m.policy.policy_id]
        if foreign:
            raise ConstructionError(f"Mint under {m.policy.name} includes foreign assets {foreign!r}")
        mint = mint + m.value
        mint_scripts.append((m.policy, m.redeemer))

    for item in skeleton.misc:
        if isinstance(item, IncludesDatum):
            data[datum_hash(item.datum)] = item.datum
        else:
            raise ConstructionError(f"Unknown constraint {item!r}")

    tx = Tx(
        inputs=tuple(inputs),
        outputs=tuple(outputs),
        mint=mint,
        mint_scripts=tuple(mint_scripts),
        validity=skeleton.validity,
        data=tuple(sorted(data.items(), key=lambda kv: kv[0])),
        label=skeleton.label,
    )
    return UnbalancedTx(tx, frozenset(skeleton.signatories))


def order_outputs(payments: Sequence[Payment], outputs: Sequence[Output]) -> Tuple[Output, ...]:
    """
    Reorder outputs to follow the declared payment order.

    Each payment claims the first unclaimed output equal to the output it
    declares; outputs claimed by no payment keep their relative order after
    the claimed ones.
    """
    remaining = list(outputs)
    ordered: List[Output] = []
    for payment in payments:
        target = payment.to_output()
        for i, out in enumerate(remaining):
            if out == target:
                ordered.append(remaining.pop(i))
                break
    return tuple(ordered + remaining)


def adjust_unbalanced_tx(params: ProtocolParams, tx: Tx) -> Tx:
    """Raise every output's ada to its min-ada floor."""
    outputs = []
    for out in tx.outputs:
        floor = min_ada_for(params, out)
        if out.value.lovelace < floor:
            out = out.with_value(out.value + lovelace(floor - out.value.lovelace))
        outputs.append(out)
    return replace(tx, outputs=tuple(outputs))


def apply_raw_mods(tx: Tx, mods: Sequence[RawModTx], stage: RawModStage) -> Tx:
    for mod in mods:
        if mod.stage is stage:
            tx = mod.fn(tx)
    return tx


def generate_unbalanced(
    params: ProtocolParams,
    state: ChainState,
    skeleton: TxSkeleton,
    resolver: ConstraintResolver = resolve_constraints,
) -> UnbalancedTx:
    """
    Resolve skeleton and apply its draft-level options.

    Registers display strings for the skeleton's datums in the state's datum store.

    Raises:
        ConstructionError: Forwarded from the resolver.
    """
    for datum in skeleton.datums():
        state.datums.register_display(datum)

    utx = resolver(params, state, skeleton)
    options = skeleton.options
    if options.force_output_ordering:
        utx = utx.map_tx(lambda tx: replace(tx, outputs=order_outputs(skeleton.payments, tx.outputs)))
    utx = utx.map_tx(lambda tx: apply_raw_mods(tx, options.raw_mods, RawModStage.BEFORE_BALANCING))
    if options.adjust_unbalanced_tx:
        utx = utx.map_tx(lambda tx: adjust_unbalanced_tx(params, tx))
    return utx
