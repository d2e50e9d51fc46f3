"""
balance.py - Balancing, collateral selection and fee resolution.

Given an unbalanced draft and a fee payer, this module:
    - computes the per-asset deficit and selects payer UTxOs covering it (calc_balance)
    - folds change back into the draft without creating dust outputs (apply_balance)
    - selects ada-only collateral for transactions that run scripts (select_collateral)
    - searches for a fee that matches the shape of the balanced transaction (resolve_fee)

All functions are pure with respect to ChainState: they read the index and
never commit anything.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

from .core import (
    Address, AssetClass, Output, OutputRef, PubKeyHash, Tx, TxInput,
    UnbalancedTx, Value, ADA,
    STARTING_FEE, MAX_FEE_ITERATIONS,
    BalanceStage, FailWith, NoSuitableCollateral, Unbalanceable,
    ValidationError, ValidationPhase, lovelace,
)
from .params import ProtocolParams, clears_floor, collateral_threshold, protocol_min_fee
from .skeleton import (
    BalanceOutputPolicy, Collateral, CollateralUtxos, TxOptions,
)
from .state import ChainState
from .validation import estimate_fee


Candidate = Tuple[OutputRef, Output]


@dataclass(frozen=True)
class BalanceResult:
    """
    Outcome of a balancing computation.

    Attributes:
        new_inputs: Payer UTxOs selected to cover the deficit, in selection order.
        leftover: Value selected beyond what the deficit required.
        excess: Surplus already present in the draft (inputs + mint beyond outputs + fee).
        remainder_utxos: Payer UTxOs not selected, in their original order.
    """
    new_inputs: Tuple[OutputRef, ...]
    leftover: Value
    excess: Value
    remainder_utxos: Tuple[Candidate, ...]

    @property
    def return_value(self) -> Value:
        """Change that has to go back to the payer."""
        return self.leftover + self.excess


# ============================================================================
# BALANCER
# ============================================================================

def input_value(state: ChainState, tx: Tx) -> Value:
    """
    Total value consumed by tx's inputs.

    Raises:
        FailWith: If an input is not in the index.
    """
    total = Value()
    for ref in tx.input_refs:
        out = state.lookup(ref)
        if out is None:
            raise FailWith(f"Unknown input {ref!r}")
        total = total + out.value
    return total


def tx_deficit(state: ChainState, tx: Tx) -> Value:
    """(outputs + fee) - (inputs + mint), per asset."""
    required = Value.sum(o.value for o in tx.outputs) + lovelace(tx.fee)
    provided = input_value(state, tx) + tx.mint
    return required - provided


def _select_for(asset: AssetClass, needed: int, pool: List[Candidate], selected: List[Candidate]) -> int:
    """Move largest holders of asset from pool to selected until needed is met; return what is still missing."""
    holders = sorted(
        (c for c in pool if c[1].value.amount_of(asset) > 0),
        key=lambda c: (-c[1].value.amount_of(asset), c[0]),
    )
    for candidate in holders:
        if needed <= 0:
            break
        pool.remove(candidate)
        selected.append(candidate)
        needed -= candidate[1].value.amount_of(asset)
    return needed


def balance_with_utxos(tx: Tx, deficit: Value, candidates: List[Candidate], stage: BalanceStage) -> BalanceResult:
    """
    Select candidates covering the positive part of deficit.

    Missing non-ada assets are covered first in asset order, then ada. Within an
    asset the largest holdings are taken first, ties broken by reference.

    Raises:
        Unbalanceable: If the whole candidate pool cannot cover the deficit.
    """
    missing = deficit.positive_part()
    excess = deficit.negative_part()
    pool = list(candidates)
    selected: List[Candidate] = []

    order = [a for a in missing.assets() if not a.is_ada()]
    if missing.lovelace > 0:
        order.append(ADA)
    for asset in order:
        already = Value.sum(out.value for _, out in selected).amount_of(asset)
        if _select_for(asset, missing.amount_of(asset) - already, pool, selected) > 0:
            partial = BalanceResult(
                new_inputs=tuple(ref for ref, _ in selected),
                leftover=Value(),
                excess=excess,
                remainder_utxos=tuple(c for c in candidates if c not in selected),
            )
            raise Unbalanceable(stage, tx, partial)

    chosen = Value.sum(out.value for _, out in selected)
    return BalanceResult(
        new_inputs=tuple(ref for ref, _ in selected),
        leftover=chosen - missing,
        excess=excess,
        remainder_utxos=tuple(c for c in candidates if c not in selected),
    )


def calc_balance(state: ChainState, payer: PubKeyHash, tx: Tx, stage: BalanceStage) -> BalanceResult:
    """Balance tx against the payer's UTxOs that tx does not already spend."""
    spent = set(tx.input_refs)
    candidates = [c for c in state.utxos_of(payer) if c[0] not in spent]
    return balance_with_utxos(tx, tx_deficit(state, tx), candidates, stage)


# ============================================================================
# BALANCE APPLIER
# ============================================================================

def _adjustable_output(tx: Tx, payer: PubKeyHash) -> Optional[int]:
    """Position of the payer's plain ada output holding the most ada (earliest on ties)."""
    best: Optional[int] = None
    for i, out in enumerate(tx.outputs):
        if not out.is_plain_ada_of(payer):
            continue
        if best is None or out.value.lovelace > tx.outputs[best].value.lovelace:
            best = i
    return best


def apply_balance(
    params: ProtocolParams,
    policy: BalanceOutputPolicy,
    payer: PubKeyHash,
    result: BalanceResult,
    tx: Tx,
    stage: BalanceStage,
) -> Tx:
    """
    Add the selected inputs to tx and return the change to the payer.

    Change goes, first success wins:
    1. into the payer's largest plain ada output, if the policy allows it;
    2. into a new output paying the payer;
    3. into a new output combining it with one more payer UTxO, tried in
       descending ada order, which becomes an extra input.

    Raises:
        Unbalanceable: If no option keeps every output above its min-ada floor.
    """
    inputs = tx.inputs + tuple(TxInput(ref) for ref in result.new_inputs)
    change = result.return_value
    if change.is_zero():
        return replace(tx, inputs=inputs)

    if policy is BalanceOutputPolicy.ADJUST_EXISTING_OUTPUT:
        i = _adjustable_output(tx, payer)
        if i is not None:
            adjusted = tx.outputs[i].with_value(tx.outputs[i].value + change)
            if clears_floor(params, adjusted):
                outputs = tx.outputs[:i] + (adjusted,) + tx.outputs[i + 1:]
                return replace(tx, inputs=inputs, outputs=outputs)

    change_output = Output(Address.pubkey(payer), change)
    if clears_floor(params, change_output):
        return replace(tx, inputs=inputs, outputs=tx.outputs + (change_output,))

    for ref, out in sorted(result.remainder_utxos, key=lambda c: -c[1].value.lovelace):
        combined = Output(Address.pubkey(payer), change + out.value)
        if clears_floor(params, combined):
            return replace(tx, inputs=inputs + (TxInput(ref),), outputs=tx.outputs + (combined,))

    raise Unbalanceable(stage, tx, result)


def balance_tx_stage(
    params: ProtocolParams,
    state: ChainState,
    policy: BalanceOutputPolicy,
    payer: PubKeyHash,
    tx: Tx,
    stage: BalanceStage,
) -> Tx:
    """Balance tx at its current fee."""
    result = calc_balance(state, payer, tx, stage)
    return apply_balance(params, policy, payer, result, tx, stage)


# ============================================================================
# COLLATERAL SELECTOR
# ============================================================================

def select_collateral(
    params: ProtocolParams,
    state: ChainState,
    payer: PubKeyHash,
    collateral: Collateral,
) -> Tuple[OutputRef, ...]:
    """
    Collateral inputs for a transaction paid by payer.

    Explicit refs are returned as given. Otherwise the payer's plain ada UTxOs
    are taken largest first until their ada reaches collateral_threshold(params);
    at least one is always taken.

    Raises:
        NoSuitableCollateral: If the payer has no plain ada UTxO, the threshold
            cannot be reached, or only with more than
            params.max_collateral_inputs UTxOs.
    """
    if isinstance(collateral, CollateralUtxos):
        return tuple(collateral.refs)

    threshold = collateral_threshold(params)
    candidates = sorted(
        (c for c in state.utxos_of(payer) if c[1].is_plain_ada_of(payer)),
        key=lambda c: (-c[1].value.lovelace, c[0]),
    )
    chosen: List[OutputRef] = []
    total = 0
    for ref, out in candidates:
        if chosen and total >= threshold:
            break
        chosen.append(ref)
        total += out.value.lovelace

    if not chosen or total < threshold:
        raise NoSuitableCollateral(
            f"Plain ada UTxOs of {payer[:10]} hold {total} lovelace, collateral needs {threshold}"
        )
    if params.max_collateral_inputs is not None and len(chosen) > params.max_collateral_inputs:
        raise NoSuitableCollateral(
            f"Collateral needs {len(chosen)} inputs, at most {params.max_collateral_inputs} allowed"
        )
    return tuple(chosen)


# ============================================================================
# FEE RESOLVER
# ============================================================================

def _fee_fixpoint(
    params: ProtocolParams,
    state: ChainState,
    policy: BalanceOutputPolicy,
    payer: PubKeyHash,
    utx: UnbalancedTx,
    fee: int,
    stage: BalanceStage,
) -> int:
    """
    Iterate fee -> balanced tx -> estimated fee until the estimate stops moving.

    Returns the fixpoint, or the larger of the last two fees if there is none
    within MAX_FEE_ITERATIONS estimations.
    """
    assumed = fee
    previous = fee
    for _ in range(MAX_FEE_ITERATIONS):
        candidate = balance_tx_stage(params, state, policy, payer, utx.tx.with_fee(assumed), stage)
        try:
            estimate = estimate_fee(params, state.index, utx.required_signers, candidate)
        except ValidationError as err:
            if err.phase is ValidationPhase.PHASE2:
                raise
            raise FailWith(f"calc_fee: {err}") from err
        if estimate == assumed:
            return assumed
        previous, assumed = assumed, estimate
    return max(previous, assumed)


def resolve_fee(
    params: ProtocolParams,
    state: ChainState,
    policy: BalanceOutputPolicy,
    payer: PubKeyHash,
    utx: UnbalancedTx,
) -> int:
    """
    Find the fee for utx once balanced by payer.

    The search starts from STARTING_FEE. If the payer cannot afford that, it is
    restarted once from the protocol minimum fee; a failure there is final.

    Raises:
        Unbalanceable: At stage FINALIZING if even the minimum fee search fails.
        ValidationError: If a script fails while fees are estimated (phase 2).
        FailWith: If estimation fails for any other reason.
    """
    try:
        return _fee_fixpoint(params, state, policy, payer, utx, STARTING_FEE, BalanceStage.CALC_FEE)
    except Unbalanceable as err:
        if err.stage is not BalanceStage.CALC_FEE:
            raise
    return _fee_fixpoint(
        params, state, policy, payer, utx, protocol_min_fee(params), BalanceStage.FINALIZING
    )


def balance_tx_from(
    params: ProtocolParams,
    state: ChainState,
    options: TxOptions,
    payer: PubKeyHash,
    utx: UnbalancedTx,
) -> Tx:
    """
    Attach collateral, resolve the fee and balance utx for payer.

    Collateral is attached when the draft runs scripts or explicit collateral
    is given. With options.balance off only collateral is attached.
    """
    tx = utx.tx
    if tx.runs_scripts or isinstance(options.collateral, CollateralUtxos):
        tx = replace(tx, collateral_inputs=select_collateral(params, state, payer, options.collateral))
    if not options.balance:
        return tx

    utx = replace(utx, tx=tx)
    policy = options.balance_output_policy
    fee = resolve_fee(params, state, policy, payer, utx)
    return balance_tx_stage(params, state, policy, payer, tx.with_fee(fee), BalanceStage.FINALIZING)
