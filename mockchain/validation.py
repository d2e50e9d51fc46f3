"""
validation.py - Two-phase ledger validation and the single state commit.

Phase 1 checks structure, value conservation, fees, signatures and
collateral. Phase 2 runs the spending validators and minting policies.

validate_transaction() is pure and returns one of three outcomes:
    Accepted            -> the transaction's inputs are consumed, outputs created
    RejectedStructural  -> nothing changes
    RejectedScript      -> only the collateral is consumed

commit_outcome() is the only function that writes a ChainState's index and
datum store.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from .core import (
    Datum, DatumHash, Minting, Output, OutputRef, PubKeyHash, ScriptContext,
    Spending, Tx, TxId, TxInfo, Value,
    ValidationError, ValidationPhase, lovelace, signature_for,
)
from .params import (
    ProtocolParams, min_ada_for, required_collateral, size_fee, tx_size,
)
from .state import ChainState, UTxOIndex


# Phase 1 error kinds
NO_INPUTS = "NoInputs"
DUPLICATE_INPUT = "DuplicateInput"
INPUT_NOT_FOUND = "InputNotFound"
OUTSIDE_VALIDITY_RANGE = "OutsideValidityRange"
NEGATIVE_OUTPUT = "NegativeOutput"
OUTPUT_BELOW_MIN_ADA = "OutputBelowMinAda"
TX_TOO_LARGE = "TxTooLarge"
VALUE_NOT_PRESERVED = "ValueNotPreserved"
FEE_TOO_SMALL = "FeeTooSmall"
MISSING_SIGNATURE = "MissingSignature"
INVALID_SIGNATURE = "InvalidSignature"
MISSING_MINTING_POLICY = "MissingMintingPolicy"
WRONG_VALIDATOR = "WrongValidator"
MISSING_REDEEMER = "MissingRedeemer"
MISSING_DATUM = "MissingDatum"
INSUFFICIENT_COLLATERAL = "InsufficientCollateral"
INVALID_COLLATERAL = "InvalidCollateral"
TOO_MANY_COLLATERAL_INPUTS = "TooManyCollateralInputs"

# Phase 2 error kind
SCRIPT_FAILURE = "ScriptFailure"


def _phase1(kind: str, detail: str = "") -> ValidationError:
    return ValidationError(ValidationPhase.PHASE1, kind, detail)


# ============================================================================
# HELPERS
# ============================================================================

def resolve_inputs(index: UTxOIndex, refs: Iterable[OutputRef]) -> List[Tuple[OutputRef, Output]]:
    """
    Look up refs in index.

    Raises:
        ValidationError: Phase 1 InputNotFound for the first missing ref.
    """
    resolved = []
    for ref in refs:
        out = index.get(ref)
        if out is None:
            raise _phase1(INPUT_NOT_FOUND, repr(ref))
        resolved.append((ref, out))
    return resolved


def required_witnesses(index: UTxOIndex, required_signers: FrozenSet[PubKeyHash], tx: Tx) -> FrozenSet[PubKeyHash]:
    """Keys that must sign tx: required signers plus owners of public key inputs and collateral."""
    owners = set(required_signers)
    for ref in tx.input_refs + tx.collateral_inputs:
        out = index.get(ref)
        if out is not None and out.owner is not None:
            owners.add(out.owner)
    return frozenset(owners)


def script_count(tx: Tx) -> int:
    return sum(1 for i in tx.inputs if i.is_script) + len(tx.mint_scripts)


def build_tx_info(index: UTxOIndex, required_signers: FrozenSet[PubKeyHash], tx: Tx) -> TxInfo:
    return TxInfo(
        id=tx.id,
        inputs=tuple(resolve_inputs(index, tx.input_refs)),
        outputs=tx.outputs,
        fee=tx.fee,
        mint=tx.mint,
        validity=tx.validity,
        signatories=frozenset(required_signers),
        data=tx.datum_map,
    )


def _spent_datum(out: Output, data: Dict[DatumHash, Datum]) -> Datum:
    if out.inline_datum is not None:
        return out.inline_datum
    if out.datum_hash is not None and out.datum_hash in data:
        return data[out.datum_hash]
    raise _phase1(MISSING_DATUM, f"no datum for script output {out!r}")


def run_scripts(index: UTxOIndex, required_signers: FrozenSet[PubKeyHash], tx: Tx) -> int:
    """
    Run every spending validator and minting policy of tx.

    Returns the number of scripts run.

    Raises:
        ValidationError: Phase 2 ScriptFailure if a script returns a falsy value
            or raises; phase 1 if an input or a spent datum is missing.
    """
    info = build_tx_info(index, required_signers, tx)
    data = tx.datum_map
    for inp in tx.inputs:
        if not inp.is_script:
            continue
        datum = _spent_datum(index[inp.ref], data)
        ctx = ScriptContext(info, Spending(inp.ref))
        _run(inp.validator.name, lambda: inp.validator.fn(datum, inp.redeemer, ctx))
    for policy, redeemer in tx.mint_scripts:
        ctx = ScriptContext(info, Minting(policy.policy_id))
        _run(policy.name, lambda: policy.fn(redeemer, ctx))
    return script_count(tx)


def _run(name: str, call) -> None:
    try:
        accepted = call()
    except Exception as err:
        raise ValidationError(ValidationPhase.PHASE2, SCRIPT_FAILURE, f"{name} raised {err!r}") from err
    if not accepted:
        raise ValidationError(ValidationPhase.PHASE2, SCRIPT_FAILURE, f"{name} rejected the transaction")


def min_tx_fee(params: ProtocolParams, index: UTxOIndex, required_signers: FrozenSet[PubKeyHash], tx: Tx) -> int:
    """Fee the ledger requires for tx: size fee plus a fixed charge per script run."""
    witnesses = len(required_witnesses(index, required_signers, tx))
    return size_fee(params, tx_size(tx, witnesses)) + script_count(tx) * params.script_execution_fee


def estimate_fee(params: ProtocolParams, index: UTxOIndex, required_signers: FrozenSet[PubKeyHash], tx: Tx) -> int:
    """
    Fee for tx after running its scripts.

    Raises:
        ValidationError: From run_scripts.
    """
    run_scripts(index, required_signers, tx)
    return min_tx_fee(params, index, required_signers, tx)


# ============================================================================
# PHASE 1
# ============================================================================

def _check_phase1(
    slot: int,
    params: ProtocolParams,
    index: UTxOIndex,
    required_signers: FrozenSet[PubKeyHash],
    tx: Tx,
) -> None:
    if not tx.inputs:
        raise _phase1(NO_INPUTS)
    refs = tx.input_refs
    if len(set(refs)) != len(refs):
        raise _phase1(DUPLICATE_INPUT)
    if len(set(tx.collateral_inputs)) != len(tx.collateral_inputs):
        raise _phase1(DUPLICATE_INPUT, "repeated collateral input")
    inputs = resolve_inputs(index, refs)
    collateral = resolve_inputs(index, tx.collateral_inputs)

    if not tx.validity.contains(slot):
        raise _phase1(OUTSIDE_VALIDITY_RANGE, f"slot {slot} not in {tx.validity!r}")

    for i, out in enumerate(tx.outputs):
        if not out.value.is_non_negative():
            raise _phase1(NEGATIVE_OUTPUT, f"output {i}: {out.value!r}")
        floor = min_ada_for(params, out)
        if out.value.lovelace < floor:
            raise _phase1(OUTPUT_BELOW_MIN_ADA, f"output {i} holds {out.value.lovelace}, needs {floor}")

    witnesses = required_witnesses(index, required_signers, tx)
    size = tx_size(tx, len(witnesses))
    if size > params.max_tx_size:
        raise _phase1(TX_TOO_LARGE, f"{size} > {params.max_tx_size}")

    if tx.fee < 0:
        raise _phase1(VALUE_NOT_PRESERVED, f"negative fee {tx.fee}")
    consumed = Value.sum(out.value for _, out in inputs) + tx.mint
    produced = Value.sum(out.value for out in tx.outputs) + lovelace(tx.fee)
    if consumed != produced:
        raise _phase1(VALUE_NOT_PRESERVED, f"consumed {consumed!r}, produced {produced!r}")

    needed_fee = min_tx_fee(params, index, required_signers, tx)
    if tx.fee < needed_fee:
        raise _phase1(FEE_TOO_SMALL, f"{tx.fee} < {needed_fee}")

    signatures = dict(tx.signatures)
    for pkh in sorted(witnesses):
        if pkh not in signatures:
            raise _phase1(MISSING_SIGNATURE, pkh)
    for pkh, sig in tx.signatures:
        if sig != signature_for(pkh, tx.id):
            raise _phase1(INVALID_SIGNATURE, pkh)

    policies = {policy.policy_id for policy, _ in tx.mint_scripts}
    for asset in tx.mint.assets():
        if asset.policy_id not in policies:
            raise _phase1(MISSING_MINTING_POLICY, repr(asset))

    data = tx.datum_map
    for inp, (ref, out) in zip(tx.inputs, inputs):
        if out.address.is_script != inp.is_script:
            raise _phase1(WRONG_VALIDATOR, f"input {ref!r}")
        if not inp.is_script:
            continue
        if inp.validator.hash != out.address.script_hash:
            raise _phase1(WRONG_VALIDATOR, f"{inp.validator.name} does not lock {ref!r}")
        if inp.redeemer is None:
            raise _phase1(MISSING_REDEEMER, repr(ref))
        _spent_datum(out, data)

    if tx.runs_scripts:
        if not collateral:
            raise _phase1(INSUFFICIENT_COLLATERAL, "no collateral inputs")
        for ref, out in collateral:
            if out.address.is_script or not out.value.is_ada_only() or out.has_datum:
                raise _phase1(INVALID_COLLATERAL, repr(ref))
        if params.max_collateral_inputs is not None and len(collateral) > params.max_collateral_inputs:
            raise _phase1(TOO_MANY_COLLATERAL_INPUTS, f"{len(collateral)} > {params.max_collateral_inputs}")
        total = sum(out.value.lovelace for _, out in collateral)
        needed = required_collateral(params, tx.fee)
        if total < needed:
            raise _phase1(INSUFFICIENT_COLLATERAL, f"{total} < {needed}")


# ============================================================================
# OUTCOMES
# ============================================================================

@dataclass(frozen=True)
class Accepted:
    tx: Tx


@dataclass(frozen=True)
class RejectedStructural:
    tx: Tx
    error: ValidationError


@dataclass(frozen=True)
class RejectedScript:
    tx: Tx
    error: ValidationError


ValidationOutcome = Union[Accepted, RejectedStructural, RejectedScript]


def validate_transaction(
    slot: int,
    params: ProtocolParams,
    index: UTxOIndex,
    required_signers: FrozenSet[PubKeyHash],
    tx: Tx,
) -> ValidationOutcome:
    """Run both validation phases against index at slot. Pure."""
    try:
        _check_phase1(slot, params, index, required_signers, tx)
    except ValidationError as err:
        return RejectedStructural(tx, err)
    try:
        run_scripts(index, required_signers, tx)
    except ValidationError as err:
        if err.phase is ValidationPhase.PHASE1:
            return RejectedStructural(tx, err)
        return RejectedScript(tx, err)
    return Accepted(tx)


# ============================================================================
# COMMIT
# ============================================================================

def _sync_datums(state: ChainState, consumed: List[Output], created: List[Output], data: Dict[DatumHash, Datum]) -> None:
    live = {out.datum_hash for out in state.index.values() if out.datum_hash is not None}
    for out in consumed:
        if out.datum_hash is not None and out.datum_hash not in live:
            state.datums.remove(out.datum_hash)
    for out in created:
        if out.datum_hash is not None and out.datum_hash in data:
            state.datums.add(out.datum_hash, data[out.datum_hash])


def commit_outcome(state: ChainState, outcome: ValidationOutcome) -> Optional[TxId]:
    """
    Apply outcome to state.

    Returns the transaction id if the transaction was accepted, None otherwise.
    The index is replaced wholesale; the datum store follows it.
    """
    if isinstance(outcome, RejectedStructural):
        return None

    tx = outcome.tx
    index = dict(state.index)

    if isinstance(outcome, RejectedScript):
        consumed = [index.pop(ref) for ref in tx.collateral_inputs]
        state.index = index
        _sync_datums(state, consumed, [], {})
        state.fees_collected += sum(out.value.lovelace for out in consumed)
        return None

    consumed = [index.pop(ref) for ref in tx.input_refs]
    created = tx.output_refs()
    for ref, out in created:
        index[ref] = out
    state.index = index
    _sync_datums(state, consumed, [out for _, out in created], tx.datum_map)
    state.fees_collected += tx.fee
    state.minted = state.minted + tx.mint
    return tx.id


def validate_and_commit(
    state: ChainState,
    params: ProtocolParams,
    required_signers: FrozenSet[PubKeyHash],
    tx: Tx,
) -> TxId:
    """
    Validate tx at the state's current slot and commit the outcome.

    Raises:
        ValidationError: If tx is rejected. On a phase 2 rejection the
            collateral has already been consumed from state.
    """
    outcome = validate_transaction(state.current_slot, params, state.index, required_signers, tx)
    tx_id = commit_outcome(state, outcome)
    if tx_id is None:
        raise outcome.error
    return tx_id
