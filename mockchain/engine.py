"""
engine.py - The MockChain: submission pipeline, queries and simulated time.

MockChain owns a ChainState and an environment. Each submission runs the
whole pipeline against a working clone of the state:

    generate -> collateral -> fee -> balance -> raw mods -> sign -> validate

and installs the clone only if the transaction was accepted (or, for a
script failure, once its collateral has been forfeited). A failed submission
leaves the chain exactly as it was.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Callable, FrozenSet, Iterator, List, Optional, Tuple, TypeVar

from .core import (
    Address, Datum, Output, OutputRef, PubKeyHash, Tx, Value,
    FailWith, MockChainError, lovelace,
)
from .balance import balance_tx_from
from .generator import ConstraintResolver, apply_raw_mods, generate_unbalanced, resolve_constraints
from .params import ProtocolParams
from .skeleton import RawModStage, TxSkeleton
from .state import (
    ChainEnv, ChainState, InitialDistribution, UtxoState,
    default_distribution, default_env, state_from_distribution,
)
from .validation import RejectedScript, commit_outcome, validate_transaction
from .wallet import Wallet, sign_tx


T = TypeVar("T")


class MockChain:
    """
    Deterministic in-process UTxO chain.

    Example:
        chain = MockChain(verbose=False)
        chain.validate_tx_skel(pays(PaysPK(wallet(2).pkh, ada(42))))
        chain.utxo_state().value_at(wallet(2).address)   # Value(142 ada)
    """

    def __init__(
        self,
        distribution: Optional[InitialDistribution] = None,
        env: Optional[ChainEnv] = None,
        state: Optional[ChainState] = None,
        resolver: Optional[ConstraintResolver] = None,
        verbose: bool = True,
    ):
        """
        Create a chain.

        Args:
            distribution: Genesis distribution (default: default_distribution()).
                Ignored when state is given.
            env: Protocol parameters and signers (default: default_env()).
            state: Start from this state instead of a genesis.
            resolver: Skeleton resolver (default: resolve_constraints).
            verbose: Print every submission (default: True)
        """
        if state is None:
            state = state_from_distribution(distribution if distribution is not None else default_distribution())
        self._state = state
        self._env = env if env is not None else default_env()
        self._resolver = resolver if resolver is not None else resolve_constraints
        self.verbose = verbose
        self.transaction_log: List[Tx] = []

    # ========================================================================
    # ENVIRONMENT
    # ========================================================================

    @property
    def state(self) -> ChainState:
        return self._state

    @property
    def env(self) -> ChainEnv:
        return self._env

    @property
    def params(self) -> ProtocolParams:
        return self._env.params

    @property
    def own_pkh(self) -> PubKeyHash:
        """Key hash of the fee payer."""
        return self._env.fee_payer.pkh

    @contextmanager
    def signing_with(self, *wallets: Wallet) -> Iterator[MockChain]:
        """Sign (and pay fees from the first of) wallets inside the block."""
        saved = self._env
        self._env = replace(saved, signers=tuple(wallets))
        try:
            yield self
        finally:
            self._env = saved

    @contextmanager
    def local_params(self, fn: Callable[[ProtocolParams], ProtocolParams]) -> Iterator[MockChain]:
        """Use fn(params) as protocol parameters inside the block."""
        saved = self._env
        self._env = replace(saved, params=fn(saved.params))
        try:
            yield self
        finally:
            self._env = saved

    # ========================================================================
    # SUBMISSION
    # ========================================================================

    def validate_tx_skel(self, skeleton: TxSkeleton) -> Tx:
        """
        Build, balance, sign and submit the transaction described by skeleton.

        Returns:
            The accepted transaction.

        Raises:
            ConstructionError: If the skeleton cannot be resolved.
            NoSuitableCollateral: If automatic collateral selection fails.
            Unbalanceable: If the fee payer cannot balance the transaction.
            ValidationError: If the ledger rejects it. A phase 2 rejection
                at validation forfeits the collateral; a script failing while
                fees are estimated leaves the chain unchanged.
            FailWith: If fee estimation fails for another reason.
        """
        env = self._env
        options = skeleton.options
        work = self._state.clone()
        try:
            utx = generate_unbalanced(env.params, work, skeleton, self._resolver)
            tx = balance_tx_from(env.params, work, options, env.fee_payer.pkh, utx)
            tx = apply_raw_mods(tx, options.raw_mods, RawModStage.AFTER_BALANCING)
            tx = sign_tx(tx, env.signers)
        except MockChainError as err:
            if self.verbose:
                print(f"✗ REJECTED: {skeleton.label or 'skeleton'}: {err}")
            raise
        return self._submit(work, utx.required_signers, tx, options.auto_slot_increase)

    def validate_tx(self, tx: Tx, required_signers: FrozenSet[PubKeyHash] = frozenset(), auto_slot_increase: bool = True) -> Tx:
        """Submit an already built and signed transaction."""
        return self._submit(self._state.clone(), frozenset(required_signers), tx, auto_slot_increase)

    def _submit(self, work: ChainState, required_signers: FrozenSet[PubKeyHash], tx: Tx, auto_slot_increase: bool) -> Tx:
        outcome = validate_transaction(work.current_slot, self.params, work.index, required_signers, tx)
        tx_id = commit_outcome(work, outcome)
        if tx_id is None:
            if isinstance(outcome, RejectedScript):
                self._state = work
            if self.verbose:
                self._print_tx_result(tx, f"REJECTED: {outcome.error}", "✗")
            raise outcome.error

        if auto_slot_increase:
            work.advance_slot(work.current_slot + 1)
        self._state = work
        self.transaction_log.append(tx)
        if self.verbose:
            self._print_tx_result(tx, "APPLIED", "✓")
        return tx

    def _print_tx_result(self, tx: Tx, result: str, icon: str) -> None:
        """Print tx with a result line in place of its closing border."""
        lines = repr(tx).split('\n')
        w = 100
        bar = "─" * w

        def pad(text: str) -> str:
            if len(text) > w:
                return text[:w-3] + "..."
            return text + " " * (w - len(text))
        lines[-1] = f"├{bar}┤"
        lines.append(f"│{pad(' ' + icon + ' ' + result)}│")
        lines.append(f"└{bar}┘")
        print("\n".join(lines))

    # ========================================================================
    # QUERIES (read-only)
    # ========================================================================

    def tx_out_by_ref(self, ref: OutputRef) -> Optional[Output]:
        return self._state.lookup(ref)

    def pk_utxos(self, pkh: Optional[PubKeyHash] = None) -> List[Tuple[OutputRef, Output]]:
        """UTxOs of pkh (default: the fee payer), ordered by reference."""
        return self._state.utxos_of(pkh if pkh is not None else self.own_pkh)

    def datum_from_output(self, output: Output) -> Optional[Datum]:
        """
        The datum attached to output, or None if it carries none.

        A public key output whose datum hash is unknown yields None.

        Raises:
            FailWith: If a script output carries a datum hash the datum store does not know.
        """
        if (output.address.is_script and output.datum_hash is not None
                and output.datum_hash not in self._state.datums):
            raise FailWith(f"Unmanaged datum with hash {output.datum_hash}")
        return self._state.datum_of(output)

    def utxos_such_that(
        self,
        address: Address,
        predicate: Optional[Callable[[Optional[Datum], Value], bool]] = None,
        datum_type: Optional[type] = None,
    ) -> List[Tuple[OutputRef, Output, Optional[Datum]]]:
        """
        UTxOs at address whose (datum, value) satisfy predicate, ordered by reference.

        If datum_type is given every datum found must be an instance of it.

        Raises:
            FailWith: If a datum is unmanaged or not a datum_type.
        """
        found = []
        for ref, out in self._state.outputs_at(address):
            datum = self.datum_from_output(out)
            if datum_type is not None and datum is not None and not isinstance(datum, datum_type):
                raise FailWith(f"Can't convert datum {datum!r} at {ref!r} to {datum_type.__name__}")
            if predicate is None or predicate(datum, out.value):
                found.append((ref, out, datum))
        return found

    def utxo_state(self) -> UtxoState:
        return self._state.to_utxo_state()

    def verify_conservation(self) -> dict:
        """
        Check that genesis supply + net minted == UTxO total + fees and forfeited collateral.

        Returns:
            Dict with keys 'valid', 'expected', 'actual' and 'difference'
            ('actual' - 'expected', zero when valid).
        """
        state = self._state
        expected = state.genesis_supply + state.minted
        actual = state.total_value() + lovelace(state.fees_collected)
        difference = actual - expected
        return {
            'valid': difference.is_zero(),
            'expected': expected,
            'actual': actual,
            'difference': difference,
        }

    # ========================================================================
    # TIME
    # ========================================================================

    @property
    def current_slot(self) -> int:
        return self._state.current_slot

    @property
    def current_time(self) -> int:
        """Last millisecond of the current slot."""
        return self.params.slot_config.slot_to_end_time(self.current_slot)

    def await_slot(self, slot: int) -> int:
        """Raise the slot clock to at least slot; return the resulting slot."""
        self._state.advance_slot(max(slot, self.current_slot))
        return self.current_slot

    def await_time(self, time_ms: int) -> int:
        """Wait until time_ms has passed; return the begin time of the resulting slot."""
        config = self.params.slot_config
        slot = self.await_slot(config.time_to_enclosing_slot(time_ms) + 1)
        return config.slot_to_begin_time(slot)

    # ========================================================================
    # BRANCHING
    # ========================================================================

    def clone(self) -> MockChain:
        """Independent copy sharing no mutable state with this chain."""
        cloned = MockChain.__new__(MockChain)
        cloned._state = self._state.clone()
        cloned._env = self._env
        cloned._resolver = self._resolver
        cloned.verbose = self.verbose
        cloned.transaction_log = list(self.transaction_log)
        return cloned

    def either(self, first: Callable[[MockChain], T], second: Callable[[MockChain], T]) -> T:
        """
        Run first on a clone and keep it if it succeeds; otherwise run second on
        a fresh clone. If both fail, second's error propagates.
        """
        attempt = self.clone()
        try:
            value = first(attempt)
        except MockChainError:
            attempt = self.clone()
            value = second(attempt)
        self._state = attempt._state
        self.transaction_log = attempt.transaction_log
        return value


# ============================================================================
# RUNNERS
# ============================================================================

@dataclass
class MockChainResult:
    """
    Result of running a program against a chain.

    Exactly one of value (on success) and error is meaningful. state is the
    chain state when the program returned or failed.
    """
    value: Any
    error: Optional[MockChainError]
    state: ChainState

    @property
    def ok(self) -> bool:
        return self.error is None


def run_mockchain_from(
    state: ChainState,
    program: Callable[[MockChain], Any],
    env: Optional[ChainEnv] = None,
    resolver: Optional[ConstraintResolver] = None,
    verbose: bool = False,
) -> MockChainResult:
    """Run program against a copy of state; state itself is not modified."""
    chain = MockChain(state=state.clone(), env=env, resolver=resolver, verbose=verbose)
    try:
        value = program(chain)
    except MockChainError as err:
        return MockChainResult(None, err, chain.state)
    return MockChainResult(value, None, chain.state)


def run_mockchain(
    program: Callable[[MockChain], Any],
    distribution: Optional[InitialDistribution] = None,
    env: Optional[ChainEnv] = None,
    resolver: Optional[ConstraintResolver] = None,
    verbose: bool = False,
) -> MockChainResult:
    """Run program against a fresh chain seeded by distribution."""
    state = state_from_distribution(distribution if distribution is not None else default_distribution())
    return run_mockchain_from(state, program, env=env, resolver=resolver, verbose=verbose)
