"""
mockchain - Deterministic in-process UTxO ledger simulator

Balances, pays fees for, signs and validates transactions against a mock
UTxO chain, so transaction logic can be tested without a network.

Usage:
    from mockchain import MockChain, PaysPK, pays, wallet, ada

    chain = MockChain(verbose=False)

    # wallet(1) signs and pays fees by default
    tx = chain.validate_tx_skel(pays(PaysPK(wallet(2).pkh, ada(42))))

    state = chain.utxo_state()
    state.value_at(wallet(2).address)   # Value(142 ada)

    # Pay from another wallet
    with chain.signing_with(wallet(3)):
        chain.validate_tx_skel(pays(PaysPK(wallet(1).pkh, ada(10))))
"""

# Core types
from .core import (
    AssetClass,
    Value,
    Address,
    OutputRef,
    Output,
    Validator,
    MintingPolicy,
    ScriptContext,
    TxInfo,
    Spending,
    Minting,
    ValidityRange,
    TxInput,
    Tx,
    UnbalancedTx,
    ADA,
    ALWAYS,
    lovelace,
    ada,
    token,
    datum_hash,
    LOVELACE_PER_ADA,
    STARTING_FEE,
    MAX_FEE_ITERATIONS,
    COLLATERAL_MIN_FEE,
    MockChainError,
    ValidationError,
    ValidationPhase,
    ConstructionError,
    Unbalanceable,
    BalanceStage,
    NoSuitableCollateral,
    FailWith,
)

# Protocol parameters
from .params import (
    ProtocolParams,
    SlotConfig,
    default_params,
    min_ada_for,
    collateral_threshold,
)

# Wallets
from .wallet import Wallet, wallet, known_wallets, wallet_by_pkh, sign_tx, has_valid_signature

# Skeletons
from .skeleton import (
    TxSkeleton,
    TxOptions,
    BalanceOutputPolicy,
    CollateralAuto,
    CollateralUtxos,
    RawModTx,
    RawModStage,
    PaysPK,
    PaysScript,
    SpendsPK,
    SpendsScript,
    Mints,
    IncludesDatum,
    pays,
)

# Chain state
from .state import (
    ChainState,
    ChainEnv,
    DatumStore,
    UtxoState,
    UtxoDatum,
    InitialDistribution,
    default_env,
    default_distribution,
    genesis_tx,
    state_from_distribution,
)

# Pipeline stages
from .generator import ConstraintResolver, resolve_constraints, generate_unbalanced
from .balance import (
    BalanceResult,
    calc_balance,
    apply_balance,
    select_collateral,
    resolve_fee,
    balance_tx_from,
)
from .validation import (
    Accepted,
    RejectedStructural,
    RejectedScript,
    ValidationOutcome,
    validate_transaction,
    commit_outcome,
    estimate_fee,
)

# Engine
from .engine import MockChain, MockChainResult, run_mockchain, run_mockchain_from
