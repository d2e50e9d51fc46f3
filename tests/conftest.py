"""
conftest.py - Shared pytest fixtures for mock chain tests

Provides common fixtures used across unit, conformance and functional tests:
- Chains (default genesis, small custom genesis)
- Scripts (a guessing-game validator, an always-true minting policy)
- Protocol parameters
"""

import pytest
from dataclasses import replace

from mockchain import (
    MockChain, MintingPolicy, ProtocolParams, Validator,
    ada, default_params, wallet, state_from_distribution,
)


# =============================================================================
# SCRIPTS
# =============================================================================

def _guess(datum, redeemer, ctx):
    """Unlocks when the redeemer equals the locked secret."""
    return redeemer == datum


def _free_mint(redeemer, ctx):
    return True


def _no_mint(redeemer, ctx):
    raise RuntimeError("minting disabled")


@pytest.fixture
def guess_validator():
    return Validator("guess", _guess)


@pytest.fixture
def free_policy():
    return MintingPolicy("free", _free_mint)


@pytest.fixture
def closed_policy():
    return MintingPolicy("closed", _no_mint)


# =============================================================================
# PARAMETERS AND CHAINS
# =============================================================================

@pytest.fixture
def params() -> ProtocolParams:
    return default_params()


@pytest.fixture
def flat_fee_params() -> ProtocolParams:
    """Size-independent fee of 0.2 ada."""
    return replace(default_params(), min_fee_a=0, min_fee_b=200_000)


@pytest.fixture
def chain() -> MockChain:
    """Default genesis: wallets 1-10 with 100 ada each, wallet 1 signing."""
    return MockChain(verbose=False)


@pytest.fixture
def two_wallet_chain() -> MockChain:
    return MockChain(distribution={wallet(1): [ada(100)], wallet(2): [ada(100)]}, verbose=False)


@pytest.fixture
def small_state():
    """Wallet 1 with three plain ada UTxOs, wallet 2 with one."""
    return state_from_distribution({
        wallet(1): [ada(10), ada(5), ada(1)],
        wallet(2): [ada(20)],
    })
