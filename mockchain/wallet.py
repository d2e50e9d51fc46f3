"""
wallet.py - Deterministic mock wallets and transaction signing.

Wallets are identified by a number. Their key hash is derived from that number,
so wallet(1) is the same identity in every run.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
import hashlib
from typing import Iterable, List, Optional

from .core import Address, PubKeyHash, Tx, HASH_LENGTH, signature_for


# Number of wallets funded by the default initial distribution.
KNOWN_WALLET_COUNT = 10


@dataclass(frozen=True, slots=True, order=True)
class Wallet:
    number: int

    def __post_init__(self):
        if self.number < 1:
            raise ValueError(f"Wallet number must be positive, got {self.number}")

    @property
    def pkh(self) -> PubKeyHash:
        return hashlib.sha256(f"wallet-{self.number}".encode()).hexdigest()[:HASH_LENGTH]

    @property
    def address(self) -> Address:
        return Address.pubkey(self.pkh)

    def sign(self, tx: Tx) -> Tx:
        """Return tx with this wallet's signature added (no-op if already signed)."""
        if self.pkh in tx.signers:
            return tx
        return replace(tx, signatures=tx.signatures + ((self.pkh, signature_for(self.pkh, tx.id)),))

    def __repr__(self) -> str:
        return f"wallet({self.number})"


def wallet(number: int) -> Wallet:
    return Wallet(number)


def known_wallets() -> List[Wallet]:
    return [Wallet(n) for n in range(1, KNOWN_WALLET_COUNT + 1)]


def wallet_by_pkh(pkh: PubKeyHash) -> Optional[Wallet]:
    """Find a known wallet by key hash."""
    for w in known_wallets():
        if w.pkh == pkh:
            return w
    return None


def sign_tx(tx: Tx, wallets: Iterable[Wallet]) -> Tx:
    """Sign tx with every wallet, in order."""
    for w in wallets:
        tx = w.sign(tx)
    return tx


def has_valid_signature(tx: Tx, pkh: PubKeyHash) -> bool:
    """True if tx carries a signature by pkh that matches its id."""
    return any(signer == pkh and sig == signature_for(pkh, tx.id) for signer, sig in tx.signatures)
