"""
test_value.py - Unit tests for values, addresses, outputs and transactions

Tests:
- Value: construction, arithmetic, positive/negative parts, immutability
- Address / Output: validation, ownership, min-ada relevant properties
- Tx: content-addressed id, signatures outside the body
- Hashing: datum hashes are content hashes
"""

import pytest
from dataclasses import replace

from mockchain import (
    ADA, Address, AssetClass, Output, OutputRef, Tx, TxInput, Value,
    ValidityRange, ada, datum_hash, lovelace, token, wallet,
)


POLICY = "ab" * 28


class TestValueConstruction:

    def test_zero_entries_dropped(self):
        assert Value({ADA: 0, AssetClass(POLICY, "x"): 0}) == Value()
        assert Value().is_zero()

    def test_ada_helper_uses_lovelace(self):
        assert ada(1).lovelace == 1_000_000
        assert ada(9.7) == lovelace(9_700_000)

    def test_rejects_non_int_amounts(self):
        with pytest.raises(ValueError, match="must be int"):
            Value({ADA: 1.5})
        with pytest.raises(ValueError, match="must be int"):
            Value({ADA: True})

    def test_rejects_non_asset_keys(self):
        with pytest.raises(ValueError, match="AssetClass"):
            Value({"ada": 1})

    def test_immutable(self):
        v = ada(1)
        with pytest.raises(AttributeError):
            v._amounts = {}

    def test_equal_values_hash_equal(self):
        a = token(POLICY, "x", 2) + ada(1)
        b = ada(1) + token(POLICY, "x", 2)
        assert a == b
        assert hash(a) == hash(b)


class TestValueArithmetic:

    def test_add_and_subtract(self):
        v = ada(3) + token(POLICY, "x", 5)
        w = v - ada(1) - token(POLICY, "x", 5)
        assert w == ada(2)

    def test_negative_amounts_allowed_in_arithmetic(self):
        d = ada(1) - ada(3)
        assert d.lovelace == -2_000_000
        assert not d.is_non_negative()

    def test_positive_and_negative_parts(self):
        d = ada(2) - token(POLICY, "x", 3)
        assert d.positive_part() == ada(2)
        assert d.negative_part() == token(POLICY, "x", 3)

    def test_sum_of_nothing_is_zero(self):
        assert Value.sum([]) == Value()

    def test_covers(self):
        big = ada(5) + token(POLICY, "x", 2)
        assert big.covers(ada(5))
        assert big.covers(token(POLICY, "x", 1) + ada(1))
        assert not big.covers(token(POLICY, "y", 1))

    def test_non_ada_count(self):
        v = ada(1) + token(POLICY, "x", 1) + token(POLICY, "y", 7)
        assert v.non_ada_count() == 2
        assert not v.is_ada_only()
        assert ada(4).is_ada_only()


class TestAddressAndOutput:

    def test_address_needs_exactly_one_credential(self):
        with pytest.raises(ValueError, match="exactly one"):
            Address()
        with pytest.raises(ValueError, match="exactly one"):
            Address(pubkey_hash="a", script_hash="b")

    def test_addresses_sort(self):
        addrs = [Address.script("ff"), Address.pubkey("aa"), Address.pubkey("00")]
        assert sorted(addrs)[0] == Address.pubkey("00")

    def test_output_cannot_carry_two_datums(self):
        with pytest.raises(ValueError, match="both"):
            Output(Address.pubkey("aa"), ada(1), datum_hash="h", inline_datum=1)

    def test_plain_ada_of(self):
        pkh = wallet(1).pkh
        assert Output(Address.pubkey(pkh), ada(2)).is_plain_ada_of(pkh)
        assert not Output(Address.pubkey(pkh), ada(2), datum_hash="h").is_plain_ada_of(pkh)
        assert not Output(Address.pubkey(pkh), ada(2) + token(POLICY, "x", 1)).is_plain_ada_of(pkh)
        assert not Output(Address.pubkey(pkh), ada(2)).is_plain_ada_of(wallet(2).pkh)


class TestTransactionIdentity:

    def _tx(self, **kwargs):
        return Tx(
            inputs=(TxInput(OutputRef("00" * 32, 0)),),
            outputs=(Output(wallet(2).address, ada(5)),),
            fee=200_000,
            **kwargs,
        )

    def test_id_is_deterministic(self):
        assert self._tx().id == self._tx().id

    def test_id_depends_on_body(self):
        assert self._tx().id != self._tx().with_fee(200_001).id
        assert self._tx().id != self._tx(validity=ValidityRange(0, 10)).id

    def test_signatures_and_label_not_in_body(self):
        tx = self._tx()
        signed = wallet(1).sign(replace(tx, label="payment"))
        assert signed.id == tx.id
        assert signed.signers == frozenset({wallet(1).pkh})

    def test_signing_twice_is_noop(self):
        tx = wallet(1).sign(self._tx())
        assert wallet(1).sign(tx) is tx

    def test_output_refs_follow_output_order(self):
        tx = self._tx()
        refs = tx.output_refs()
        assert refs[0][0] == OutputRef(tx.id, 0)


class TestHashing:

    def test_datum_hash_content_based(self):
        assert datum_hash({"a": 1, "b": 2}) == datum_hash({"b": 2, "a": 1})
        assert datum_hash(1) != datum_hash("1")

    def test_validity_range_rejects_inverted(self):
        with pytest.raises(ValueError, match="precedes"):
            ValidityRange(10, 5)

    def test_validity_range_is_half_open(self):
        r = ValidityRange(2, 5)
        assert not r.contains(1)
        assert r.contains(2)
        assert r.contains(4)
        assert not r.contains(5)
