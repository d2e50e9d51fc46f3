"""
Functional tests: MockChain options, queries, branching and runners.
"""

import pytest
from dataclasses import replace

from mockchain import (
    BalanceOutputPolicy, ChainEnv, CollateralUtxos, FailWith, MockChain, Output,
    OutputRef, PaysPK, PaysScript, SpendsPK, Tx, TxInput, TxOptions, TxSkeleton,
    Unbalanceable, ValidationError, ValidationPhase, ada, lovelace, token, wallet, datum_hash, sign_tx,
    pays, run_mockchain, run_mockchain_from, state_from_distribution,
)
from mockchain.validation import DUPLICATE_INPUT, MISSING_SIGNATURE, FEE_TOO_SMALL


# =============================================================================
# SUBMISSION OPTIONS
# =============================================================================

class TestBalanceOutputPolicy:

    @pytest.fixture
    def rich_chain(self):
        return MockChain(distribution={wallet(1): [ada(50), ada(50)]}, verbose=False)

    def test_change_joins_own_payment(self, rich_chain):
        tx = rich_chain.validate_tx_skel(pays(PaysPK(wallet(1).pkh, ada(10))))
        assert len(tx.outputs) == 1
        assert tx.outputs[0].value == ada(50) - lovelace(tx.fee)

    def test_dont_adjust_adds_change_output(self, rich_chain):
        options = TxOptions(balance_output_policy=BalanceOutputPolicy.DONT_ADJUST_EXISTING_OUTPUT)
        tx = rich_chain.validate_tx_skel(pays(PaysPK(wallet(1).pkh, ada(10)), options=options))
        assert len(tx.outputs) == 2
        assert tx.outputs[0].value == ada(10)
        assert tx.outputs[1].value == ada(40) - lovelace(tx.fee)


class TestBalancingSwitch:

    def test_unbalanced_draft_submitted_as_is(self, chain):
        ref, out = chain.pk_utxos()[0]
        skel = TxSkeleton(
            spends=(SpendsPK(ref),),
            payments=(PaysPK(wallet(2).pkh, out.value),),
            options=TxOptions(balance=False),
        )
        with chain.local_params(lambda p: replace(p, min_fee_a=0, min_fee_b=0)):
            tx = chain.validate_tx_skel(skel)
        assert tx.fee == 0
        assert tx.input_refs == (ref,)
        assert chain.utxo_state().value_at(wallet(2).address) == ada(200)

    def test_unbalanced_draft_pays_no_fee(self, chain):
        ref, out = chain.pk_utxos()[0]
        skel = TxSkeleton(
            spends=(SpendsPK(ref),),
            payments=(PaysPK(wallet(2).pkh, out.value),),
            options=TxOptions(balance=False),
        )
        with pytest.raises(ValidationError) as exc:
            chain.validate_tx_skel(skel)
        assert exc.value.kind == FEE_TOO_SMALL


class TestExplicitCollateral:

    def test_given_refs_are_attached(self, chain):
        ref = chain.pk_utxos()[0][0]
        options = TxOptions(collateral=CollateralUtxos((ref,)))
        tx = chain.validate_tx_skel(pays(PaysPK(wallet(2).pkh, ada(1)), options=options))
        assert tx.collateral_inputs == (ref,)

    def test_unknown_collateral_rejected(self, chain):
        missing = OutputRef("00" * 32, 0)
        options = TxOptions(collateral=CollateralUtxos((missing,)))
        with pytest.raises(ValidationError):
            chain.validate_tx_skel(pays(PaysPK(wallet(2).pkh, ada(1)), options=options))


class TestSigners:

    def test_fee_payer_is_first_signer(self, chain):
        with chain.signing_with(wallet(4), wallet(1)):
            assert chain.own_pkh == wallet(4).pkh
            tx = chain.validate_tx_skel(pays(PaysPK(wallet(2).pkh, ada(5))))
        assert chain.own_pkh == wallet(1).pkh
        assert all(chain.state.lookup(OutputRef(tx.id, i)) is not None for i in range(len(tx.outputs)))
        assert chain.utxo_state().value_at(wallet(4).address) == ada(95) - lovelace(tx.fee)
        assert chain.utxo_state().value_at(wallet(1).address) == ada(100)

    def test_required_signatory_must_sign(self, chain):
        skel = pays(PaysPK(wallet(2).pkh, ada(5)), signatories=(wallet(3).pkh,))
        with pytest.raises(ValidationError) as exc:
            chain.validate_tx_skel(skel)
        assert exc.value.kind == MISSING_SIGNATURE

        with chain.signing_with(wallet(1), wallet(3)):
            tx = chain.validate_tx_skel(skel)
        assert tx.signers == {wallet(1).pkh, wallet(3).pkh}


class TestPrebuiltTransactions:

    def test_validate_signed_tx(self, chain):
        ref, out = chain.pk_utxos(wallet(2).pkh)[0]
        tx = Tx(inputs=(TxInput(ref),), outputs=(Output(wallet(3).address, ada(99)),), fee=1_000_000)
        accepted = chain.validate_tx(sign_tx(tx, [wallet(2)]))
        assert accepted.id == tx.id
        assert chain.utxo_state().value_at(wallet(3).address) == ada(199)
        assert chain.state.fees_collected == 1_000_000

    def test_unsigned_tx_rejected(self, chain):
        ref, _ = chain.pk_utxos(wallet(2).pkh)[0]
        tx = Tx(inputs=(TxInput(ref),), outputs=(Output(wallet(3).address, ada(99)),), fee=1_000_000)
        with pytest.raises(ValidationError) as exc:
            chain.validate_tx(tx)
        assert exc.value.kind == MISSING_SIGNATURE
        assert chain.tx_out_by_ref(ref) == Output(wallet(2).address, ada(100))

    def test_repeated_collateral_with_failing_script(self, closed_policy):
        chain = MockChain(distribution={wallet(1): [ada(100), ada(1)]}, verbose=False)
        (big, _), (small, _) = sorted(chain.pk_utxos(), key=lambda c: -c[1].value.lovelace)
        coin = token(closed_policy.policy_id, "coin", 1)
        tx = Tx(
            inputs=(TxInput(big),),
            outputs=(Output(wallet(1).address, ada(99) + coin),),
            collateral_inputs=(small, small),
            mint=coin,
            mint_scripts=((closed_policy, 0),),
            fee=1_000_000,
        )
        before = chain.state.clone()
        with pytest.raises(ValidationError) as exc:
            chain.validate_tx(sign_tx(tx, [wallet(1)]))
        assert exc.value.phase == ValidationPhase.PHASE1
        assert exc.value.kind == DUPLICATE_INPUT
        assert chain.state == before
        assert chain.state.fees_collected == 0


# =============================================================================
# QUERIES
# =============================================================================

class TestQueries:

    def test_utxos_such_that_filters(self, chain, guess_validator):
        chain.validate_tx_skel(TxSkeleton(payments=(
            PaysScript(guess_validator, 1, ada(2)),
            PaysScript(guess_validator, 2, ada(8)),
        )))
        big = chain.utxos_such_that(guess_validator.address, lambda d, v: v.lovelace > 5_000_000)
        assert [d for _, _, d in big] == [2]
        assert len(chain.utxos_such_that(guess_validator.address, datum_type=int)) == 2

    def test_wrong_datum_type(self, chain, guess_validator):
        chain.validate_tx_skel(TxSkeleton(payments=(PaysScript(guess_validator, 1, ada(2)),)))
        with pytest.raises(FailWith, match="Can't convert datum"):
            chain.utxos_such_that(guess_validator.address, datum_type=str)

    def test_unmanaged_datum(self, chain, guess_validator):
        orphan = Output(guess_validator.address, ada(2), datum_hash=datum_hash("lost"))
        chain.state.index[OutputRef("ff" * 32, 0)] = orphan
        with pytest.raises(FailWith, match="Unmanaged datum"):
            chain.datum_from_output(orphan)
        with pytest.raises(FailWith):
            chain.utxos_such_that(guess_validator.address)

    def test_unknown_datum_on_pubkey_output_reads_as_none(self, chain):
        ref = OutputRef("fe" * 32, 0)
        stray = Output(wallet(2).address, ada(2), datum_hash=datum_hash("unwitnessed"))
        chain.state.index[ref] = stray
        assert chain.datum_from_output(stray) is None
        found = chain.utxos_such_that(wallet(2).address)
        assert (ref, stray, None) in found
        assert len(found) == 2

    def test_pk_utxos_default_to_fee_payer(self, chain):
        assert chain.pk_utxos() == chain.pk_utxos(wallet(1).pkh)
        assert len(chain.pk_utxos(wallet(10).pkh)) == 1
        assert chain.tx_out_by_ref(OutputRef("00" * 32, 0)) is None


# =============================================================================
# BRANCHING AND RUNNERS
# =============================================================================

class TestBranching:

    def test_clone_is_independent(self, chain):
        other = chain.clone()
        other.validate_tx_skel(pays(PaysPK(wallet(2).pkh, ada(5))))
        assert chain.transaction_log == []
        assert chain.current_slot == 0
        assert chain.utxo_state().value_at(wallet(2).address) == ada(100)

    def test_either_prefers_first(self, chain):
        first = chain.either(
            lambda c: c.validate_tx_skel(pays(PaysPK(wallet(2).pkh, ada(1)))).id,
            lambda c: c.validate_tx_skel(pays(PaysPK(wallet(3).pkh, ada(1)))).id,
        )
        assert chain.transaction_log[-1].id == first
        assert chain.utxo_state().value_at(wallet(2).address) == ada(101)
        assert chain.utxo_state().value_at(wallet(3).address) == ada(100)

    def test_either_second_error_propagates(self, chain):
        def fail_first(c):
            raise FailWith("first")

        def fail_second(c):
            raise FailWith("second")

        with pytest.raises(FailWith, match="second"):
            chain.either(fail_first, fail_second)


class TestRunners:

    def test_run_mockchain_success(self):
        result = run_mockchain(lambda c: c.validate_tx_skel(pays(PaysPK(wallet(2).pkh, ada(3)))).fee)
        assert result.ok
        assert result.value > 0
        assert result.state.current_slot == 1

    def test_run_mockchain_failure_reports_error(self):
        result = run_mockchain(
            lambda c: c.validate_tx_skel(pays(PaysPK(wallet(2).pkh, ada(500)))),
            distribution={wallet(1): [ada(100)], wallet(2): [ada(1)]},
        )
        assert not result.ok
        assert isinstance(result.error, Unbalanceable)
        assert result.value is None
        assert result.state.total_value() == ada(101)

    def test_run_from_leaves_input_state(self):
        state = state_from_distribution({wallet(1): [ada(10)], wallet(2): [ada(10)]})
        before = state.clone()
        result = run_mockchain_from(state, lambda c: c.validate_tx_skel(pays(PaysPK(wallet(2).pkh, ada(2)))))
        assert result.ok
        assert state == before
        assert result.state != before

    def test_custom_env(self):
        env = ChainEnv(signers=(wallet(5),))
        result = run_mockchain(lambda c: c.validate_tx_skel(pays(PaysPK(wallet(2).pkh, ada(3)))), env=env)
        assert result.ok
        assert result.state.to_utxo_state().value_at(wallet(5).address) == ada(97) - lovelace(result.value.fee)


class TestVerboseOutput:

    def test_accepted_tx_printed(self, capsys):
        chain = MockChain(verbose=True)
        chain.validate_tx_skel(pays(PaysPK(wallet(2).pkh, ada(1)), label="hello"))
        printed = capsys.readouterr().out
        assert "APPLIED" in printed
        assert "hello" in printed

    def test_rejection_printed(self, capsys):
        chain = MockChain(verbose=True)
        with pytest.raises(Unbalanceable):
            chain.validate_tx_skel(pays(PaysPK(wallet(2).pkh, ada(1_000)), label="greedy"))
        assert "✗ REJECTED: greedy" in capsys.readouterr().out
