import threading

import pytest
from pydantic import ValidationError as PydanticValidationError

from core.exceptions import (
    ConflictError,
    DuplicatePrediction,
    InvalidPhaseTransition,
    RoomNotFound,
    RoundAlreadySettled,
    RoundNotFound,
    SettlementNotFound,
    UnsettledRoundExists,
    ValidationError,
)
from core.room_manager import RoomManager
from core.round_manager import RoundManager
from models import RoundPhase
from schemas import PredictionBatchRequest, PredictionGuess, SettlementReferences, UsdcPayoutEntry
from tests.factories import (
    NONCE,
    WALLET_A,
    WALLET_B,
    make_pattern,
    make_prediction,
    open_round,
    play_round,
    scenario_predictions,
)


def _batch(wallet, *tiles, stake=1_000_000):
    return PredictionBatchRequest(
        user_wallet=wallet,
        stake_amount_usdc=stake,
        guesses=[
            PredictionGuess(track_id=track_id, step_index=step_index, will_be_active=True)
            for track_id, step_index in tiles
        ],
    )


def _locked_round(state):
    room, round_obj, pattern = open_round(state)
    RoundManager.lock_round(state, room.id, round_obj.id)
    return room, round_obj, pattern


class TestStartRound:
    def test_first_round_awaits_commit(self, state):
        room = RoomManager.create_room(state, title="Jam")

        round_obj = RoundManager.start_round(state, room.id)

        assert round_obj.phase == RoundPhase.AWAITING_COMMIT
        assert round_obj.index == 0
        assert round_obj.bpm == 120
        assert round_obj.winner_pot_carry_in_usdc == 0
        assert room.current_round_id == round_obj.id

    def test_rejects_while_round_unsettled(self, state):
        room, _, _ = open_round(state)

        with pytest.raises(UnsettledRoundExists):
            RoundManager.start_round(state, room.id)

    @pytest.mark.parametrize("bpm", [39, 241, "120", True])
    def test_rejects_invalid_bpm(self, state, bpm):
        room = RoomManager.create_room(state, title="Jam")

        with pytest.raises(ValidationError):
            RoundManager.start_round(state, room.id, bpm=bpm)
        assert room.round_ids == []

    def test_unknown_room(self, state):
        with pytest.raises(RoomNotFound):
            RoundManager.start_round(state, "room_missing")


class TestPhaseOrdering:
    def test_full_lifecycle(self, state):
        room, round_obj, settlement = play_round(state, scenario_predictions())

        assert round_obj.phase == RoundPhase.SETTLED
        assert round_obj.locked_at is not None
        assert round_obj.revealed_at is not None
        assert round_obj.settled_at is not None
        assert settlement.commit_verified is True
        assert RoundManager.get_results(state, room.id, round_obj.id) == settlement

    def test_commit_only_from_awaiting_commit(self, state):
        room, round_obj, _ = open_round(state)

        with pytest.raises(InvalidPhaseTransition):
            RoundManager.commit_round(state, room.id, round_obj.id, "f" * 64)

    def test_commit_rejects_blank_hash(self, state):
        room = RoomManager.create_room(state, title="Jam")
        round_obj = RoundManager.start_round(state, room.id)

        with pytest.raises(ValidationError):
            RoundManager.commit_round(state, room.id, round_obj.id, "")
        assert round_obj.phase == RoundPhase.AWAITING_COMMIT

    def test_commit_on_unknown_round_is_not_found_before_validation(self, state):
        room = RoomManager.create_room(state, title="Jam")

        with pytest.raises(RoundNotFound):
            RoundManager.commit_round(state, room.id, "round_missing", "", pattern_version=2)

    def test_prediction_before_commit_rejected(self, state):
        room = RoomManager.create_room(state, title="Jam")
        round_obj = RoundManager.start_round(state, room.id)

        with pytest.raises(InvalidPhaseTransition):
            RoundManager.add_prediction(state, room.id, round_obj.id, make_prediction(WALLET_A, "kick", 0))

    def test_locked_round_only_accepts_reveal(self, state):
        room, round_obj, pattern = _locked_round(state)

        with pytest.raises(InvalidPhaseTransition):
            RoundManager.add_prediction(state, room.id, round_obj.id, make_prediction(WALLET_A, "kick", 0))
        with pytest.raises(InvalidPhaseTransition):
            RoundManager.lock_round(state, room.id, round_obj.id)
        with pytest.raises(InvalidPhaseTransition):
            RoundManager.settle_round(state, room.id, round_obj.id)
        with pytest.raises(InvalidPhaseTransition):
            RoundManager.commit_round(state, room.id, round_obj.id, "f" * 64)

        _, verified = RoundManager.reveal_round(state, room.id, round_obj.id, pattern, NONCE)
        assert verified is True
        assert round_obj.phase == RoundPhase.REVEALED

    def test_reveal_requires_locked(self, state):
        room, round_obj, pattern = open_round(state)

        with pytest.raises(InvalidPhaseTransition):
            RoundManager.reveal_round(state, room.id, round_obj.id, pattern, NONCE)

    def test_settle_twice_conflicts(self, state):
        room, round_obj, _ = play_round(state, scenario_predictions())

        with pytest.raises(RoundAlreadySettled):
            RoundManager.settle_round(state, room.id, round_obj.id)


class TestPredictions:
    def test_accepts_and_tallies(self, state):
        room, round_obj, _ = open_round(state)

        prediction, tally = RoundManager.add_prediction(
            state, room.id, round_obj.id, make_prediction(WALLET_A, "kick", 0, stake=2_000_000),
        )

        assert prediction.id.startswith("pred_")
        assert tally.prediction_count == 1
        assert tally.total_staked_usdc == 2_000_000

    def test_stored_guess_is_isolated_from_caller_payload(self, state):
        room, round_obj, _ = open_round(state)
        payload = make_prediction(WALLET_A, "kick", 0)
        RoundManager.add_prediction(state, room.id, round_obj.id, payload)

        with pytest.raises(PydanticValidationError):
            payload.guess.step_index = 5
        payload.guess = PredictionGuess(track_id="snare", step_index=3, will_be_active=False)

        stored = round_obj.predictions[0].guess
        assert (stored.track_id.value, stored.step_index, stored.will_be_active) == ("kick", 0, True)
        with pytest.raises(DuplicatePrediction):
            RoundManager.add_prediction(
                state, room.id, round_obj.id, make_prediction(WALLET_A, "kick", 0),
            )

    def test_duplicate_tile_for_same_wallet(self, state):
        room, round_obj, _ = open_round(state)
        RoundManager.add_prediction(state, room.id, round_obj.id, make_prediction(WALLET_A, "kick", 0))

        with pytest.raises(DuplicatePrediction):
            RoundManager.add_prediction(
                state, room.id, round_obj.id,
                make_prediction(WALLET_A, "kick", 0, will_be_active=False),
            )
        assert len(round_obj.predictions) == 1

    def test_same_tile_other_wallet_or_other_step_allowed(self, state):
        room, round_obj, _ = open_round(state)
        RoundManager.add_prediction(state, room.id, round_obj.id, make_prediction(WALLET_A, "kick", 0))
        RoundManager.add_prediction(state, room.id, round_obj.id, make_prediction(WALLET_B, "kick", 0))
        RoundManager.add_prediction(state, room.id, round_obj.id, make_prediction(WALLET_A, "kick", 1))

        assert len(round_obj.predictions) == 3

    @pytest.mark.parametrize("stake", [0, -5])
    def test_rejects_non_positive_stake(self, state, stake):
        room, round_obj, _ = open_round(state)

        with pytest.raises(ValidationError):
            RoundManager.add_prediction(
                state, room.id, round_obj.id, make_prediction(WALLET_A, "kick", 0, stake=stake),
            )
        assert round_obj.predictions == []

    def test_batch_is_accepted_whole(self, state):
        room, round_obj, _ = open_round(state)

        predictions, tally = RoundManager.add_predictions_batch(
            state, room.id, round_obj.id, _batch(WALLET_A, ("kick", 0), ("snare", 4), ("clap", 8)),
        )

        assert len(predictions) == 3
        assert tally.prediction_count == 3
        assert tally.total_staked_usdc == 3_000_000

    def test_batch_with_internal_duplicate_is_rejected(self, state):
        room, round_obj, _ = open_round(state)

        with pytest.raises(DuplicatePrediction):
            RoundManager.add_predictions_batch(
                state, room.id, round_obj.id, _batch(WALLET_A, ("kick", 0), ("snare", 1), ("kick", 0)),
            )
        assert round_obj.predictions == []

    def test_batch_overlapping_stored_prediction_is_rejected(self, state):
        room, round_obj, _ = open_round(state)
        RoundManager.add_prediction(state, room.id, round_obj.id, make_prediction(WALLET_A, "snare", 1))

        with pytest.raises(DuplicatePrediction):
            RoundManager.add_predictions_batch(
                state, room.id, round_obj.id, _batch(WALLET_A, ("kick", 0), ("snare", 1)),
            )
        assert len(round_obj.predictions) == 1

    def test_concurrent_duplicates_accept_exactly_one(self, state):
        room, round_obj, _ = open_round(state)
        barrier = threading.Barrier(8)
        outcomes = []

        def submit():
            barrier.wait()
            try:
                RoundManager.add_prediction(
                    state, room.id, round_obj.id, make_prediction(WALLET_A, "kick", 0),
                )
                outcomes.append("accepted")
            except DuplicatePrediction:
                outcomes.append("duplicate")

        threads = [threading.Thread(target=submit) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("accepted") == 1
        assert outcomes.count("duplicate") == 7
        assert len(round_obj.predictions) == 1


class TestReveal:
    def test_mismatched_reveal_is_recorded(self, state):
        room, round_obj, _ = _locked_round(state)
        other = make_pattern(("snare", 0))

        _, verified = RoundManager.reveal_round(state, room.id, round_obj.id, other, NONCE)

        assert verified is False
        assert round_obj.phase == RoundPhase.REVEALED
        assert round_obj.reveal.commit_verified is False

    def test_malformed_pattern_leaves_round_locked(self, state):
        room, round_obj, pattern = _locked_round(state)
        raw = pattern.model_dump(mode="json")
        raw["version"] = 2

        with pytest.raises(ValidationError):
            RoundManager.reveal_round(state, room.id, round_obj.id, raw, NONCE)
        assert round_obj.phase == RoundPhase.LOCKED
        assert round_obj.reveal is None

    def test_missing_commitment_conflicts(self, state):
        room, round_obj, pattern = _locked_round(state)
        round_obj.commit_hash = None

        with pytest.raises(ConflictError):
            RoundManager.reveal_round(state, room.id, round_obj.id, pattern, NONCE)


class TestRollover:
    def test_verified_round_carries_liquidity_only(self, state):
        room, _, settlement = play_round(state, scenario_predictions())

        assert room.pending_winner_pot_carry_usdc == 0
        assert room.pending_liquidity_carry_usdc == settlement.economics.liquidity_rollover_usdc == 600_000

        next_round = RoundManager.start_round(state, room.id)

        assert next_round.index == 1
        assert next_round.liquidity_carry_in_usdc == 600_000
        assert next_round.winner_pot_carry_in_usdc == 0
        assert room.pending_liquidity_carry_usdc == 0

    def test_unverified_round_rolls_pot_into_next_round(self, state):
        room, _, first = play_round(
            state, scenario_predictions(), reveal_pattern=make_pattern(("snare", 0)),
        )
        assert first.commit_verified is False
        assert first.economics.winner_pot_rollover_usdc == 1_200_000

        _, second_round, second = play_round(
            state, [make_prediction(WALLET_A, "kick", 0)], room=room,
        )

        assert second_round.winner_pot_carry_in_usdc == 1_200_000
        assert second.economics.winner_pot_usdc == 1_500_000
        assert second.usdc_payouts[0].amount_usdc == 1_500_000
        assert second.economics.liquidity_carry_in_usdc == 600_000


class TestSettlementReferences:
    def test_attach_before_settlement(self, state):
        room, round_obj, _ = open_round(state)

        with pytest.raises(SettlementNotFound):
            RoundManager.attach_settlement_references(
                state, room.id, round_obj.id, {"session_reference": "abc"},
            )

    def test_patches_merge_without_touching_economics(self, state):
        room, round_obj, settlement = play_round(state, scenario_predictions())

        RoundManager.attach_settlement_references(
            state, room.id, round_obj.id, SettlementReferences(session_reference="session-1"),
        )
        updated = RoundManager.attach_settlement_references(
            state, room.id, round_obj.id, {"onchain_settlement_reference": "tx-1"},
        )

        assert updated.integrations.session_reference == "session-1"
        assert updated.integrations.onchain_settlement_reference == "tx-1"
        assert updated.economics == settlement.economics
        assert updated.usdc_payouts == settlement.usdc_payouts
        assert round_obj.phase == RoundPhase.SETTLED

    def test_unknown_reference_field(self, state):
        room, round_obj, _ = play_round(state, scenario_predictions())

        with pytest.raises(ValidationError):
            RoundManager.attach_settlement_references(
                state, room.id, round_obj.id, {"total_staked_usdc": 0},
            )


class TestLookups:
    def test_round_from_another_room(self, state):
        _, round_obj, _ = open_round(state)
        other_room = RoomManager.create_room(state, title="Other")

        with pytest.raises(RoundNotFound):
            RoundManager.get_round(state, other_room.id, round_obj.id)

    def test_stored_results_cannot_be_rewritten(self, state):
        room, round_obj, _ = play_round(state, scenario_predictions())
        stored = RoundManager.get_results(state, room.id, round_obj.id)

        with pytest.raises(PydanticValidationError):
            stored.economics.winner_pot_usdc = 0
        with pytest.raises(PydanticValidationError):
            stored.usdc_payouts[0].amount_usdc = 0
        with pytest.raises(PydanticValidationError):
            stored.leaderboard[0].usdc_won = 0
        with pytest.raises(AttributeError):
            stored.usdc_payouts.append(
                UsdcPayoutEntry(user_wallet=WALLET_A, amount_usdc=1, reason="prediction_win")
            )

        fresh = RoundManager.get_results(state, room.id, round_obj.id)
        assert fresh.economics.winner_pot_usdc == 1_200_000
        assert len(fresh.usdc_payouts) == 2
        assert [p.amount_usdc for p in fresh.usdc_payouts] == [400_000, 800_000]

    def test_results_before_settlement(self, state):
        room, round_obj, _ = open_round(state)

        with pytest.raises(SettlementNotFound):
            RoundManager.get_results(state, room.id, round_obj.id)

    def test_current_round_summary(self, state):
        room = RoomManager.create_room(state, title="Jam")
        assert RoundManager.get_current_round_summary(state, room.id) is None

        _, round_obj, _ = open_round(state, room=room)
        RoundManager.add_prediction(state, room.id, round_obj.id, make_prediction(WALLET_A, "kick", 0))
        summary = RoundManager.get_current_round_summary(state, room.id)

        assert summary.id == round_obj.id
        assert summary.phase == RoundPhase.PREDICTION_OPEN
        assert summary.prediction_count == 1
        assert summary.total_staked_usdc == 1_000_000
        assert summary.winner_pot_usdc == 300_000
        assert summary.artist_pending_usdc == 500_000

    def test_every_mutation_bumps_state_version(self, state):
        room = RoomManager.create_room(state, title="Jam")
        versions = [room.state_version]

        _, round_obj, pattern = open_round(state, room=room)
        versions.append(room.state_version)
        RoundManager.add_prediction(state, room.id, round_obj.id, make_prediction(WALLET_A, "kick", 0))
        versions.append(room.state_version)
        RoundManager.lock_round(state, room.id, round_obj.id)
        versions.append(room.state_version)
        RoundManager.reveal_round(state, room.id, round_obj.id, pattern, NONCE)
        versions.append(room.state_version)
        RoundManager.settle_round(state, room.id, round_obj.id)
        versions.append(room.state_version)

        assert versions == sorted(set(versions))
