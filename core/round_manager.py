"""
Round Manager：管理 Round 的完整生命週期

回合階段：
    awaiting_commit -> prediction_open -> locked -> revealed -> settled

職責：
1. 開新回合（帶入房間的 rollover）
2. 接收 artist 的 commitment
3. 接收預測（單筆 / 批次，批次是全有或全無）
4. 鎖定、reveal（驗證 commitment）、結算
5. 結算後補上外部參考（唯一允許在 settled 之後的修改）

原則：
- 所有修改都在房間鎖內（@room_exclusive）
- 先做完所有檢查，再修改狀態；失敗時狀態不變
- 錯誤一律同步拋出，不在這裡重試
"""
from collections.abc import Mapping
from typing import List, NamedTuple, Optional, Tuple, Union
import logging

from pydantic import ValidationError as PydanticValidationError

from core.exceptions import (
    CommitmentAlreadySubmitted,
    ConflictError,
    DuplicatePrediction,
    RoundAlreadySettled,
    RoundNotFound,
    SettlementNotFound,
    UnsettledRoundExists,
    ValidationError,
)
from core.game_state import (
    GameState,
    RevealRecord,
    StoredPrediction,
    StoredRound,
    utcnow,
)
from core.locks import room_exclusive, with_room_lock
from core.room_manager import RoomManager
from core.snapshots import get_round_stake_metrics, to_round_summary
from core.state_machine import RoundStateMachine
from models import RoundPhase
from schemas import (
    MAX_BPM,
    MIN_BPM,
    PATTERN_VERSION,
    PredictionBatchRequest,
    PredictionGuess,
    PredictionPayload,
    RoundSummary,
    SettlementReferences,
    SettlementResult,
)
from services import pattern_service, settlement_service
from services.naming_service import generate_id
from services.round_phase_service import is_round_finished
from services.state_service import bump_state_version

logger = logging.getLogger(__name__)


class PredictionTally(NamedTuple):
    """預測被接受後的回合彙總"""
    prediction_count: int
    total_staked_usdc: int


def _validate_stake(stake_amount_usdc) -> None:
    if (not isinstance(stake_amount_usdc, int) or isinstance(stake_amount_usdc, bool)
            or stake_amount_usdc <= 0):
        raise ValidationError(
            f"stake_amount_usdc must be a positive integer, got {stake_amount_usdc!r}"
        )


def _validate_wallet(user_wallet) -> None:
    if not isinstance(user_wallet, str) or not user_wallet:
        raise ValidationError("user_wallet is required")


def _tile_key(guess: PredictionGuess) -> Tuple[str, int]:
    return guess.track_id.value, guess.step_index


class RoundManager:
    """Round 生命週期管理器"""

    @staticmethod
    def get_round(state: GameState, room_id: str, round_id: str) -> StoredRound:
        """
        取得回合

        異常：
            RoomNotFound: Room 不存在
            RoundNotFound: Round 不存在，或不屬於這個 Room
        """
        RoomManager.get_room_by_id(state, room_id)
        round_obj = state.rounds.get(round_id)
        if round_obj is None or round_obj.room_id != room_id:
            raise RoundNotFound(round_id)
        return round_obj

    @staticmethod
    def get_current_round(state: GameState, room_id: str) -> Optional[StoredRound]:
        room = RoomManager.get_room_by_id(state, room_id)
        round_id = room.current_round_id
        return state.rounds.get(round_id) if round_id else None

    @staticmethod
    def get_round_summary(state: GameState, room_id: str, round_id: str) -> RoundSummary:
        with with_room_lock(state, room_id):
            round_obj = RoundManager.get_round(state, room_id, round_id)
            return to_round_summary(round_obj, state.policy)

    @staticmethod
    def get_current_round_summary(state: GameState, room_id: str) -> Optional[RoundSummary]:
        with with_room_lock(state, room_id):
            round_obj = RoundManager.get_current_round(state, room_id)
            return to_round_summary(round_obj, state.policy) if round_obj else None

    @staticmethod
    @room_exclusive
    def start_round(state: GameState, room_id: str, bpm: Optional[int] = None) -> StoredRound:
        """
        開新回合

        前置條件：
        1. Room 必須存在
        2. 沒有目前回合，或目前回合已經 settled

        流程：
        1. 驗證 bpm 與前置條件
        2. 建立 awaiting_commit 的回合
        3. 把房間的 pending rollover 帶入回合的 carry-in，然後歸零

        異常：
            RoomNotFound: Room 不存在
            ValidationError: bpm 不合法
            UnsettledRoundExists: 目前回合還沒結算
        """
        room = RoomManager.get_room_by_id(state, room_id)

        if bpm is None:
            bpm = state.default_bpm
        if not isinstance(bpm, int) or isinstance(bpm, bool) or not MIN_BPM <= bpm <= MAX_BPM:
            raise ValidationError(f"bpm must be an integer in [{MIN_BPM}, {MAX_BPM}], got {bpm!r}")

        current = RoundManager.get_current_round(state, room_id)
        if current is not None and not is_round_finished(current.phase):
            raise UnsettledRoundExists(
                "Current round must be settled before starting a new one "
                f"(round {current.id} is {current.phase.value})"
            )

        round_obj = StoredRound(
            id=generate_id("round"),
            room_id=room_id,
            index=len(room.round_ids),
            bpm=bpm,
            started_at=utcnow(),
            winner_pot_carry_in_usdc=room.pending_winner_pot_carry_usdc,
            liquidity_carry_in_usdc=room.pending_liquidity_carry_usdc,
        )
        room.pending_winner_pot_carry_usdc = 0
        room.pending_liquidity_carry_usdc = 0

        state.rounds[round_obj.id] = round_obj
        room.round_ids.append(round_obj.id)
        bump_state_version(room, reason="round_started")

        logger.info(
            f"Started round {round_obj.id} (index={round_obj.index}, bpm={bpm}) in room {room_id}, "
            f"carry-in pot={round_obj.winner_pot_carry_in_usdc} "
            f"liquidity={round_obj.liquidity_carry_in_usdc}"
        )
        return round_obj

    @staticmethod
    @room_exclusive
    def commit_round(
        state: GameState,
        room_id: str,
        round_id: str,
        commit_hash: str,
        pattern_version: int = PATTERN_VERSION,
    ) -> StoredRound:
        """
        接收 artist 的 commitment（awaiting_commit -> prediction_open）

        異常：
            RoomNotFound / RoundNotFound: 先查找，再檢查輸入
            ValidationError: commit_hash 空白或 pattern_version 未知
            InvalidPhaseTransition: 回合不在 awaiting_commit
            CommitmentAlreadySubmitted: 已經有 commitment
        """
        room = RoomManager.get_room_by_id(state, room_id)
        round_obj = RoundManager.get_round(state, room_id, round_id)
        if not isinstance(commit_hash, str) or not commit_hash:
            raise ValidationError("commit_hash is required")
        if pattern_version != PATTERN_VERSION:
            raise ValidationError(f"Unsupported pattern version: {pattern_version!r}")
        RoundStateMachine.require_phase(round_obj, RoundPhase.AWAITING_COMMIT, "Commit")
        if round_obj.commit_hash:
            raise CommitmentAlreadySubmitted("Commitment already submitted for this round")

        round_obj.commit_hash = commit_hash
        round_obj.pattern_version = pattern_version
        RoundStateMachine.transition(round_obj, RoundPhase.PREDICTION_OPEN, utcnow())
        bump_state_version(room, reason="round_committed")

        logger.info(f"Commitment received for round {round_id} (room={room_id})")
        return round_obj

    @staticmethod
    def _find_duplicate(round_obj: StoredRound, user_wallet: str, guess: PredictionGuess):
        for prediction in round_obj.predictions:
            if (prediction.user_wallet == user_wallet
                    and _tile_key(prediction.guess) == _tile_key(guess)):
                return prediction
        return None

    @staticmethod
    def _tally(state: GameState, round_obj: StoredRound) -> PredictionTally:
        total_staked, _, _ = get_round_stake_metrics(round_obj, state.policy)
        return PredictionTally(
            prediction_count=len(round_obj.predictions),
            total_staked_usdc=total_staked,
        )

    @staticmethod
    @room_exclusive
    def add_prediction(
        state: GameState,
        room_id: str,
        round_id: str,
        payload: PredictionPayload,
    ) -> Tuple[StoredPrediction, PredictionTally]:
        """
        接收單筆預測

        前置條件：
        1. 回合必須在 prediction_open
        2. stake 必須是正整數
        3. 同一錢包不能重複預測同一個 (track, step)

        返回：
            (StoredPrediction, PredictionTally)

        異常：
            InvalidPhaseTransition: 預測已關閉
            ValidationError: stake 不合法
            DuplicatePrediction: 重複預測
        """
        room = RoomManager.get_room_by_id(state, room_id)
        round_obj = RoundManager.get_round(state, room_id, round_id)
        RoundStateMachine.require_phase(round_obj, RoundPhase.PREDICTION_OPEN, "Prediction")
        _validate_wallet(payload.user_wallet)
        _validate_stake(payload.stake_amount_usdc)

        if RoundManager._find_duplicate(round_obj, payload.user_wallet, payload.guess):
            raise DuplicatePrediction(
                "Duplicate prediction for the same track/step by this user"
            )

        prediction = StoredPrediction(
            id=generate_id("pred"),
            round_id=round_id,
            user_wallet=payload.user_wallet,
            stake_amount_usdc=payload.stake_amount_usdc,
            guess=payload.guess,
            submitted_at=utcnow(),
            session_proof=payload.session_proof,
        )
        round_obj.predictions.append(prediction)
        bump_state_version(room, reason="prediction_accepted")

        tally = RoundManager._tally(state, round_obj)
        logger.info(
            f"Prediction {prediction.id} accepted in round {round_id}: "
            f"{payload.user_wallet} {prediction.guess.track_id.value}[{prediction.guess.step_index}]"
            f"={prediction.guess.will_be_active} stake={prediction.stake_amount_usdc}"
        )
        return prediction, tally

    @staticmethod
    @room_exclusive
    def add_predictions_batch(
        state: GameState,
        room_id: str,
        round_id: str,
        batch: PredictionBatchRequest,
    ) -> Tuple[List[StoredPrediction], PredictionTally]:
        """
        批次接收預測（全有或全無）

        任何一個 guess 和同批次的其他 guess 重複，或和這個錢包已經存在的
        預測重複，整批都拒絕，不會部分接受。

        異常：
            InvalidPhaseTransition: 預測已關閉
            ValidationError: stake 不合法或批次是空的
            DuplicatePrediction: 重複預測
        """
        room = RoomManager.get_room_by_id(state, room_id)
        round_obj = RoundManager.get_round(state, room_id, round_id)
        RoundStateMachine.require_phase(round_obj, RoundPhase.PREDICTION_OPEN, "Prediction")
        _validate_wallet(batch.user_wallet)
        _validate_stake(batch.stake_amount_usdc)
        if not batch.guesses:
            raise ValidationError("Batch must contain at least one guess")

        # 1. 先檢查全部，再寫入
        seen = set()
        for guess in batch.guesses:
            tile = _tile_key(guess)
            if tile in seen:
                raise DuplicatePrediction(f"Duplicate tile in batch payload: {tile[0]}:{tile[1]}")
            seen.add(tile)

            if RoundManager._find_duplicate(round_obj, batch.user_wallet, guess):
                raise DuplicatePrediction(f"Duplicate prediction for tile: {tile[0]}:{tile[1]}")

        # 2. 寫入
        now = utcnow()
        predictions = [
            StoredPrediction(
                id=generate_id("pred"),
                round_id=round_id,
                user_wallet=batch.user_wallet,
                stake_amount_usdc=batch.stake_amount_usdc,
                guess=guess,
                submitted_at=now,
                session_proof=batch.session_proof,
            )
            for guess in batch.guesses
        ]
        round_obj.predictions.extend(predictions)
        bump_state_version(room, reason="prediction_batch_accepted")

        tally = RoundManager._tally(state, round_obj)
        logger.info(
            f"Batch of {len(predictions)} predictions accepted in round {round_id} "
            f"for {batch.user_wallet}"
        )
        return predictions, tally

    @staticmethod
    @room_exclusive
    def lock_round(state: GameState, room_id: str, round_id: str) -> StoredRound:
        """
        鎖定回合（prediction_open -> locked），之後不再接受預測

        異常：
            InvalidPhaseTransition: 回合不在 prediction_open
        """
        room = RoomManager.get_room_by_id(state, room_id)
        round_obj = RoundManager.get_round(state, room_id, round_id)
        RoundStateMachine.require_phase(round_obj, RoundPhase.PREDICTION_OPEN, "Lock")

        RoundStateMachine.transition(round_obj, RoundPhase.LOCKED, utcnow())
        bump_state_version(room, reason="round_locked")
        return round_obj

    @staticmethod
    @room_exclusive
    def reveal_round(
        state: GameState,
        room_id: str,
        round_id: str,
        pattern: pattern_service.PatternInput,
        nonce: str,
        commit_input_version: str = pattern_service.COMMIT_INPUT_VERSION,
    ) -> Tuple[StoredRound, bool]:
        """
        Reveal pattern（locked -> revealed）

        流程：
        1. 正規化 pattern（格式錯誤直接拒絕，狀態不變）
        2. 重新計算 hash 並和 commitment 比對
        3. 不論驗證結果都保存 reveal，轉到 revealed

        返回：
            (StoredRound, commit_verified)

        異常：
            InvalidPhaseTransition: 回合不在 locked
            ConflictError: 回合沒有 commitment
            ValidationError: pattern 或 nonce 不合法
        """
        room = RoomManager.get_room_by_id(state, room_id)
        round_obj = RoundManager.get_round(state, room_id, round_id)
        RoundStateMachine.require_phase(round_obj, RoundPhase.LOCKED, "Reveal")
        if not round_obj.commit_hash:
            raise ConflictError("Commitment missing for this round")
        if not isinstance(nonce, str) or not nonce:
            raise ValidationError("nonce is required")

        normalized = pattern_service.normalize_pattern(pattern)
        commit_verified = pattern_service.verify_commit_reveal(
            round_obj.commit_hash,
            normalized,
            round_id,
            nonce,
            commit_input_version,
        )

        round_obj.reveal = RevealRecord(
            pattern=normalized,
            nonce=nonce,
            commit_verified=commit_verified,
        )
        RoundStateMachine.transition(round_obj, RoundPhase.REVEALED, utcnow())
        bump_state_version(room, reason="round_revealed")

        if commit_verified:
            logger.info(f"Reveal verified for round {round_id} (room={room_id})")
        else:
            logger.warning(
                f"Reveal does not match commitment for round {round_id} (room={room_id}); "
                f"artist share will be slashed"
            )
        return round_obj, commit_verified

    @staticmethod
    @room_exclusive
    def settle_round(state: GameState, room_id: str, round_id: str) -> SettlementResult:
        """
        結算回合（revealed -> settled）

        流程：
        1. 檢查回合尚未結算、且在 revealed
        2. 呼叫 settlement_service.settle_round 計算結果
        3. 保存結果並轉到 settled
        4. 把 winner pot / liquidity 的 rollover 加回房間，給下一回合用

        異常：
            RoundAlreadySettled: 已經結算過
            InvalidPhaseTransition: 回合不在 revealed
            ConflictError: 缺少 reveal 資料
        """
        room = RoomManager.get_room_by_id(state, room_id)
        round_obj = RoundManager.get_round(state, room_id, round_id)
        if round_obj.settlement is not None:
            raise RoundAlreadySettled(f"Round {round_id} already settled")
        RoundStateMachine.require_phase(round_obj, RoundPhase.REVEALED, "Settlement")
        if round_obj.reveal is None:
            raise ConflictError("Reveal data missing for round")

        settlement = settlement_service.settle_round(
            round_id=round_id,
            commit_verified=round_obj.reveal.commit_verified,
            pattern=round_obj.reveal.pattern,
            predictions=round_obj.predictions,
            winner_pot_carry_in_usdc=round_obj.winner_pot_carry_in_usdc,
            liquidity_carry_in_usdc=round_obj.liquidity_carry_in_usdc,
            policy=state.policy,
        )

        round_obj.settlement = settlement
        RoundStateMachine.transition(round_obj, RoundPhase.SETTLED, utcnow())

        economics = settlement.economics
        room.pending_winner_pot_carry_usdc += economics.winner_pot_rollover_usdc
        room.pending_liquidity_carry_usdc += economics.liquidity_rollover_usdc
        bump_state_version(room, reason="round_settled")

        logger.info(
            f"Settled round {round_id} (room={room_id}): verified={settlement.commit_verified} "
            f"predictions={settlement.total_predictions} winners={settlement.winning_predictions} "
            f"distributed={economics.winner_pot_distributed_usdc} "
            f"rollover={economics.winner_pot_rollover_usdc}"
        )
        return settlement

    @staticmethod
    @room_exclusive
    def attach_settlement_references(
        state: GameState,
        room_id: str,
        round_id: str,
        patch: Union[SettlementReferences, Mapping],
    ) -> SettlementResult:
        """
        補上外部參考（例如鏈上確認 ID）

        只合併 patch 中有值的欄位，不會動到經濟計算。
        這是 settled 之後唯一允許的修改。

        異常：
            SettlementNotFound: 回合還沒結算
            ValidationError: patch 有未知欄位
        """
        room = RoomManager.get_room_by_id(state, room_id)
        round_obj = RoundManager.get_round(state, room_id, round_id)
        if round_obj.settlement is None:
            raise SettlementNotFound(round_id)

        if isinstance(patch, Mapping):
            try:
                patch = SettlementReferences(**patch)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid settlement references: {e}")

        existing = round_obj.settlement.integrations or SettlementReferences()
        merged = existing.model_copy(update=patch.model_dump(exclude_none=True))
        round_obj.settlement = round_obj.settlement.model_copy(update={"integrations": merged})
        bump_state_version(room, reason="settlement_references_attached")

        return round_obj.settlement

    @staticmethod
    def get_results(state: GameState, room_id: str, round_id: str) -> SettlementResult:
        """
        取得結算結果

        異常：
            SettlementNotFound: 回合還沒結算
        """
        with with_room_lock(state, room_id):
            round_obj = RoundManager.get_round(state, room_id, round_id)
            if round_obj.settlement is None:
                raise SettlementNotFound(round_id)
            return round_obj.settlement
