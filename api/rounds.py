"""
Round API Endpoints - 短輪詢版

重點：
1. 所有業務邏輯集中在 RoundManager，這裡只做轉換與錯誤對應
2. 每次修改都會提升房間的 state_version，前端靠 /state 獲取更新
3. SQL 鏡像是 best-effort，失敗不影響回應
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

import logging

from api.errors import to_http_exception
from core.exceptions import JammingException
from core.game_state import GameState, get_game_state, utcnow
from core.round_manager import RoundManager
from database import get_db
from schemas import (
    CommitPayload,
    PredictionBatchRequest,
    PredictionBatchResponse,
    PredictionPayload,
    PredictionResponse,
    RevealPayload,
    RevealResponse,
    RoundResponse,
    SettlementReferences,
    SettlementResponse,
    StartRoundRequest,
)
from services.mirror_service import (
    PersistenceMirror,
    get_mirror,
    sync_predictions,
    sync_room,
    sync_round,
    sync_settlement,
)

router = APIRouter(prefix="/api/v1/rooms", tags=["rounds"])
logger = logging.getLogger(__name__)


@router.get("/{room_id}/rounds/current", response_model=RoundResponse)
def get_current_round(room_id: str, state: GameState = Depends(get_game_state)):
    """
    取得當前回合資訊

    返回：
        - round: 回合快照（phase / 預測數 / 總 stake / winner pot ...）
    """
    try:
        summary = RoundManager.get_current_round_summary(state, room_id)
    except JammingException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to get current round: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")

    if summary is None:
        raise HTTPException(status_code=404, detail="No active round")
    return RoundResponse(round=summary)


@router.get("/{room_id}/rounds/{round_id}", response_model=RoundResponse)
def get_round(room_id: str, round_id: str, state: GameState = Depends(get_game_state)):
    try:
        return RoundResponse(round=RoundManager.get_round_summary(state, room_id, round_id))

    except JammingException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to get round: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{room_id}/rounds/start", response_model=RoundResponse)
def start_round(
    room_id: str,
    round_data: Optional[StartRoundRequest] = None,
    state: GameState = Depends(get_game_state),
    db: Session = Depends(get_db),
    mirror: PersistenceMirror = Depends(get_mirror),
):
    """
    開新回合（artist endpoint）

    前置條件：
    - 房間沒有回合，或目前回合已經 settled

    參數：
        room_id: 房間 ID
        round_data: bpm（可省略，使用預設值）
    """
    try:
        bpm = round_data.bpm if round_data else None
        round_obj = RoundManager.start_round(state, room_id, bpm=bpm)
        mirror.safe("sync-round-start", sync_round, db, round_obj)
        mirror.safe("sync-room-rollover", sync_room, db, state.rooms[room_id])

        return RoundResponse(round=RoundManager.get_round_summary(state, room_id, round_obj.id))

    except JammingException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to start round: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{room_id}/rounds/{round_id}/commit", response_model=RoundResponse)
def commit_round(
    room_id: str,
    round_id: str,
    commit_data: CommitPayload,
    state: GameState = Depends(get_game_state),
    db: Session = Depends(get_db),
    mirror: PersistenceMirror = Depends(get_mirror),
):
    """
    提交 commitment（artist endpoint）

    commit_hash = sha256(commit_input)，pattern 要等 reveal 才公開
    """
    try:
        round_obj = RoundManager.commit_round(
            state, room_id, round_id,
            commit_hash=commit_data.commit_hash,
            pattern_version=commit_data.pattern_version,
        )
        mirror.safe("sync-round-commit", sync_round, db, round_obj)

        return RoundResponse(round=RoundManager.get_round_summary(state, room_id, round_id))

    except JammingException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to commit round: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{room_id}/rounds/{round_id}/predictions", response_model=PredictionResponse)
def submit_prediction(
    room_id: str,
    round_id: str,
    prediction_data: PredictionPayload,
    state: GameState = Depends(get_game_state),
    db: Session = Depends(get_db),
    mirror: PersistenceMirror = Depends(get_mirror),
):
    """
    提交預測（玩家 endpoint）

    同一錢包對同一個 (track, step) 只能預測一次，重複提交回 409
    """
    try:
        prediction, tally = RoundManager.add_prediction(state, room_id, round_id, prediction_data)
        mirror.safe("sync-round-prediction", sync_predictions, db, [prediction])

        return PredictionResponse(
            prediction_count=tally.prediction_count,
            total_staked_usdc=tally.total_staked_usdc,
        )

    except JammingException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to submit prediction: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{room_id}/rounds/{round_id}/predictions/batch", response_model=PredictionBatchResponse)
def submit_prediction_batch(
    room_id: str,
    round_id: str,
    batch_data: PredictionBatchRequest,
    state: GameState = Depends(get_game_state),
    db: Session = Depends(get_db),
    mirror: PersistenceMirror = Depends(get_mirror),
):
    """
    批次提交預測（全有或全無）

    所有 guess 共用同一個 stake
    """
    try:
        predictions, tally = RoundManager.add_predictions_batch(state, room_id, round_id, batch_data)
        mirror.safe("sync-round-prediction-batch", sync_predictions, db, predictions)

        return PredictionBatchResponse(
            accepted_count=len(predictions),
            prediction_count=tally.prediction_count,
            total_staked_usdc=tally.total_staked_usdc,
        )

    except JammingException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to submit prediction batch: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{room_id}/rounds/{round_id}/lock", response_model=RoundResponse)
def lock_round(
    room_id: str,
    round_id: str,
    state: GameState = Depends(get_game_state),
    db: Session = Depends(get_db),
    mirror: PersistenceMirror = Depends(get_mirror),
):
    """鎖定回合（artist endpoint），之後不再接受預測"""
    try:
        round_obj = RoundManager.lock_round(state, room_id, round_id)
        mirror.safe("sync-round-lock", sync_round, db, round_obj)

        return RoundResponse(round=RoundManager.get_round_summary(state, room_id, round_id))

    except JammingException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to lock round: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{room_id}/rounds/{round_id}/reveal", response_model=RevealResponse)
def reveal_round(
    room_id: str,
    round_id: str,
    reveal_data: RevealPayload,
    state: GameState = Depends(get_game_state),
    db: Session = Depends(get_db),
    mirror: PersistenceMirror = Depends(get_mirror),
):
    """
    Reveal pattern（artist endpoint）

    驗證失敗不是錯誤：回應 commit_verified=false，回合照常結算，
    但 artist 的份額會被沒收、winner pot 滾到下一回合
    """
    try:
        round_obj, commit_verified = RoundManager.reveal_round(
            state, room_id, round_id,
            pattern=reveal_data.pattern,
            nonce=reveal_data.nonce,
            commit_input_version=reveal_data.commit_input_version,
        )
        mirror.safe("sync-round-reveal", sync_round, db, round_obj)

        return RevealResponse(
            round=RoundManager.get_round_summary(state, room_id, round_id),
            commit_verified=commit_verified,
        )

    except JammingException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to reveal round: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{room_id}/rounds/{round_id}/settle", response_model=SettlementResponse)
def settle_round(
    room_id: str,
    round_id: str,
    state: GameState = Depends(get_game_state),
    db: Session = Depends(get_db),
    mirror: PersistenceMirror = Depends(get_mirror),
):
    """
    結算回合（artist endpoint）

    流程：
    1. RoundManager.settle_round 計算並保存結果
    2. 補上 settled_at_iso 參考
    3. 鏡像 round / settlement / room rollover（鏡像內容和 /results 一致）
    """
    try:
        RoundManager.settle_round(state, room_id, round_id)
        settlement = RoundManager.attach_settlement_references(
            state, room_id, round_id,
            SettlementReferences(settled_at_iso=utcnow().isoformat()),
        )

        round_obj = RoundManager.get_round(state, room_id, round_id)
        mirror.safe("sync-round-settle", sync_round, db, round_obj)
        mirror.safe("sync-settlement", sync_settlement, db, round_id, settlement)
        mirror.safe("sync-room-rollover", sync_room, db, state.rooms[room_id])

        return SettlementResponse(settlement=settlement)

    except JammingException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to settle round: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/{room_id}/rounds/{round_id}/results", response_model=SettlementResponse)
def get_round_results(room_id: str, round_id: str, state: GameState = Depends(get_game_state)):
    """
    取得回合結算結果

    前置條件：
    - 回合必須已結算
    """
    try:
        return SettlementResponse(settlement=RoundManager.get_results(state, room_id, round_id))

    except JammingException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to get round results: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")
