"""
SQL 鏡像服務：把記憶體狀態同步到資料庫

記憶體中的 GameState 才是權威資料，鏡像只是 best-effort：
- 每次同步都是一個獨立的 transaction（@transactional）
- 同步失敗只記 warning，不會讓 API 請求失敗
"""
from functools import lru_cache
from typing import Callable, Iterable
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import get_settings, transactional
from models import Prediction, Room, Round, Settlement

logger = logging.getLogger(__name__)


@transactional
def sync_room(db: Session, room) -> None:
    """同步 Room（merge：有就更新，沒有就新增）"""
    db.merge(Room(
        id=room.id,
        code=room.code,
        title=room.title,
        status=room.status.value,
        artist_wallet=room.artist_wallet,
        artist_handle=room.artist_handle,
        artist_profile_url=room.artist_profile_url,
        pending_winner_pot_carry_usdc=room.pending_winner_pot_carry_usdc,
        pending_liquidity_carry_usdc=room.pending_liquidity_carry_usdc,
        created_at=room.created_at,
        updated_at=room.updated_at,
    ))


@transactional
def sync_round(db: Session, round_obj) -> None:
    reveal = round_obj.reveal
    db.merge(Round(
        id=round_obj.id,
        room_id=round_obj.room_id,
        round_index=round_obj.index,
        phase=round_obj.phase.value,
        bpm=round_obj.bpm,
        commit_hash=round_obj.commit_hash,
        pattern_version=round_obj.pattern_version,
        reveal_nonce=reveal.nonce if reveal else None,
        revealed_pattern=reveal.pattern.model_dump(mode="json") if reveal else None,
        commit_verified=reveal.commit_verified if reveal else None,
        winner_pot_carry_in_usdc=round_obj.winner_pot_carry_in_usdc,
        liquidity_carry_in_usdc=round_obj.liquidity_carry_in_usdc,
        started_at=round_obj.started_at,
        locked_at=round_obj.locked_at,
        revealed_at=round_obj.revealed_at,
        settled_at=round_obj.settled_at,
    ))


@transactional
def sync_predictions(db: Session, predictions: Iterable) -> None:
    for prediction in predictions:
        db.merge(Prediction(
            id=prediction.id,
            round_id=prediction.round_id,
            user_wallet=prediction.user_wallet,
            stake_amount_usdc=prediction.stake_amount_usdc,
            track_id=prediction.guess.track_id.value,
            step_index=prediction.guess.step_index,
            will_be_active=prediction.guess.will_be_active,
            submitted_at=prediction.submitted_at,
        ))


@transactional
def sync_settlement(db: Session, round_id: str, settlement) -> None:
    db.merge(Settlement(
        round_id=round_id,
        commit_verified=settlement.commit_verified,
        total_predictions=settlement.total_predictions,
        winning_predictions=settlement.winning_predictions,
        payload=settlement.model_dump(mode="json"),
    ))


class PersistenceMirror:
    """
    鏡像開關

    範例：
        mirror.safe("sync-round-lock", sync_round, db, round_obj)
    """

    def __init__(self, enabled: bool):
        self.enabled = enabled

    def safe(self, label: str, sync: Callable, db: Session, *args) -> bool:
        """
        執行一次同步

        返回：
            True 如果同步成功，False 如果鏡像關閉或同步失敗
        """
        if not self.enabled:
            return False
        try:
            sync(db, *args)
            return True
        except SQLAlchemyError as e:
            logger.warning(f"Mirror {label} failed (degraded): {e}")
            return False


@lru_cache()
def get_mirror() -> PersistenceMirror:
    """FastAPI dependency"""
    return PersistenceMirror(enabled=get_settings().mirror_enabled)
