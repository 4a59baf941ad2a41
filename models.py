"""
資料模型

- Enum：回合階段、房間狀態、音軌 ID
- SQLAlchemy Table：記憶體狀態的 SQL 鏡像（best-effort，不是權威資料來源）
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String

from database import Base


class RoundPhase(str, enum.Enum):
    """回合階段（嚴格線性順序）"""
    AWAITING_COMMIT = "awaiting_commit"
    PREDICTION_OPEN = "prediction_open"
    LOCKED = "locked"
    REVEALED = "revealed"
    SETTLED = "settled"


class RoomStatus(str, enum.Enum):
    ACTIVE = "active"


class TrackId(str, enum.Enum):
    """鼓組音軌，宣告順序即 canonical 順序"""
    KICK = "kick"
    SNARE = "snare"
    HAT_CLOSED = "hat_closed"
    HAT_OPEN = "hat_open"
    CLAP = "clap"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Room(Base):
    __tablename__ = "rooms"

    id = Column(String, primary_key=True)
    code = Column(String(6), unique=True, index=True, nullable=False)
    title = Column(String(80), nullable=False)
    status = Column(String, default=RoomStatus.ACTIVE.value)
    artist_wallet = Column(String, nullable=True)
    artist_handle = Column(String, nullable=True)
    artist_profile_url = Column(String, nullable=True)
    pending_winner_pot_carry_usdc = Column(Integer, default=0)
    pending_liquidity_carry_usdc = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)


class Round(Base):
    __tablename__ = "rounds"

    id = Column(String, primary_key=True)
    room_id = Column(String, ForeignKey("rooms.id"), index=True, nullable=False)
    round_index = Column(Integer, nullable=False)
    phase = Column(String, default=RoundPhase.AWAITING_COMMIT.value)
    bpm = Column(Integer, nullable=False)
    commit_hash = Column(String, nullable=True)
    pattern_version = Column(Integer, nullable=True)
    reveal_nonce = Column(String, nullable=True)
    revealed_pattern = Column(JSON, nullable=True)
    commit_verified = Column(Boolean, nullable=True)
    winner_pot_carry_in_usdc = Column(Integer, default=0)
    liquidity_carry_in_usdc = Column(Integer, default=0)
    started_at = Column(DateTime(timezone=True), nullable=False)
    locked_at = Column(DateTime(timezone=True), nullable=True)
    revealed_at = Column(DateTime(timezone=True), nullable=True)
    settled_at = Column(DateTime(timezone=True), nullable=True)


class Prediction(Base):
    __tablename__ = "predictions"

    id = Column(String, primary_key=True)
    round_id = Column(String, ForeignKey("rounds.id"), index=True, nullable=False)
    user_wallet = Column(String, index=True, nullable=False)
    stake_amount_usdc = Column(Integer, nullable=False)
    track_id = Column(String, nullable=False)
    step_index = Column(Integer, nullable=False)
    will_be_active = Column(Boolean, nullable=False)
    submitted_at = Column(DateTime(timezone=True), nullable=False)


class Settlement(Base):
    __tablename__ = "settlements"

    round_id = Column(String, ForeignKey("rounds.id"), primary_key=True)
    commit_verified = Column(Boolean, nullable=False)
    total_predictions = Column(Integer, nullable=False)
    winning_predictions = Column(Integer, nullable=False)
    # 完整結算結果（leaderboard / ledgers / economics）
    payload = Column(JSON, nullable=False)
