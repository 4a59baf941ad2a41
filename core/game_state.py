"""
記憶體中的遊戲狀態

Room 與 Round 各自存在以 ID 為 key 的 dict 裡，Room 只保存有序的 round_ids
（最後一個就是目前回合），不直接持有 Round 物件，避免互相引用。

GameState 是所有房間與回合的唯一權威，所有修改都經過
RoomManager / RoundManager，並在房間鎖內完成。
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Dict, List, Optional

from core.locks import LockRegistry
from database import get_settings
from models import RoomStatus, RoundPhase
from schemas import Pattern, PredictionGuess, SettlementResult
from services.settlement_service import DEFAULT_POLICY, EconomicsPolicy


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StoredPrediction:
    id: str
    round_id: str
    user_wallet: str
    stake_amount_usdc: int
    guess: PredictionGuess
    submitted_at: datetime
    session_proof: Optional[str] = None


@dataclass
class RevealRecord:
    pattern: Pattern
    nonce: str
    commit_verified: bool


@dataclass
class StoredRound:
    id: str
    room_id: str
    index: int
    bpm: int
    started_at: datetime
    phase: RoundPhase = RoundPhase.AWAITING_COMMIT
    # 開局時從房間快照的 carry-in
    winner_pot_carry_in_usdc: int = 0
    liquidity_carry_in_usdc: int = 0
    commit_hash: Optional[str] = None
    pattern_version: Optional[int] = None
    predictions: List[StoredPrediction] = field(default_factory=list)
    reveal: Optional[RevealRecord] = None
    settlement: Optional[SettlementResult] = None
    locked_at: Optional[datetime] = None
    revealed_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None


@dataclass
class StoredRoom:
    id: str
    code: str
    title: str
    created_at: datetime
    updated_at: datetime
    status: RoomStatus = RoomStatus.ACTIVE
    artist_wallet: Optional[str] = None
    artist_handle: Optional[str] = None
    artist_profile_url: Optional[str] = None
    round_ids: List[str] = field(default_factory=list)
    # 上一回合結算留下、下一回合開局時帶入
    pending_winner_pot_carry_usdc: int = 0
    pending_liquidity_carry_usdc: int = 0
    state_version: int = 0

    @property
    def current_round_id(self) -> Optional[str]:
        return self.round_ids[-1] if self.round_ids else None


class GameState:
    """所有房間與回合"""

    def __init__(self, policy: EconomicsPolicy = DEFAULT_POLICY, default_bpm: int = 120):
        self.policy = policy
        self.default_bpm = default_bpm
        self.rooms: Dict[str, StoredRoom] = {}
        self.rounds: Dict[str, StoredRound] = {}
        self.room_codes: Dict[str, str] = {}
        self.locks = LockRegistry()


@lru_cache()
def get_game_state() -> GameState:
    """
    FastAPI dependency：整個 process 共用的 GameState

    測試時用 app.dependency_overrides 換成新的 GameState
    """
    settings = get_settings()
    return GameState(
        policy=EconomicsPolicy.from_settings(settings),
        default_bpm=settings.default_bpm,
    )
