"""
Pydantic schemas

- Pattern：鼓組 pattern（已正規化的形狀）
- Prediction / Commit / Reveal：API 請求
- RoundSummary / RoomView：快照（讀取 API 與短輪詢用）
- SettlementResult：結算結果（產生後不可變）
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, StrictInt

from models import RoomStatus, RoundPhase, TrackId

PATTERN_VERSION = 1
STEPS_PER_PATTERN = 16
MIN_BPM = 40
MAX_BPM = 240
TRACK_ORDER = tuple(TrackId)


# ============ Pattern ============

class StepState(BaseModel):
    active: bool = False
    velocity: int = Field(default=100, ge=0, le=127)


class TrackPattern(BaseModel):
    id: TrackId
    steps: List[StepState] = Field(min_length=STEPS_PER_PATTERN, max_length=STEPS_PER_PATTERN)


class Pattern(BaseModel):
    version: Literal[1] = PATTERN_VERSION
    length: Literal[16] = STEPS_PER_PATTERN
    bpm: int = Field(default=120, ge=MIN_BPM, le=MAX_BPM)
    tracks: List[TrackPattern] = Field(min_length=len(TRACK_ORDER), max_length=len(TRACK_ORDER))

    def step(self, track_id: TrackId, step_index: int) -> Optional[StepState]:
        for track in self.tracks:
            if track.id == track_id:
                if 0 <= step_index < len(track.steps):
                    return track.steps[step_index]
                return None
        return None


# ============ Requests ============

class CreateRoomRequest(BaseModel):
    title: str = Field(default="Jam Room", min_length=1, max_length=80)
    artist_wallet: Optional[str] = Field(default=None, min_length=20)
    artist_handle: Optional[str] = Field(default=None, min_length=1, max_length=80)


class UpdateRoomMetadataRequest(BaseModel):
    """artist 資料補上後更新房間；沒傳的欄位不變，傳 null 代表清空"""
    artist_handle: Optional[str] = Field(default=None, min_length=1, max_length=80)
    artist_profile_url: Optional[str] = Field(default=None, min_length=1)


class StartRoundRequest(BaseModel):
    bpm: Optional[int] = None


class CommitPayload(BaseModel):
    commit_hash: str = Field(min_length=32)
    pattern_version: Literal[1] = PATTERN_VERSION


class PredictionGuess(BaseModel):
    model_config = ConfigDict(frozen=True)

    track_id: TrackId
    step_index: int = Field(ge=0, le=STEPS_PER_PATTERN - 1)
    will_be_active: bool


class PredictionPayload(BaseModel):
    user_wallet: str = Field(min_length=20)
    # 正整數檢查交給 RoundManager（ValidationError）
    stake_amount_usdc: StrictInt
    guess: PredictionGuess
    session_proof: Optional[str] = Field(default=None, min_length=1)


class PredictionBatchRequest(BaseModel):
    user_wallet: str = Field(min_length=20)
    stake_amount_usdc: StrictInt
    guesses: List[PredictionGuess] = Field(min_length=1, max_length=64)
    session_proof: Optional[str] = Field(default=None, min_length=1)


class RevealPayload(BaseModel):
    # 原始 pattern，交給 pattern_service.normalize_pattern 處理
    pattern: Dict[str, Any]
    nonce: str = Field(min_length=1)
    commit_input_version: Literal["v1"] = "v1"


# ============ Settlement ============

class LeaderboardEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_wallet: str
    correct_predictions: int
    reward_units: int
    staked_usdc: int
    usdc_won: int


class RewardLedgerEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_wallet: str
    units: int
    reason: str
    external_reference: Optional[str] = None


class UsdcPayoutEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_wallet: str
    amount_usdc: int = Field(ge=0)
    reason: Literal["prediction_win"]


class SettlementEconomics(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_staked_usdc: int
    artist_pending_usdc: int
    artist_payout_usdc: int
    artist_slashed_usdc: int
    platform_fee_usdc: int
    liquidity_reserve_from_stakes_usdc: int
    liquidity_carry_in_usdc: int
    liquidity_reserve_usdc: int
    liquidity_rollover_usdc: int
    winner_pot_from_stakes_usdc: int
    winner_pot_carry_in_usdc: int
    winner_pot_usdc: int
    winner_pot_distributed_usdc: int
    winner_pot_rollover_usdc: int


class SettlementReferences(BaseModel):
    """結算後由外部協作者補上的參考欄位，不影響經濟計算"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    onchain_settlement_reference: Optional[str] = None
    session_reference: Optional[str] = None
    settled_at_iso: Optional[str] = None


class SettlementResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    round_id: str
    commit_verified: bool
    total_predictions: int
    winning_predictions: int
    leaderboard: Tuple[LeaderboardEntry, ...]
    rewards: Tuple[RewardLedgerEntry, ...]
    usdc_payouts: Tuple[UsdcPayoutEntry, ...]
    economics: SettlementEconomics
    integrations: Optional[SettlementReferences] = None


# ============ Snapshots / Responses ============

class RoundSummary(BaseModel):
    id: str
    room_id: str
    index: int
    phase: RoundPhase
    bpm: int
    commit_hash: Optional[str] = None
    prediction_count: int
    commit_verified: Optional[bool] = None
    total_staked_usdc: int
    winner_pot_usdc: int
    artist_pending_usdc: int
    winner_pot_carry_in_usdc: int
    liquidity_carry_in_usdc: int
    started_at: datetime
    locked_at: Optional[datetime] = None
    revealed_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None


class RoomView(BaseModel):
    id: str
    code: str
    title: str
    status: RoomStatus
    artist_wallet: Optional[str] = None
    artist_handle: Optional[str] = None
    artist_profile_url: Optional[str] = None
    state_version: int
    current_round: Optional[RoundSummary] = None


class RoomResponse(BaseModel):
    room: RoomView


class RoomStateResponse(BaseModel):
    state_version: int
    current_round: Optional[RoundSummary] = None


class RoundResponse(BaseModel):
    round: RoundSummary


class PredictionResponse(BaseModel):
    accepted: Literal[True] = True
    prediction_count: int
    total_staked_usdc: int


class PredictionBatchResponse(BaseModel):
    accepted: Literal[True] = True
    accepted_count: int
    prediction_count: int
    total_staked_usdc: int


class RevealResponse(BaseModel):
    round: RoundSummary
    commit_verified: bool


class SettlementResponse(BaseModel):
    settlement: SettlementResult
