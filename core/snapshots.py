"""
快照：把記憶體狀態轉成 API / 短輪詢用的 schema

呼叫者必須持有房間鎖，快照才不會看到修改到一半的狀態
"""
from typing import Optional, Tuple

from core.game_state import GameState, StoredRoom, StoredRound
from schemas import RoomView, RoundSummary
from services.settlement_service import EconomicsPolicy, split_stake


def get_round_stake_metrics(round_obj: StoredRound, policy: EconomicsPolicy) -> Tuple[int, int, int]:
    """
    回合目前的 stake 彙總

    返回：
        (total_staked_usdc, artist_pending_usdc, winner_pot_usdc)
        winner_pot_usdc 包含 carry-in
    """
    total_staked = 0
    artist_pending = 0
    winner_pot_from_stakes = 0

    for prediction in round_obj.predictions:
        total_staked += prediction.stake_amount_usdc
        split = split_stake(prediction.stake_amount_usdc, policy)
        artist_pending += split.artist_pending_usdc
        winner_pot_from_stakes += split.winner_pot_usdc

    return total_staked, artist_pending, winner_pot_from_stakes + round_obj.winner_pot_carry_in_usdc


def to_round_summary(round_obj: StoredRound, policy: EconomicsPolicy) -> RoundSummary:
    total_staked, artist_pending, winner_pot = get_round_stake_metrics(round_obj, policy)

    return RoundSummary(
        id=round_obj.id,
        room_id=round_obj.room_id,
        index=round_obj.index,
        phase=round_obj.phase,
        bpm=round_obj.bpm,
        commit_hash=round_obj.commit_hash,
        prediction_count=len(round_obj.predictions),
        commit_verified=round_obj.reveal.commit_verified if round_obj.reveal else None,
        total_staked_usdc=total_staked,
        winner_pot_usdc=winner_pot,
        artist_pending_usdc=artist_pending,
        winner_pot_carry_in_usdc=round_obj.winner_pot_carry_in_usdc,
        liquidity_carry_in_usdc=round_obj.liquidity_carry_in_usdc,
        started_at=round_obj.started_at,
        locked_at=round_obj.locked_at,
        revealed_at=round_obj.revealed_at,
        settled_at=round_obj.settled_at,
    )


def current_round_summary(state: GameState, room: StoredRoom) -> Optional[RoundSummary]:
    round_id = room.current_round_id
    if round_id is None or round_id not in state.rounds:
        return None
    return to_round_summary(state.rounds[round_id], state.policy)


def to_room_view(state: GameState, room: StoredRoom) -> RoomView:
    return RoomView(
        id=room.id,
        code=room.code,
        title=room.title,
        status=room.status,
        artist_wallet=room.artist_wallet,
        artist_handle=room.artist_handle,
        artist_profile_url=room.artist_profile_url,
        state_version=room.state_version,
        current_round=current_round_summary(state, room),
    )
