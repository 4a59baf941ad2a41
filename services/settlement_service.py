"""
結算服務：回合的 Stake 拆分與 Winner Pot 分配

純計算邏輯，不改變回合狀態（由 RoundManager 負責）

所有金額都是最小單位的非負整數（micro-USDC），所有除法都是 floor。

Stake 拆分（每筆預測）：
┌──────────────────┬────────────────────────────────┐
│ artist pending   │ floor(stake * 5000 / 10000)    │
│ platform fee     │ floor(stake *  500 / 10000)    │
│ liquidity reserve│ floor(stake * 1500 / 10000)    │
│ winner pot       │ stake - 上面三項（餘數）        │
└──────────────────┴────────────────────────────────┘

winner pot 用餘數計算，四個桶子加總一定等於 stake，不會因為 floor 漏錢。
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

from core.exceptions import ValidationError
from schemas import (
    LeaderboardEntry,
    RewardLedgerEntry,
    SettlementEconomics,
    SettlementResult,
    UsdcPayoutEntry,
)
from services.pattern_service import PatternInput, normalize_pattern

BPS_DENOMINATOR = 10_000
REWARD_REASON = "round_prediction_win_token"


def _is_non_negative_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


@dataclass(frozen=True)
class EconomicsPolicy:
    """結算政策（basis points 與每個正確預測的獎勵單位）"""
    artist_pending_bps: int = 5000
    platform_fee_bps: int = 500
    liquidity_reserve_bps: int = 1500
    reward_units_per_correct: int = 10

    def __post_init__(self):
        for name in ("artist_pending_bps", "platform_fee_bps",
                     "liquidity_reserve_bps", "reward_units_per_correct"):
            if not _is_non_negative_int(getattr(self, name)):
                raise ValidationError(f"{name} must be a non-negative integer")

        allocated = self.artist_pending_bps + self.platform_fee_bps + self.liquidity_reserve_bps
        if allocated > BPS_DENOMINATOR:
            raise ValidationError(
                f"Basis points exceed {BPS_DENOMINATOR}: {allocated}"
            )

    @property
    def winner_pot_bps(self) -> int:
        return BPS_DENOMINATOR - self.artist_pending_bps - self.platform_fee_bps - self.liquidity_reserve_bps

    @classmethod
    def from_settings(cls, settings) -> "EconomicsPolicy":
        return cls(
            artist_pending_bps=settings.artist_pending_bps,
            platform_fee_bps=settings.platform_fee_bps,
            liquidity_reserve_bps=settings.liquidity_reserve_bps,
            reward_units_per_correct=settings.reward_units_per_correct,
        )


DEFAULT_POLICY = EconomicsPolicy()


@dataclass(frozen=True)
class StakeSplit:
    artist_pending_usdc: int
    platform_fee_usdc: int
    liquidity_reserve_usdc: int
    winner_pot_usdc: int


@dataclass(frozen=True)
class EvaluatedPrediction:
    user_wallet: str
    stake_amount_usdc: int
    correct: bool
    reward_units: int
    split: StakeSplit


def split_stake(stake_amount_usdc: int, policy: EconomicsPolicy = DEFAULT_POLICY) -> StakeSplit:
    """
    拆分一筆 stake

    異常：
        ValidationError: stake 不是非負整數
    """
    if not _is_non_negative_int(stake_amount_usdc):
        raise ValidationError(f"Stake must be a non-negative integer, got {stake_amount_usdc!r}")

    stake = stake_amount_usdc
    artist_pending = stake * policy.artist_pending_bps // BPS_DENOMINATOR
    platform_fee = stake * policy.platform_fee_bps // BPS_DENOMINATOR
    liquidity_reserve = stake * policy.liquidity_reserve_bps // BPS_DENOMINATOR

    return StakeSplit(
        artist_pending_usdc=artist_pending,
        platform_fee_usdc=platform_fee,
        liquidity_reserve_usdc=liquidity_reserve,
        winner_pot_usdc=stake - artist_pending - platform_fee - liquidity_reserve,
    )


def evaluate_predictions(
    pattern: PatternInput,
    predictions: Sequence[Any],
    policy: EconomicsPolicy = DEFAULT_POLICY,
) -> List[EvaluatedPrediction]:
    """
    逐筆判斷預測是否正確

    correct = (實際 step 是否 active) == guess.will_be_active
    沒有部分得分：正確拿固定獎勵單位，錯誤拿 0。

    參數：
        pattern: reveal 的 pattern
        predictions: 具有 user_wallet / stake_amount_usdc / guess 的物件

    異常：
        ValidationError: stake 不是正整數，或 pattern 格式錯誤
    """
    normalized = normalize_pattern(pattern)
    evaluated = []

    for prediction in predictions:
        stake = prediction.stake_amount_usdc
        if not _is_non_negative_int(stake) or stake == 0:
            raise ValidationError(f"Stake must be a positive integer, got {stake!r}")

        guess = prediction.guess
        step = normalized.step(guess.track_id, guess.step_index)
        actual_active = bool(step and step.active)
        correct = actual_active == guess.will_be_active

        evaluated.append(EvaluatedPrediction(
            user_wallet=prediction.user_wallet,
            stake_amount_usdc=stake,
            correct=correct,
            reward_units=policy.reward_units_per_correct if correct else 0,
            split=split_stake(stake, policy),
        ))

    return evaluated


def distribute_winner_pot(
    correct_predictions: Sequence[EvaluatedPrediction],
    winner_pot_usdc: int,
) -> Dict[str, int]:
    """
    依照正確預測的 stake 比例分配 winner pot

    規則：
    - 只計算正確預測的 stake
    - 錢包依字串排序（不依提交順序），保證結果可重現
    - 前面的錢包拿 floor(pot * stake / total)
    - 最後一個錢包拿剩下的全部，分配總額一定等於 pot

    返回：
        {wallet: amount}，依錢包排序；沒有贏家或 pot 為 0 時為空
    """
    stake_by_wallet: Dict[str, int] = {}
    for prediction in correct_predictions:
        stake_by_wallet[prediction.user_wallet] = (
            stake_by_wallet.get(prediction.user_wallet, 0) + prediction.stake_amount_usdc
        )

    participants = sorted(stake_by_wallet.items())
    total_correct_stake = sum(stake for _, stake in participants)
    payouts: Dict[str, int] = {}

    if not participants or total_correct_stake <= 0 or winner_pot_usdc <= 0:
        return payouts

    distributed = 0
    for index, (wallet, stake) in enumerate(participants):
        if index == len(participants) - 1:
            amount = winner_pot_usdc - distributed
        else:
            amount = winner_pot_usdc * stake // total_correct_stake
        distributed += amount
        payouts[wallet] = amount

    return payouts


def settle_round(
    round_id: str,
    commit_verified: bool,
    pattern: PatternInput,
    predictions: Sequence[Any],
    winner_pot_carry_in_usdc: int = 0,
    liquidity_carry_in_usdc: int = 0,
    policy: EconomicsPolicy = DEFAULT_POLICY,
) -> SettlementResult:
    """
    計算一個回合的完整結算結果

    流程：
    1. 逐筆評估預測並拆分 stake
    2. 彙總各個桶子（winner pot / liquidity 加上 carry-in）
    3. commitment 驗證通過才分配 winner pot，否則整個 pot 滾到下一回合
    4. 驗證通過 artist 拿到 pending，否則全數沒收（slashed）
    5. 建立 leaderboard 與獎勵 ledger

    注意：
    - 不會被呼叫兩次（RoundManager 的「已結算」檢查負責）
    - 沒有共享狀態，不同回合可以並行呼叫

    異常：
        ValidationError: 金額為負或 stake 不是正整數
    """
    if not _is_non_negative_int(winner_pot_carry_in_usdc):
        raise ValidationError("winner_pot_carry_in_usdc must be a non-negative integer")
    if not _is_non_negative_int(liquidity_carry_in_usdc):
        raise ValidationError("liquidity_carry_in_usdc must be a non-negative integer")

    # 1. 評估
    evaluated = evaluate_predictions(pattern, predictions, policy)

    # 2. 彙總
    total_staked = sum(p.stake_amount_usdc for p in evaluated)
    artist_pending = sum(p.split.artist_pending_usdc for p in evaluated)
    platform_fee = sum(p.split.platform_fee_usdc for p in evaluated)
    liquidity_from_stakes = sum(p.split.liquidity_reserve_usdc for p in evaluated)
    winner_pot_from_stakes = sum(p.split.winner_pot_usdc for p in evaluated)
    winner_pot = winner_pot_from_stakes + winner_pot_carry_in_usdc
    liquidity_reserve = liquidity_from_stakes + liquidity_carry_in_usdc

    # 3. 分配 winner pot
    correct_predictions = [p for p in evaluated if p.correct]
    payouts = distribute_winner_pot(correct_predictions, winner_pot) if commit_verified else {}

    # 4. Leaderboard 與獎勵 ledger
    stats: Dict[str, Dict[str, int]] = {}
    rewards = []
    for prediction in evaluated:
        row = stats.setdefault(prediction.user_wallet, {
            "correct_predictions": 0,
            "reward_units": 0,
            "staked_usdc": 0,
            "usdc_won": 0,
        })
        row["correct_predictions"] += 1 if prediction.correct else 0
        row["reward_units"] += prediction.reward_units
        row["staked_usdc"] += prediction.stake_amount_usdc

        if prediction.reward_units > 0 and commit_verified:
            rewards.append(RewardLedgerEntry(
                user_wallet=prediction.user_wallet,
                units=prediction.reward_units,
                reason=REWARD_REASON,
            ))

    for wallet, amount in payouts.items():
        stats[wallet]["usdc_won"] = amount

    leaderboard = sorted(
        (LeaderboardEntry(user_wallet=wallet, **row) for wallet, row in stats.items()),
        key=lambda entry: (
            -entry.usdc_won,
            -entry.reward_units,
            -entry.correct_predictions,
            -entry.staked_usdc,
            entry.user_wallet,
        ),
    )

    usdc_payouts = [
        UsdcPayoutEntry(user_wallet=wallet, amount_usdc=amount, reason="prediction_win")
        for wallet, amount in payouts.items()
    ]
    winner_pot_distributed = sum(entry.amount_usdc for entry in usdc_payouts)

    # 5. Artist 結果
    artist_payout = artist_pending if commit_verified else 0
    artist_slashed = 0 if commit_verified else artist_pending

    return SettlementResult(
        round_id=round_id,
        commit_verified=commit_verified,
        total_predictions=len(evaluated),
        winning_predictions=len(correct_predictions),
        leaderboard=leaderboard,
        rewards=rewards,
        usdc_payouts=usdc_payouts,
        economics=SettlementEconomics(
            total_staked_usdc=total_staked,
            artist_pending_usdc=artist_pending,
            artist_payout_usdc=artist_payout,
            artist_slashed_usdc=artist_slashed,
            platform_fee_usdc=platform_fee,
            liquidity_reserve_from_stakes_usdc=liquidity_from_stakes,
            liquidity_carry_in_usdc=liquidity_carry_in_usdc,
            liquidity_reserve_usdc=liquidity_reserve,
            liquidity_rollover_usdc=liquidity_reserve,
            winner_pot_from_stakes_usdc=winner_pot_from_stakes,
            winner_pot_carry_in_usdc=winner_pot_carry_in_usdc,
            winner_pot_usdc=winner_pot,
            winner_pot_distributed_usdc=winner_pot_distributed,
            winner_pot_rollover_usdc=winner_pot - winner_pot_distributed,
        ),
    )
