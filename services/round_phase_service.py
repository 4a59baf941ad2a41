"""
回合階段服務：判斷階段轉換是否合法

回合階段（嚴格線性，不能跳過，不能倒退）：
    awaiting_commit -> prediction_open -> locked -> revealed -> settled

每個操作只能在特定階段執行：
- commit:     awaiting_commit
- prediction: prediction_open
- lock:       prediction_open
- reveal:     locked
- settle:     revealed
"""
from typing import Optional

from models import RoundPhase

PHASE_ORDER = (
    RoundPhase.AWAITING_COMMIT,
    RoundPhase.PREDICTION_OPEN,
    RoundPhase.LOCKED,
    RoundPhase.REVEALED,
    RoundPhase.SETTLED,
)


def get_next_phase(current: RoundPhase) -> Optional[RoundPhase]:
    """
    取得下一個階段

    範例：
        get_next_phase(RoundPhase.LOCKED) -> RoundPhase.REVEALED
        get_next_phase(RoundPhase.SETTLED) -> None
    """
    index = PHASE_ORDER.index(current)
    if index + 1 < len(PHASE_ORDER):
        return PHASE_ORDER[index + 1]
    return None


def can_transition_phase(current: RoundPhase, target: RoundPhase) -> bool:
    """只有緊接著的下一個階段是合法的"""
    return get_next_phase(current) == target


def is_round_finished(phase: RoundPhase) -> bool:
    """
    回合是否已結束

    用途：
        start_round 判斷房間是否可以開新回合
    """
    return phase == RoundPhase.SETTLED
