"""
回合狀態機：集中管理所有回合階段轉換

所有階段變更都經過 RoundStateMachine.transition，不在其他地方直接改 phase。
"""
import logging

from core.exceptions import InvalidPhaseTransition
from models import RoundPhase
from services.round_phase_service import can_transition_phase

logger = logging.getLogger(__name__)


class RoundStateMachine:
    """回合階段轉換"""

    @staticmethod
    def require_phase(round_obj, expected: RoundPhase, action: str) -> None:
        """
        檢查回合目前的階段是否允許某個操作

        異常：
            InvalidPhaseTransition: 目前階段不是 expected
        """
        if round_obj.phase != expected:
            raise InvalidPhaseTransition(
                f"{action} only allowed in {expected.value} phase "
                f"(current: {round_obj.phase.value})"
            )

    @staticmethod
    def transition(round_obj, target: RoundPhase, now) -> None:
        """
        轉換回合階段

        規則：
            只能前進到緊接著的下一個階段，沒有跳過，也沒有回頭

        副作用：
            更新 phase，以及 locked_at / revealed_at / settled_at

        異常：
            InvalidPhaseTransition: 非法的階段轉換
        """
        current = round_obj.phase
        if not can_transition_phase(current, target):
            raise InvalidPhaseTransition(
                f"Invalid phase transition: {current.value} -> {target.value}"
            )

        round_obj.phase = target
        if target == RoundPhase.LOCKED:
            round_obj.locked_at = now
        elif target == RoundPhase.REVEALED:
            round_obj.revealed_at = now
        elif target == RoundPhase.SETTLED:
            round_obj.settled_at = now

        logger.info(f"Round {round_obj.id} phase {current.value} -> {target.value}")
