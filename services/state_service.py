"""
State version 服務

前端靠短輪詢 /state 取得更新：每次房間或回合有變動就提升 state_version，
前端發現版本改變才重新抓資料。
"""
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)


def bump_state_version(room, reason: str) -> int:
    """
    提升房間的 state_version

    參數：
        room: StoredRoom
        reason: 變動原因（只用於 log）

    返回：
        新的版本號

    注意：
        必須在房間鎖內呼叫
    """
    room.state_version += 1
    room.updated_at = datetime.now(timezone.utc)
    logger.debug(f"Room {room.id} state_version -> {room.state_version} ({reason})")
    return room.state_version
