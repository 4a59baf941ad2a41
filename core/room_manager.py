"""
Room Manager：管理 Room 的完整生命週期

職責：
1. 建立 Room（含唯一的房間代碼）
2. 查詢 Room（ID / 房間代碼）
3. 更新 artist 相關的 metadata
4. 產生 Room 快照

原則：
- 單一職責：只管 Room，回合交給 RoundManager
- 資料結構優先：先檢查資料是否符合要求，再執行操作
- Room 建立後在 process 存活期間不會被刪除
"""
from typing import Optional
import logging

from core.exceptions import RoomNotFound, ValidationError
from core.game_state import GameState, StoredRoom, utcnow
from core.locks import room_exclusive, with_room_lock
from core.snapshots import current_round_summary, to_room_view
from schemas import RoomStateResponse, RoomView
from services.naming_service import generate_id, generate_room_code
from services.state_service import bump_state_version

logger = logging.getLogger(__name__)

_UNSET = object()


class RoomManager:
    """Room 生命週期管理器"""

    @staticmethod
    def create_room(
        state: GameState,
        title: str = "Jam Room",
        artist_wallet: Optional[str] = None,
        artist_handle: Optional[str] = None,
    ) -> StoredRoom:
        """
        建立新房間

        流程：
        1. 驗證 title
        2. 生成唯一的房間代碼
        3. 建立 Room 並登記房間鎖

        參數：
            state: GameState
            title: 房間標題（1-80 字）
            artist_wallet: artist 錢包（可選）
            artist_handle: artist 的 handle（可選）

        返回：
            StoredRoom

        異常：
            ValidationError: title 不合法
        """
        if not isinstance(title, str) or not 1 <= len(title) <= 80:
            raise ValidationError("Room title must be 1-80 characters")

        with state.locks.registry_lock:
            # 1. 生成唯一的房間代碼
            code = generate_room_code()
            while code in state.room_codes:
                logger.warning(f"Room code collision detected, regenerating: {code}")
                code = generate_room_code()

            # 2. 建立 Room
            now = utcnow()
            room = StoredRoom(
                id=generate_id("room"),
                code=code,
                title=title,
                created_at=now,
                updated_at=now,
                artist_wallet=artist_wallet,
                artist_handle=artist_handle,
            )
            state.rooms[room.id] = room
            state.room_codes[code] = room.id
            state.locks.register_room(room.id)

        logger.info(f"Created room {room.id} with code {code}")
        return room

    @staticmethod
    def get_room_by_id(state: GameState, room_id: str) -> StoredRoom:
        """
        透過 ID 取得 Room

        異常：
            RoomNotFound: Room 不存在
        """
        room = state.rooms.get(room_id)
        if room is None:
            raise RoomNotFound(room_id)
        return room

    @staticmethod
    def get_room_by_code(state: GameState, code: str) -> StoredRoom:
        """
        透過房間代碼取得 Room（不分大小寫）

        異常：
            RoomNotFound: Room 不存在
        """
        room_id = state.room_codes.get(code.strip().upper())
        if room_id is None:
            raise RoomNotFound(f"code {code}")
        return state.rooms[room_id]

    @staticmethod
    @room_exclusive
    def update_room_metadata(
        state: GameState,
        room_id: str,
        artist_handle=_UNSET,
        artist_profile_url=_UNSET,
    ) -> StoredRoom:
        """
        更新 artist metadata

        沒傳的欄位保持不變，傳 None 代表清空
        """
        room = RoomManager.get_room_by_id(state, room_id)
        if artist_handle is not _UNSET:
            room.artist_handle = artist_handle
        if artist_profile_url is not _UNSET:
            room.artist_profile_url = artist_profile_url
        bump_state_version(room, reason="room_metadata_updated")
        return room

    @staticmethod
    def get_room_view(state: GameState, room_id: str) -> RoomView:
        with with_room_lock(state, room_id):
            room = RoomManager.get_room_by_id(state, room_id)
            return to_room_view(state, room)

    @staticmethod
    def get_room_state(state: GameState, room_id: str) -> RoomStateResponse:
        """短輪詢用：版本號 + 目前回合"""
        with with_room_lock(state, room_id):
            room = RoomManager.get_room_by_id(state, room_id)
            return RoomStateResponse(
                state_version=room.state_version,
                current_round=current_round_summary(state, room),
            )
