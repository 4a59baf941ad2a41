"""
Room API Endpoints

職責：
1. 建立房間
2. 查詢房間（ID / 房間代碼）
3. 更新 artist metadata
4. 短輪詢 /state
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
import logging

from api.errors import to_http_exception
from core.exceptions import JammingException
from core.game_state import GameState, get_game_state
from core.room_manager import RoomManager
from database import get_db
from schemas import CreateRoomRequest, RoomResponse, RoomStateResponse, UpdateRoomMetadataRequest
from services.mirror_service import PersistenceMirror, get_mirror, sync_room

router = APIRouter(prefix="/api/v1/rooms", tags=["rooms"])
logger = logging.getLogger(__name__)


@router.post("", response_model=RoomResponse)
def create_room(
    room_data: CreateRoomRequest,
    state: GameState = Depends(get_game_state),
    db: Session = Depends(get_db),
    mirror: PersistenceMirror = Depends(get_mirror),
):
    """
    建立房間（artist endpoint）

    返回：
        - room: 房間資訊（含 6 位房間代碼）
    """
    try:
        room = RoomManager.create_room(
            state,
            title=room_data.title,
            artist_wallet=room_data.artist_wallet,
            artist_handle=room_data.artist_handle,
        )
        mirror.safe("sync-room-create", sync_room, db, room)

        return RoomResponse(room=RoomManager.get_room_view(state, room.id))

    except JammingException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to create room: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/code/{code}", response_model=RoomResponse)
def get_room_by_code(code: str, state: GameState = Depends(get_game_state)):
    """透過房間代碼加入（玩家 endpoint）"""
    try:
        room = RoomManager.get_room_by_code(state, code)
        return RoomResponse(room=RoomManager.get_room_view(state, room.id))

    except JammingException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to get room by code: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/{room_id}", response_model=RoomResponse)
def get_room(room_id: str, state: GameState = Depends(get_game_state)):
    try:
        return RoomResponse(room=RoomManager.get_room_view(state, room_id))

    except JammingException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to get room: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.patch("/{room_id}", response_model=RoomResponse)
def update_room_metadata(
    room_id: str,
    metadata: UpdateRoomMetadataRequest,
    state: GameState = Depends(get_game_state),
    db: Session = Depends(get_db),
    mirror: PersistenceMirror = Depends(get_mirror),
):
    """
    更新 artist metadata（handle / profile URL）

    只更新 request 中有出現的欄位
    """
    try:
        room = RoomManager.update_room_metadata(
            state, room_id, **metadata.model_dump(exclude_unset=True)
        )
        mirror.safe("sync-room-metadata", sync_room, db, room)

        return RoomResponse(room=RoomManager.get_room_view(state, room_id))

    except JammingException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to update room metadata: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/{room_id}/state", response_model=RoomStateResponse)
def get_room_state(room_id: str, state: GameState = Depends(get_game_state)):
    """
    短輪詢 endpoint

    前端定期呼叫，state_version 改變才重新抓回合資料

    返回：
        - state_version: 房間版本號
        - current_round: 目前回合（沒有則為 null）
    """
    try:
        return RoomManager.get_room_state(state, room_id)

    except JammingException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to get room state: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")
