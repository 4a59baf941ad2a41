"""
並發控制工具

提供 Room-level 的互斥鎖，防止競態條件（Race Condition）

FastAPI 會把同步 endpoint 丟到 thread pool 執行，所以同一個房間的請求
可能同時修改記憶體狀態。每個房間一把 RLock，涵蓋房間本身與它所有回合：
- 兩個預測搶同一個 (wallet, track, step)：先拿到鎖的成功，後到的收到 ConflictError
- settle 與 start_round 會同時修改房間累積值，必須在同一把鎖內
"""
from contextlib import contextmanager
from functools import wraps
from typing import Dict, Optional
import logging
import threading

from core.exceptions import JammingException, RoomNotFound

logger = logging.getLogger(__name__)


class LockRegistry:
    """房間鎖的登記表"""

    def __init__(self):
        self._guard = threading.Lock()
        self._room_locks: Dict[str, threading.RLock] = {}
        # 建立房間時使用（確保 room code 唯一）
        self.registry_lock = threading.RLock()

    def register_room(self, room_id: str) -> None:
        with self._guard:
            self._room_locks.setdefault(room_id, threading.RLock())

    def room_lock(self, room_id: str) -> Optional[threading.RLock]:
        with self._guard:
            return self._room_locks.get(room_id)


@contextmanager
def with_room_lock(state, room_id: str):
    """
    鎖定一個 Room（連同它所有的回合）

    範例：
        with with_room_lock(state, room_id):
            round_obj = state.rounds[round_id]
            round_obj.predictions.append(prediction)

    異常：
        RoomNotFound: 房間沒有登記過（未建立的房間沒有鎖）

    注意：
        - 使用 RLock，同一個 thread 可以重複進入（例如 snapshot 內再讀回合）
        - 鎖內不做任何 I/O
    """
    lock = state.locks.room_lock(room_id)
    if lock is None:
        raise RoomNotFound(room_id)
    with lock:
        yield


def room_exclusive(func):
    """
    Room lock decorator：確保狀態修改的原子性

    使用方式：
        @staticmethod
        @room_exclusive
        def lock_round(state: GameState, room_id: str, round_id: str):
            ...

    如果函式內發生異常：
        - 業務異常（JammingException）記 warning 後重新拋出
        - 其他異常記 error（含 traceback）後重新拋出

    注意：
        - 第一個參數必須是 state，第二個參數（或 kwargs）必須是 room_id
        - 函式必須先做完所有檢查再修改狀態，鎖不會幫忙 rollback
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        if len(args) >= 2:
            state, room_id = args[0], args[1]
        elif args and 'room_id' in kwargs:
            state, room_id = args[0], kwargs['room_id']
        else:
            raise ValueError(
                f"@room_exclusive requires (state, room_id, ...) arguments, "
                f"but got args={args}, kwargs={kwargs}"
            )

        with with_room_lock(state, room_id):
            try:
                return func(*args, **kwargs)
            except JammingException as e:
                logger.warning(f"{func.__name__} rejected for room {room_id}: {e}")
                raise
            except Exception as e:
                logger.error(f"{func.__name__} failed for room {room_id}: {e}", exc_info=True)
                raise

    return wrapper
