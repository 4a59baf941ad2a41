"""
自定義異常類別

集中管理所有業務邏輯異常，方便 API 層統一處理

分類：
- ValidationError：輸入不合法（pattern / stake / guess），呼叫者的錯
- NotFound：房間、回合或結算不存在
- ConflictError：狀態衝突（重複預測、已結算、已提交 commitment）
- InvalidPhaseTransition：目前階段不允許此操作
"""


class JammingException(Exception):
    """所有遊戲異常的基類"""
    pass


class ValidationError(JammingException):
    """輸入資料不合法（pattern、stake、guess 等）"""
    pass


# ============ 查詢相關異常 ============

class NotFound(JammingException):
    """資源不存在"""
    pass


class RoomNotFound(NotFound):
    """房間不存在"""
    def __init__(self, room_id):
        self.room_id = room_id
        super().__init__(f"Room not found: {room_id}")


class RoundNotFound(NotFound):
    """回合不存在（或不屬於該房間）"""
    def __init__(self, round_id):
        self.round_id = round_id
        super().__init__(f"Round not found: {round_id}")


class SettlementNotFound(NotFound):
    """回合尚未結算"""
    def __init__(self, round_id):
        self.round_id = round_id
        super().__init__(f"Settlement results not found for round {round_id}")


# ============ 衝突相關異常 ============

class ConflictError(JammingException):
    """狀態衝突，呼叫者必須先處理狀態再重試"""
    pass


class UnsettledRoundExists(ConflictError):
    """房間內還有未結算的回合"""
    pass


class CommitmentAlreadySubmitted(ConflictError):
    """此回合已經提交過 commitment"""
    pass


class DuplicatePrediction(ConflictError):
    """同一錢包對同一個 (track, step) 重複預測"""
    pass


class RoundAlreadySettled(ConflictError):
    """回合已經結算過了"""
    pass


# ============ 狀態轉換異常 ============

class InvalidPhaseTransition(JammingException):
    """非法的階段轉換"""
    pass
