"""
服務層

這個 package 包含純計算邏輯，不負責狀態轉換：
- PatternService：pattern 正規化與 commitment hash
- SettlementService：stake 拆分與 winner pot 分配
- RoundPhaseService：階段轉換規則
- NamingService：房間代碼與 ID 生成
- StateService：短輪詢的 state_version
- MirrorService：SQL 鏡像（best-effort）
"""
