"""
核心業務邏輯層

這個 package 包含所有狀態與狀態轉換，包括：
- GameState：記憶體中的房間與回合（唯一權威）
- 狀態機：集中管理所有回合階段轉換
- Manager：管理 Room 和 Round 的生命週期
- Locks：並發控制工具
"""
