"""
API 層

FastAPI routers，只負責請求轉換與錯誤對應，業務邏輯都在 core/
"""
