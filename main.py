from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

import models  # noqa: F401  註冊 SQLAlchemy tables
from database import Base, engine, get_settings
from api import rooms, rounds


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: 開啟 SQL 鏡像時才建立資料庫表
    if get_settings().mirror_enabled:
        Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(
    title="Jamming Beat Prediction API",
    description="Commit-reveal beat prediction rounds with deterministic settlement",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure this properly in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(rooms.router)
app.include_router(rounds.router)


@app.get("/")
def root():
    return {"message": "Jamming Beat Prediction API", "status": "ok"}


@app.get("/health")
def health():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
