import pytest
from fastapi.testclient import TestClient

from core.game_state import GameState, get_game_state
from main import app
from services.mirror_service import PersistenceMirror, get_mirror


@pytest.fixture
def state() -> GameState:
    return GameState()


@pytest.fixture
def client(state: GameState):
    """TestClient bound to a fresh GameState with the SQL mirror switched off."""
    app.dependency_overrides[get_game_state] = lambda: state
    app.dependency_overrides[get_mirror] = lambda: PersistenceMirror(enabled=False)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
