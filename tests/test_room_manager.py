import pytest

from core.exceptions import RoomNotFound, ValidationError
from core.room_manager import RoomManager
from models import RoomStatus, RoundPhase
from tests.factories import WALLET_A, open_round


class TestCreateRoom:
    def test_creates_room_with_code(self, state):
        room = RoomManager.create_room(state, title="Friday Jam", artist_wallet=WALLET_A)

        assert room.id.startswith("room_")
        assert len(room.code) == 6
        assert room.code.isupper()
        assert room.status == RoomStatus.ACTIVE
        assert room.state_version == 0
        assert state.room_codes[room.code] == room.id

    def test_regenerates_code_on_collision(self, state, monkeypatch):
        codes = iter(["AAAAAA", "AAAAAA", "BBBBBB"])
        monkeypatch.setattr("core.room_manager.generate_room_code", lambda: next(codes))

        first = RoomManager.create_room(state, title="One")
        second = RoomManager.create_room(state, title="Two")

        assert first.code == "AAAAAA"
        assert second.code == "BBBBBB"

    @pytest.mark.parametrize("title", ["", "x" * 81])
    def test_rejects_invalid_title(self, state, title):
        with pytest.raises(ValidationError):
            RoomManager.create_room(state, title=title)
        assert state.rooms == {}


class TestLookup:
    def test_by_code_is_case_insensitive(self, state):
        room = RoomManager.create_room(state, title="Jam")

        assert RoomManager.get_room_by_code(state, f" {room.code.lower()} ") is room

    def test_unknown_code(self, state):
        with pytest.raises(RoomNotFound):
            RoomManager.get_room_by_code(state, "ZZZZZZ")

    def test_unknown_id(self, state):
        with pytest.raises(RoomNotFound):
            RoomManager.get_room_by_id(state, "room_missing")
        with pytest.raises(RoomNotFound):
            RoomManager.get_room_view(state, "room_missing")


class TestMetadata:
    def test_updates_only_given_fields(self, state):
        room = RoomManager.create_room(state, title="Jam", artist_handle="dj")

        RoomManager.update_room_metadata(state, room.id, artist_profile_url="https://example.com/dj")

        assert room.artist_handle == "dj"
        assert room.artist_profile_url == "https://example.com/dj"
        assert room.state_version == 1

    def test_none_clears_field(self, state):
        room = RoomManager.create_room(state, title="Jam", artist_handle="dj")

        RoomManager.update_room_metadata(state, room.id, artist_handle=None)

        assert room.artist_handle is None


class TestSnapshots:
    def test_view_without_round(self, state):
        room = RoomManager.create_room(state, title="Jam")

        view = RoomManager.get_room_view(state, room.id)

        assert view.code == room.code
        assert view.current_round is None

    def test_state_tracks_current_round(self, state):
        room, round_obj, _ = open_round(state)

        snapshot = RoomManager.get_room_state(state, room.id)

        assert snapshot.state_version == room.state_version
        assert snapshot.current_round.id == round_obj.id
        assert snapshot.current_round.phase == RoundPhase.PREDICTION_OPEN
