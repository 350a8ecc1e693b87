import logging

from minereplay.persistence import InMemoryPersistence
from minereplay.replay import replay_game
from minereplay.session import GameSession


class BrokenPersistence(InMemoryPersistence):
    def save_move(self, game_id, move):
        raise RuntimeError("store down")


def lose(session):
    session.reveal(0, 0)
    x, y = session.engine.mines[0]
    return session.reveal(x, y)


def test_finished_game_is_saved_once_with_all_moves():
    store = InMemoryPersistence()
    session = GameSession("alice", 6, 20, rng_seed=4)
    assert session.needs_save is False
    result = lose(session)
    assert result.outcome == "exploded"
    assert session.finished and session.needs_save

    game_id = session.save(store)
    assert game_id == "1"
    assert session.game_id == "1" and session.save_error is None
    assert session.needs_save is False
    assert session.save(store) == "1"
    assert len(store.games) == 1

    record = store.get_game_record(game_id)
    assert record.player_label == "alice"
    assert record.final_result == "lose"
    assert record.moves == session.engine.moves
    assert replay_game(record).board_snapshot() == session.engine.board_snapshot()


def test_save_failure_is_reported_and_keeps_state(caplog):
    store = BrokenPersistence()
    session = GameSession("bob", 6, 20, rng_seed=9)
    lose(session)
    snapshot = session.engine.board_snapshot()
    moves = session.engine.moves

    with caplog.at_level(logging.WARNING, logger="minereplay.session"):
        assert session.save(store) is None
    assert session.save_error == "store down"
    assert session.game_id is None
    # the header written before the failing move was rolled back
    assert store.list_game_records() == []
    assert store.get_game_record("1") is None
    assert "save failed" in caplog.text
    assert session.engine.board_snapshot() == snapshot
    assert session.engine.moves == moves
    assert session.status == "lost"
    # no automatic retry
    assert session.needs_save is False


def test_abandon_records_in_progress_game():
    store = InMemoryPersistence()
    session = GameSession("carol", 8, 30, rng_seed=1)
    session.reveal(4, 4)
    session.abandon()
    assert session.status == "abandoned"
    assert session.finished
    assert session.reveal(0, 0).outcome == "invalid"
    assert session.toggle_flag(0, 0) is False

    game_id = session.save(store)
    record = store.get_game_record(game_id)
    assert record.final_result == "in_progress"
    assert len(record.moves) == 1
    engine = replay_game(record)
    assert engine.status == "in_progress"
    assert engine.board_snapshot() == session.engine.board_snapshot()


def test_abandon_after_game_over_keeps_result():
    session = GameSession("dave", 5, 15, rng_seed=2)
    lose(session)
    session.abandon()
    assert session.abandoned is False
    assert session.status == "lost"


def test_to_client_view():
    session = GameSession("erin", 5, 3, rng_seed=3)
    session.toggle_flag(4, 4)
    view = session.to_client()
    assert view["status"] == "not_started"
    assert view["board"][4][4] == "F"
    assert view["flags_total"] == 1
    assert view["moves_count"] == 0
    assert view["end_result"] is None
    session.reveal(0, 0)
    view = session.to_client()
    assert view["moves"][0]["move_number"] == 1
    assert view["revealed_total"] >= 1
    assert view["saved_game_id"] is None
