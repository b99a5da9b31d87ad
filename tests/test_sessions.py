import threading
import uuid
from unittest.mock import MagicMock

import pytest

from coinclash.core.exceptions import (
    AlreadyFlippedError,
    NotAParticipantError,
    NotFoundError,
    ValidationError,
)
from coinclash.core.matchmaking import Matchmaker
from coinclash.core.sessions import GameSessions


@pytest.fixture
def matched(database, make_user):
    """A waiting session between x (heads, player1) and y (tails, player2)."""
    x = make_user("playerx", balance=100)
    y = make_user("playery", balance=100)
    queue = Matchmaker(database)
    queue.submit_choice(x["id"], "playerx", "heads", 20)
    result = queue.submit_choice(y["id"], "playery", "tails", 20)
    return result["session_id"], x, y


def fixed_rng(side):
    source = MagicMock()
    source.coin_flip.return_value = side
    return source


def test_flip_resolves_session(database, matched):
    session_id, x, y = matched
    sessions = GameSessions(database)

    result = sessions.execute_flip(session_id, x["id"])
    session = result["session"]

    assert result["success"] is True
    assert session["status"] == "completed"
    assert session["flip_result"] in ("heads", "tails")
    assert session["winner_id"] in (x["id"], y["id"])
    winner_choice = session["player1_choice"] if session["winner_id"] == x["id"] else session["player2_choice"]
    assert winner_choice == session["flip_result"]
    assert session["flipped_at"] and session["completed_at"]


@pytest.mark.parametrize("side,winner", [("heads", "x"), ("tails", "y")])
def test_player1_wins_when_result_matches_choice(database, matched, side, winner):
    session_id, x, y = matched
    sessions = GameSessions(database, random_source=fixed_rng(side))

    result = sessions.execute_flip(session_id, y["id"])

    expected = x if winner == "x" else y
    assert result["winner_id"] == expected["id"]
    assert result["flip_result"] == side


def test_second_flip_observes_first_result(database, matched):
    session_id, x, y = matched
    sessions = GameSessions(database)
    first = sessions.execute_flip(session_id, x["id"])

    with pytest.raises(AlreadyFlippedError) as exc:
        sessions.execute_flip(session_id, y["id"])

    stored = exc.value.details["session"]
    assert stored["flip_result"] == first["flip_result"]
    assert stored["winner_id"] == first["winner_id"]
    assert exc.value.status_code == 409


def test_concurrent_flips_one_winner(database, matched):
    session_id, x, y = matched
    sessions = GameSessions(database)
    barrier = threading.Barrier(2)
    outcomes = {}

    def flip(user):
        barrier.wait()
        try:
            outcomes[user["id"]] = sessions.execute_flip(session_id, user["id"])
        except AlreadyFlippedError as e:
            outcomes[user["id"]] = e
        finally:
            database.close()

    threads = [threading.Thread(target=flip, args=(user,)) for user in (x, y)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    successes = [o for o in outcomes.values() if isinstance(o, dict)]
    races_lost = [o for o in outcomes.values() if isinstance(o, AlreadyFlippedError)]
    assert len(successes) == 1
    assert len(races_lost) == 1
    assert races_lost[0].details["session"]["flip_result"] == successes[0]["flip_result"]
    assert races_lost[0].details["session"]["winner_id"] == successes[0]["winner_id"]


def test_outsider_cannot_flip_or_read(database, matched, make_user):
    session_id, _, _ = matched
    outsider = make_user(balance=100)
    sessions = GameSessions(database)

    with pytest.raises(NotAParticipantError):
        sessions.execute_flip(session_id, outsider["id"])
    with pytest.raises(NotAParticipantError):
        sessions.get(session_id, outsider["id"])
    assert sessions.get(session_id, matched[1]["id"])["status"] == "waiting"


def test_unknown_and_malformed_session_ids(database, make_user):
    user = make_user()
    sessions = GameSessions(database)

    with pytest.raises(NotFoundError):
        sessions.execute_flip(str(uuid.uuid4()), user["id"])
    with pytest.raises(ValidationError):
        sessions.execute_flip("not-a-uuid", user["id"])
