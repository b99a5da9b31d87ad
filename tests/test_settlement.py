from unittest.mock import MagicMock

import pytest

from coinclash.core.exceptions import (
    AlreadySettledError,
    InsufficientFundsError,
    NotAParticipantError,
    ValidationError,
)
from coinclash.core.matchmaking import Matchmaker
from coinclash.core.sessions import GameSessions
from coinclash.core.settlement import SettlementEngine


@pytest.fixture
def engine(database, ledger):
    return SettlementEngine(database, ledger)


def play(database, x, y, result_side="tails", stake=20):
    """Match x (heads) against y (tails) and flip to ``result_side``."""
    queue = Matchmaker(database)
    queue.submit_choice(x["id"], x["username"], "heads", stake)
    session_id = queue.submit_choice(y["id"], y["username"], "tails", stake)["session_id"]
    source = MagicMock()
    source.coin_flip.return_value = result_side
    GameSessions(database, random_source=source).execute_flip(session_id, x["id"])
    return session_id


def test_settled_pair_moves_stake_from_loser_to_winner(database, ledger, engine, make_user):
    x = make_user("playerx", balance=100)
    y = make_user("playery", balance=100)
    session_id = play(database, x, y, "tails")

    y_result = engine.settle_session(session_id, y["id"])
    x_result = engine.settle_session(session_id, x["id"])

    assert y_result["result"] == "win"
    assert y_result["balance"] == 120
    assert x_result["result"] == "loss"
    assert x_result["balance"] == 80

    y_tx = ledger.get_transactions(y["id"], limit=1)[0]
    x_tx = ledger.get_transactions(x["id"], limit=1)[0]
    assert (y_tx["type"], y_tx["amount"], y_tx["balance_after"]) == ("win", 40, 120)
    assert (x_tx["type"], x_tx["amount"], x_tx["balance_after"]) == ("loss", 20, 80)
    assert (y_tx["balance_after"] - 100) + (x_tx["balance_after"] - 100) == 0
    assert y_tx["game_details"]["opponent"] == "playerx"
    assert y_tx["game_details"]["flip_result"] == "tails"


def test_stats_follow_results(database, ledger, engine, make_user):
    x = make_user(balance=100)
    y = make_user(balance=100)
    session_id = play(database, x, y, "heads")
    engine.settle_session(session_id, x["id"])
    engine.settle_session(session_id, y["id"])

    winner = ledger.get_stats(x["id"])
    loser = ledger.get_stats(y["id"])
    assert (winner["total_games"], winner["games_won"], winner["games_lost"]) == (1, 1, 0)
    assert winner["total_wagered"] == 20
    assert winner["total_winnings"] == 40
    assert winner["net_profit"] == 20
    assert winner["win_rate"] == 100
    assert (loser["games_won"], loser["games_lost"], loser["net_profit"], loser["win_rate"]) == (0, 1, -20, 0)


def test_win_rate_over_several_games(engine, ledger, make_user):
    user = make_user(balance=100)
    engine.settle_game(user["id"], "1v1", "win", 10, game_ref="g1")
    engine.settle_game(user["id"], "1v1", "loss", 10, game_ref="g2")
    engine.settle_game(user["id"], "1v1", "loss", 10, game_ref="g3")

    stats = ledger.get_stats(user["id"])
    assert stats["total_games"] == 3
    assert stats["win_rate"] == 33.33
    assert ledger.get_wallet(user["id"])["balance"] == 90


def test_repeat_settlement_applies_once(database, ledger, engine, make_user):
    x, y = make_user(balance=100), make_user(balance=100)
    session_id = play(database, x, y, "tails")
    engine.settle_session(session_id, y["id"])

    with pytest.raises(AlreadySettledError):
        engine.settle_session(session_id, y["id"])

    assert ledger.get_wallet(y["id"])["balance"] == 120
    assert ledger.get_stats(y["id"])["total_games"] == 1


def test_failed_settlement_leaves_no_partial_state(database, ledger, engine, make_user):
    user = make_user(balance=10)
    before = ledger.get_transactions(user["id"])

    with pytest.raises(InsufficientFundsError):
        engine.settle_game(user["id"], "1v1", "loss", 20, game_ref="broke")

    assert ledger.get_wallet(user["id"])["balance"] == 10
    assert ledger.get_transactions(user["id"]) == before
    assert ledger.get_stats(user["id"])["total_games"] == 0


def test_custom_won_amount(engine, make_user):
    user = make_user(balance=50)
    result = engine.settle_game(user["id"], "multiplayer", "win", 10, won_amount=25, game_ref="r1")
    assert result["balance"] == 65


def test_settlement_guards(database, engine, make_user):
    x, y, outsider = make_user(balance=100), make_user(balance=100), make_user(balance=100)
    queue = Matchmaker(database)
    queue.submit_choice(x["id"], x["username"], "heads", 20)
    session_id = queue.submit_choice(y["id"], y["username"], "tails", 20)["session_id"]

    with pytest.raises(ValidationError):
        engine.settle_session(session_id, x["id"])
    with pytest.raises(NotAParticipantError):
        engine.settle_session(session_id, outsider["id"])
    with pytest.raises(ValidationError):
        engine.settle_game(x["id"], "1v1", "draw", 20)


def test_sweep_settles_missing_participants(database, ledger, engine, make_user):
    x = make_user(balance=100)
    y = make_user(balance=100)
    session_id = play(database, x, y, "heads")
    engine.settle_session(session_id, x["id"])

    swept = engine.settle_pending_sessions()

    assert [(s["session_id"], s["user_id"]) for s in swept] == [(session_id, y["id"])]
    assert ledger.get_wallet(y["id"])["balance"] == 80
    assert engine.settle_pending_sessions() == []
    with pytest.raises(AlreadySettledError):
        engine.settle_session(session_id, y["id"])


def test_one_balance_cannot_back_two_sessions(database, ledger, engine, make_user):
    alice = make_user(balance=20)
    bob, carol = make_user(balance=100), make_user(balance=100)
    queue = Matchmaker(database, ledger)

    queue.submit_choice(bob["id"], bob["username"], "tails", 20)
    session_id = queue.submit_choice(alice["id"], alice["username"], "heads", 20)["session_id"]
    carol_entry = queue.submit_choice(carol["id"], carol["username"], "tails", 20)

    with pytest.raises(InsufficientFundsError):
        queue.submit_choice(alice["id"], alice["username"], "heads", 20)
    wallet = ledger.get_wallet(alice["id"])
    assert (wallet["balance"], wallet["locked_balance"]) == (0, 20)

    source = MagicMock()
    source.coin_flip.return_value = "tails"
    GameSessions(database, random_source=source).execute_flip(session_id, alice["id"])
    swept = engine.settle_pending_sessions()
    queue.cancel(carol_entry["queue_entry_id"], carol["id"])

    assert {s["user_id"]: s["result"] for s in swept} == {alice["id"]: "loss", bob["id"]: "win"}
    wallets = [ledger.get_wallet(u["id"]) for u in (alice, bob, carol)]
    assert [w["balance"] for w in wallets] == [0, 120, 100]
    assert sum(w["balance"] for w in wallets) == 220
    assert all(w["locked_balance"] == 0 for w in wallets)
    assert engine.settle_pending_sessions() == []
