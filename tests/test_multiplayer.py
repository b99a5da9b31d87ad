from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from coinclash.core.database import parse_iso
from coinclash.core.exceptions import (
    InsufficientFundsError,
    NotFoundError,
    RoundClosedError,
    ValidationError,
)
from coinclash.core.multiplayer import MultiplayerRounds, split_pool


def winner_rng(side):
    source = MagicMock()
    source.random_choice.return_value = side
    return source


@pytest.fixture
def rounds(database, ledger):
    return MultiplayerRounds(database, ledger, random_source=winner_rng("king"))


def after_close(round_):
    return parse_iso(round_["ends_at"]) + timedelta(seconds=1)


def platform_balance(database, ledger):
    return ledger.get_wallet(database.get_platform_user()["id"])["balance"]


def test_current_round_is_opened_once(rounds):
    first = rounds.get_current_round()
    again = rounds.get_current_round()

    assert first["round_number"] == 1
    assert first["status"] == "betting"
    assert again["id"] == first["id"]
    duration = parse_iso(first["ends_at"]) - parse_iso(first["started_at"])
    assert duration == timedelta(seconds=120)


def test_one_sided_round_is_cancelled_and_refunded(database, ledger, rounds, make_user):
    round_ = rounds.get_current_round()
    bettors = [make_user(balance=500) for _ in range(3)]
    for user in bettors:
        rounds.place_bet(round_["id"], user["id"], user["username"], "king", 100)

    assert rounds.get_round(round_["id"])["king_total"] == 300
    assert all(ledger.get_wallet(u["id"])["balance"] == 400 for u in bettors)

    completed = rounds.complete_round(round_["id"], now=after_close(round_))

    assert completed["status"] == "cancelled"
    assert completed["winner"] is None
    assert all(ledger.get_wallet(u["id"])["balance"] == 500 for u in bettors)
    bets = rounds.get_round_bets(round_["id"])
    assert sum(b["payout"] for b in bets) == 300
    assert {b["status"] for b in bets} == {"refunded"}
    assert platform_balance(database, ledger) == 0
    refunds = [ledger.get_transactions(u["id"], limit=1)[0] for u in bettors]
    assert all(tx["type"] == "refund" and tx["amount"] == 100 for tx in refunds)


def test_two_sided_round_splits_losing_pool(database, ledger, rounds, make_user):
    round_ = rounds.get_current_round()
    k1, k2 = make_user(balance=1000), make_user(balance=1000)
    t1, t2, t3 = make_user(balance=1000), make_user(balance=1000), make_user(balance=1000)
    rounds.place_bet(round_["id"], k1["id"], k1["username"], "king", 60)
    rounds.place_bet(round_["id"], k2["id"], k2["username"], "king", 40)
    for user, amount in ((t1, 50), (t2, 70), (t3, 80)):
        rounds.place_bet(round_["id"], user["id"], user["username"], "tail", amount)

    before = rounds.get_round(round_["id"])
    assert (before["king_total"], before["tail_total"]) == (100, 200)

    completed = rounds.complete_round(round_["id"], now=after_close(round_))

    assert completed["status"] == "completed"
    assert completed["winner"] == "king"
    assert completed["platform_fee"] == 10
    # 200 losing pool - 5% fee = 190, split 60:40
    assert ledger.get_wallet(k1["id"])["balance"] == 1000 - 60 + 174
    assert ledger.get_wallet(k2["id"])["balance"] == 1000 - 40 + 116
    for user, amount in ((t1, 50), (t2, 70), (t3, 80)):
        assert ledger.get_wallet(user["id"])["balance"] == 1000 - amount

    bets = {b["user_id"]: b for b in rounds.get_round_bets(round_["id"])}
    assert bets[t1["id"]]["payout"] == 0
    assert bets[t1["id"]]["status"] == "lost"
    assert bets[k1["id"]]["status"] == "won"
    total_paid = sum(b["payout"] for b in bets.values())
    assert total_paid <= 300 - 10
    assert platform_balance(database, ledger) == 10
    assert ledger.get_stats(k1["id"])["games_won"] == 1
    assert ledger.get_stats(t1["id"])["games_lost"] == 1


def test_complete_round_is_idempotent(database, ledger, rounds, make_user):
    round_ = rounds.get_current_round()
    k, t = make_user(balance=100), make_user(balance=100)
    rounds.place_bet(round_["id"], k["id"], k["username"], "king", 10)
    rounds.place_bet(round_["id"], t["id"], t["username"], "tail", 10)
    now = after_close(round_)

    first = rounds.complete_round(round_["id"], now=now)
    second = rounds.complete_round(round_["id"], now=now)

    assert first == second
    assert ledger.get_wallet(k["id"])["balance"] == 100 - 10 + 19.5
    assert len([tx for tx in ledger.get_transactions(k["id"]) if tx["type"] == "win"]) == 1


def test_round_left_flipping_is_finished_by_sweep(database, ledger, rounds, make_user):
    round_ = rounds.get_current_round()
    k, t = make_user(balance=100), make_user(balance=100)
    rounds.place_bet(round_["id"], k["id"], k["username"], "king", 10)
    rounds.place_bet(round_["id"], t["id"], t["username"], "tail", 10)
    now = after_close(round_)

    assert rounds._close_betting(round_["id"], now) == "flipping"
    assert rounds.get_round(round_["id"])["status"] == "flipping"

    finished = rounds.complete_expired_rounds(now=now)
    assert [r["status"] for r in finished] == ["completed"]


def test_cannot_complete_open_round(rounds):
    round_ = rounds.get_current_round()
    with pytest.raises(ValidationError):
        rounds.complete_round(round_["id"])


def test_bet_guards(ledger, rounds, make_user):
    round_ = rounds.get_current_round()
    user = make_user(balance=50)

    with pytest.raises(InsufficientFundsError):
        rounds.place_bet(round_["id"], user["id"], user["username"], "king", 60)
    assert ledger.get_wallet(user["id"])["balance"] == 50
    assert rounds.get_round(round_["id"])["king_total"] == 0

    with pytest.raises(ValidationError):
        rounds.place_bet(round_["id"], user["id"], user["username"], "heads", 10)
    with pytest.raises(ValidationError):
        rounds.place_bet(round_["id"], user["id"], user["username"], "king", 0.5)
    with pytest.raises(NotFoundError):
        rounds.place_bet("missing", user["id"], user["username"], "king", 10)
    with pytest.raises(RoundClosedError):
        rounds.place_bet(round_["id"], user["id"], user["username"], "king", 10, now=after_close(round_))


def test_fractional_bet_is_rejected(ledger, rounds, make_user):
    round_ = rounds.get_current_round()
    user = make_user(balance=50)

    for amount in (10.55, 1.5, "10", True):
        with pytest.raises(ValidationError):
            rounds.place_bet(round_["id"], user["id"], user["username"], "king", amount)

    assert ledger.get_wallet(user["id"])["balance"] == 50
    assert rounds.get_round_bets(round_["id"]) == []

    result = rounds.place_bet(round_["id"], user["id"], user["username"], "king", 10.0)
    assert result["bet"]["amount"] == 10
    assert result["balance"] == 40


def test_repeat_bets_accumulate_on_one_side(ledger, rounds, make_user):
    round_ = rounds.get_current_round()
    user = make_user(balance=100)
    rounds.place_bet(round_["id"], user["id"], user["username"], "tail", 10)
    result = rounds.place_bet(round_["id"], user["id"], user["username"], "tail", 15)

    assert result["bet"]["amount"] == 25
    assert result["round"]["tail_total"] == 25
    assert result["balance"] == 75
    assert len(rounds.get_round_bets(round_["id"])) == 1

    with pytest.raises(ValidationError):
        rounds.place_bet(round_["id"], user["id"], user["username"], "king", 5)


def test_next_round_waits_for_cooldown(rounds):
    round_ = rounds.get_current_round()
    closed = rounds.complete_round(round_["id"], now=after_close(round_))
    assert closed["status"] == "cancelled"
    closed_at = parse_iso(closed["completed_at"])

    during = rounds.get_current_round(now=closed_at + timedelta(seconds=2))
    assert during["id"] == round_["id"]
    assert "next_round_at" in during

    fresh, opened = rounds.open_round_if_due(now=closed_at + timedelta(seconds=6))
    assert opened is True
    assert fresh["round_number"] == 2
    assert fresh["status"] == "betting"


def test_split_pool_floors_to_cents_and_keeps_remainder():
    bets = [
        {"id": "a", "side": "king", "amount": 1},
        {"id": "b", "side": "king", "amount": 1},
        {"id": "c", "side": "king", "amount": 1},
        {"id": "d", "side": "tail", "amount": 1},
    ]
    payouts, platform_cut = split_pool(bets, "king", 5.0)

    assert payouts == {"a": 1.31, "b": 1.31, "c": 1.31}
    assert platform_cut == 0.07
    assert round(sum(payouts.values()) + platform_cut, 2) == 4
