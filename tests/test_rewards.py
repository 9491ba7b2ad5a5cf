from decimal import Decimal

import pytest

from app.core.errors import InsufficientFunds, InvalidEvent, InvalidState, NotFound
from app.models import KillLog, Transaction, TransactionType, User, VipRoomType
from app.schemas.wallet import DepositWebhookPayload
from app.services import rewards as rewards_service
from app.services.deposits import handle_deposit_webhook
from app.services.rewards import process_kill_reward, process_respawn
from app.services.rooms import upsert_room_config
from app.services.tickets import check_access, consume_ticket
from app.services.wallet import confirmed_total, get_credit


def test_deposit_buy_consume_kill_and_replay(db, make_user, seat_player):
    payload = DepositWebhookPayload.model_validate(
        {
            "event": {
                "signature": "SIG1",
                "eventType": "DepositEvent",
                "success": True,
                "data": {"user": "KillerWallet111", "amount": "1000000"},
            }
        }
    )
    handle_deposit_webhook(db, payload, secret_header="test-webhook-secret")
    handle_deposit_webhook(db, payload, secret_header="test-webhook-secret")
    killer = db.query(User).filter(User.wallet_address == "KillerWallet111").one()
    assert get_credit(db, killer.id) == "1.000000"

    killer_ticket = check_access(db, killer.id)["ticket"]
    assert get_credit(db, killer.id) == "0.000000"
    consume_ticket(db, killer_ticket.id, "room-1")

    victim = make_user("VictimWallet111")
    victim_ticket = seat_player(victim, "room-1")

    first = process_kill_reward(db, killer_ticket.id, victim_ticket.id, "k-42", "room-1")
    assert first["already_processed"] is False
    assert first["reward_amount"] == "0.900000"
    assert first["fee_amount"] == "0.100000"
    assert first["killer_credit"] == "0.900000"
    assert first["victim_credit"] == "0.000000"

    second = process_kill_reward(db, killer_ticket.id, victim_ticket.id, "k-42", "room-1")
    assert second["already_processed"] is True
    assert second["reward_amount"] == "0.900000"
    assert second["fee_amount"] == "0.100000"
    assert second["kill_log"].id == first["kill_log"].id
    assert get_credit(db, killer.id) == "0.900000"

    assert db.query(KillLog).filter(KillLog.kill_reference == "k-42").count() == 1
    reward_txs = db.query(Transaction).filter(Transaction.reference_code == "kill:k-42").all()
    assert len(reward_txs) == 1
    assert reward_txs[0].tx_type == TransactionType.REWARD
    assert confirmed_total(db, killer.id) == Decimal("0.900000")
    assert confirmed_total(db, victim.id) == Decimal("0.000000")


def test_kill_requires_consumed_tickets_in_same_room(db, make_user, fund_user, seat_player):
    killer = make_user("KillerWallet222")
    victim = make_user("VictimWallet222")
    killer_ticket = seat_player(killer, "room-1")
    fund_user(victim, "1")
    victim_ticket = check_access(db, victim.id)["ticket"]

    with pytest.raises(InvalidState):
        process_kill_reward(db, killer_ticket.id, victim_ticket.id, "k-unconsumed", "room-1")

    consume_ticket(db, victim_ticket.id, "room-2")
    with pytest.raises(InvalidState):
        process_kill_reward(db, killer_ticket.id, victim_ticket.id, "k-mismatch", "room-1")

    assert db.query(KillLog).count() == 0
    assert get_credit(db, killer.id) == "0.000000"


def test_kill_rejects_bad_input(db, make_user, seat_player):
    killer = make_user("KillerWallet333")
    killer_ticket = seat_player(killer, "room-1")

    with pytest.raises(InvalidEvent):
        process_kill_reward(db, killer_ticket.id, killer_ticket.id + 1, "", "room-1")
    with pytest.raises(InvalidState):
        process_kill_reward(db, killer_ticket.id, killer_ticket.id, "k-self", "room-1")
    with pytest.raises(NotFound):
        process_kill_reward(db, killer_ticket.id, 999999, "k-missing", "room-1")


def test_kill_fee_goes_to_treasury_when_configured(db, make_user, seat_player, monkeypatch):
    monkeypatch.setattr(rewards_service.settings, "treasury_wallet_address", "TreasuryWallet111")
    killer = make_user("KillerWallet444")
    victim = make_user("VictimWallet444")
    killer_ticket = seat_player(killer, "room-1")
    victim_ticket = seat_player(victim, "room-1")

    process_kill_reward(db, killer_ticket.id, victim_ticket.id, "k-treasury", "room-1")

    treasury = db.query(User).filter(User.wallet_address == "TreasuryWallet111").one()
    fee_tx = db.query(Transaction).filter(Transaction.reference_code == "kill-fee:k-treasury").one()
    assert fee_tx.user_id == treasury.id
    assert fee_tx.tx_type == TransactionType.SYSTEM_ADJUST
    assert get_credit(db, treasury.id) == "0.100000"
    assert confirmed_total(db, treasury.id) == Decimal("0.100000")


def test_respawn_with_zero_cost_is_free(db, make_user, seat_player):
    user = make_user("RespawnWallet111")
    ticket = seat_player(user, "room-1", extra_credit="2")

    result = process_respawn(db, ticket.id)

    assert result == {"credit": "2.000000", "cost": "0.000000", "transaction": None}


def test_respawn_debits_cost(db, make_user, seat_player):
    upsert_room_config(db, VipRoomType.SNAKE_VIP, respawn_cost="0.5")
    user = make_user("RespawnWallet222")
    ticket = seat_player(user, "room-1", extra_credit="2")

    result = process_respawn(db, ticket.id)

    assert result["cost"] == "0.500000"
    assert result["credit"] == "1.500000"
    tx = result["transaction"]
    assert tx.tx_type == TransactionType.PENALTY
    assert tx.reference_code.startswith(f"respawn:{ticket.id}:")
    assert confirmed_total(db, user.id) == Decimal("1.500000")


def test_respawn_denied_without_credit(db, make_user, seat_player):
    upsert_room_config(db, VipRoomType.SNAKE_VIP, respawn_cost="0.5")
    user = make_user("RespawnWallet333")
    ticket = seat_player(user, "room-1", extra_credit="0.25")

    with pytest.raises(InsufficientFunds):
        process_respawn(db, ticket.id)

    assert get_credit(db, user.id) == "0.250000"
    assert db.query(Transaction).filter(Transaction.reference_code.like(f"respawn:{ticket.id}:%")).count() == 0


def test_respawn_requires_consumed_ticket(db, make_user, fund_user):
    user = make_user("RespawnWallet444")
    fund_user(user, "3")
    ticket = check_access(db, user.id)["ticket"]

    with pytest.raises(InvalidState):
        process_respawn(db, ticket.id)


def test_victim_ticket_funds_only_one_paying_kill(db, make_user, seat_player):
    killer = make_user("KillerWallet555")
    victim = make_user("VictimWallet555")
    killer_ticket = seat_player(killer, "room-1")
    victim_ticket = seat_player(victim, "room-1")

    results = [
        process_kill_reward(db, killer_ticket.id, victim_ticket.id, f"k-repeat-{n}", "room-1") for n in range(5)
    ]

    assert [r["reward_amount"] for r in results] == ["0.900000"] + ["0.000000"] * 4
    assert all(r["already_processed"] is False for r in results)
    assert results[1]["kill_log"].meta["funded_by_entry_fee"] is False
    assert db.query(KillLog).filter(KillLog.victim_ticket_id == victim_ticket.id).count() == 5
    assert db.query(Transaction).filter(Transaction.tx_type == TransactionType.REWARD).count() == 1

    # Paid out never exceeds the entry fee the victim spent.
    assert get_credit(db, killer.id) == "0.900000"
    assert confirmed_total(db, killer.id) <= Decimal("1.000000")
    assert get_credit(db, victim.id) == "0.000000"


def test_replay_before_locking_leaves_no_open_transaction(db, make_user, seat_player):
    killer = make_user("KillerWallet666")
    victim = make_user("VictimWallet666")
    killer_ticket = seat_player(killer, "room-1")
    victim_ticket = seat_player(victim, "room-1")
    process_kill_reward(db, killer_ticket.id, victim_ticket.id, "k-replay", "room-1")

    replay = process_kill_reward(db, killer_ticket.id, victim_ticket.id, "k-replay", "room-1")

    assert replay["already_processed"] is True
    assert replay["killer_credit"] == "0.900000"
    assert not db.in_transaction()


def test_concurrent_duplicate_kill_returns_stored_result(db, make_user, seat_player, monkeypatch):
    killer = make_user("KillerWallet777")
    victim = make_user("VictimWallet777")
    killer_ticket = seat_player(killer, "room-1")
    victim_ticket = seat_player(victim, "room-1")
    first = process_kill_reward(db, killer_ticket.id, victim_ticket.id, "k-race", "room-1")

    # Both lookups miss, as if the other delivery committed right after them.
    real_find = rewards_service._find_kill_log
    calls = []

    def find_after_two_misses(session, kill_reference):
        calls.append(kill_reference)
        if len(calls) <= 2:
            return None
        return real_find(session, kill_reference)

    monkeypatch.setattr(rewards_service, "_find_kill_log", find_after_two_misses)

    second = process_kill_reward(db, killer_ticket.id, victim_ticket.id, "k-race", "room-1")

    assert second["already_processed"] is True
    assert second["kill_log"].id == first["kill_log"].id
    assert second["reward_amount"] == "0.900000"
    assert get_credit(db, killer.id) == "0.900000"
    assert db.query(KillLog).filter(KillLog.kill_reference == "k-race").count() == 1
    assert db.query(Transaction).filter(Transaction.reference_code == "kill:k-race").count() == 1
