from datetime import timedelta
from decimal import Decimal

import pytest

from app.core.errors import AlreadyConsumed, InvalidState, NotFound, TicketCancelled, TicketExpired, Unauthorized
from app.models import Transaction, TransactionStatus, VipRoomType, VipTicket, VipTicketStatus, WalletBalance
from app.models.base import utcnow
from app.models.vip_ticket import TICKET_TRANSITIONS
from app.services.rooms import upsert_room_config
from app.services.tickets import (
    cancel_ticket,
    check_access,
    consume_ticket,
    expire_stale_tickets,
    validate_ticket,
)
from app.services.wallet import confirmed_total, get_credit


def _balance(db, user_id):
    return db.query(WalletBalance).filter(WalletBalance.user_id == user_id).one()


def _age_ticket(db, ticket):
    ticket.expires_at = utcnow() - timedelta(minutes=1)
    db.commit()


def test_check_access_issues_ticket_and_holds_fee(db, make_user, fund_user):
    user = make_user("TicketWallet111")
    fund_user(user, "5")

    result = check_access(db, user.id)

    assert result["can_join"] is True
    assert result["credit"] == "4.000000"
    ticket = result["ticket"]
    assert ticket.status == VipTicketStatus.ISSUED
    assert ticket.entry_fee == Decimal("1")
    entry_tx = db.get(Transaction, ticket.entry_transaction_id)
    assert entry_tx.reference_code == f"vip-entry:{ticket.ticket_code}"
    assert entry_tx.status == TransactionStatus.CONFIRMED
    assert _balance(db, user.id).locked_amount == Decimal("1")
    assert confirmed_total(db, user.id) == Decimal("4.000000")


def test_check_access_returns_live_ticket_instead_of_charging_twice(db, make_user, fund_user):
    user = make_user("TicketWallet222")
    fund_user(user, "5")

    first = check_access(db, user.id)
    second = check_access(db, user.id)

    assert second["ticket"].id == first["ticket"].id
    assert get_credit(db, user.id) == "4.000000"
    assert db.query(VipTicket).filter(VipTicket.user_id == user.id).count() == 1


def test_check_access_insufficient_credit(db, make_user, fund_user):
    user = make_user("TicketWallet333")
    fund_user(user, "0.5")

    result = check_access(db, user.id)

    assert result["can_join"] is False
    assert result["reason"] == "Insufficient credit to join VIP room"
    assert result["credit"] == "0.500000"
    assert db.query(VipTicket).count() == 0


def test_check_access_inactive_room(db, make_user, fund_user):
    user = make_user("TicketWallet444")
    fund_user(user, "5")
    upsert_room_config(db, VipRoomType.SNAKE_VIP, is_active=False)

    result = check_access(db, user.id)

    assert result["can_join"] is False
    assert "not active" in result["reason"]
    assert get_credit(db, user.id) == "5.000000"


def test_consume_is_idempotent_for_same_room_instance(db, make_user, fund_user):
    user = make_user("TicketWallet555")
    fund_user(user, "5")
    ticket = check_access(db, user.id)["ticket"]

    first = consume_ticket(db, ticket.id, "room-a")
    second = consume_ticket(db, ticket.id, "room-a")

    assert first["already_consumed"] is False
    assert second["already_consumed"] is True
    assert first["ticket"].status == VipTicketStatus.CONSUMED
    assert first["ticket"].room_instance_id == "room-a"
    assert _balance(db, user.id).locked_amount == Decimal("0")
    assert get_credit(db, user.id) == "4.000000"


def test_consume_in_another_room_instance_is_rejected(db, make_user, fund_user):
    user = make_user("TicketWallet666")
    fund_user(user, "5")
    ticket = check_access(db, user.id)["ticket"]
    consume_ticket(db, ticket.id, "room-a")

    with pytest.raises(AlreadyConsumed):
        consume_ticket(db, ticket.id, "room-b")


def test_consume_requires_room_instance(db, make_user, fund_user):
    user = make_user("TicketWallet777")
    fund_user(user, "5")
    ticket = check_access(db, user.id)["ticket"]

    with pytest.raises(InvalidState):
        consume_ticket(db, ticket.id, "  ")


def test_validate_ticket(db, make_user, fund_user):
    owner = make_user("TicketWallet888")
    other = make_user("TicketWallet999")
    fund_user(owner, "5")
    ticket = check_access(db, owner.id)["ticket"]

    result = validate_ticket(db, ticket.id, expected_user_id=owner.id)
    assert result["ticket"].id == ticket.id
    assert result["credit"] == "4.000000"

    with pytest.raises(Unauthorized):
        validate_ticket(db, ticket.id, expected_user_id=other.id)
    with pytest.raises(NotFound):
        validate_ticket(db, 999999)

    consume_ticket(db, ticket.id, "room-a")
    with pytest.raises(AlreadyConsumed):
        validate_ticket(db, ticket.id)


def test_validate_stale_ticket_reports_expired(db, make_user, fund_user):
    user = make_user("TicketWalletAAA")
    fund_user(user, "5")
    ticket = check_access(db, user.id)["ticket"]
    _age_ticket(db, ticket)

    with pytest.raises(TicketExpired):
        validate_ticket(db, ticket.id)


def test_cancel_refunds_entry_fee(db, make_user, fund_user):
    user = make_user("TicketWalletBBB")
    fund_user(user, "5")
    ticket = check_access(db, user.id)["ticket"]

    result = cancel_ticket(db, ticket.id, user.id)

    assert result["ticket"].status == VipTicketStatus.CANCELLED
    assert result["credit"] == "5.000000"
    assert _balance(db, user.id).locked_amount == Decimal("0")
    entry_tx = db.get(Transaction, ticket.entry_transaction_id)
    assert entry_tx.status == TransactionStatus.REVERSED
    assert confirmed_total(db, user.id) == Decimal("5.000000")

    again = cancel_ticket(db, ticket.id, user.id)
    assert again["credit"] == "5.000000"

    with pytest.raises(TicketCancelled):
        consume_ticket(db, ticket.id, "room-a")


def test_cancel_requires_owner_and_issued_state(db, make_user, fund_user):
    owner = make_user("TicketWalletCCC")
    other = make_user("TicketWalletDDD")
    fund_user(owner, "5")
    ticket = check_access(db, owner.id)["ticket"]

    with pytest.raises(Unauthorized):
        cancel_ticket(db, ticket.id, other.id)

    consume_ticket(db, ticket.id, "room-a")
    with pytest.raises(AlreadyConsumed):
        cancel_ticket(db, ticket.id, owner.id)
    assert get_credit(db, owner.id) == "4.000000"


def test_consume_of_stale_ticket_refunds_and_raises(db, make_user, fund_user):
    user = make_user("TicketWalletEEE")
    fund_user(user, "5")
    ticket = check_access(db, user.id)["ticket"]
    _age_ticket(db, ticket)

    with pytest.raises(TicketExpired):
        consume_ticket(db, ticket.id, "room-a")

    db.refresh(ticket)
    assert ticket.status == VipTicketStatus.EXPIRED
    assert get_credit(db, user.id) == "5.000000"
    assert confirmed_total(db, user.id) == Decimal("5.000000")


def test_check_access_replaces_stale_ticket(db, make_user, fund_user):
    user = make_user("TicketWalletFFF")
    fund_user(user, "5")
    stale = check_access(db, user.id)["ticket"]
    _age_ticket(db, stale)

    result = check_access(db, user.id)

    assert result["ticket"].id != stale.id
    db.refresh(stale)
    assert stale.status == VipTicketStatus.EXPIRED
    assert get_credit(db, user.id) == "4.000000"
    assert _balance(db, user.id).locked_amount == Decimal("1")


def test_expire_stale_tickets_sweeps_only_expired(db, make_user, fund_user):
    stale_user = make_user("TicketWalletGGG")
    live_user = make_user("TicketWalletHHH")
    fund_user(stale_user, "2")
    fund_user(live_user, "2")
    stale = check_access(db, stale_user.id)["ticket"]
    live = check_access(db, live_user.id)["ticket"]
    _age_ticket(db, stale)

    assert expire_stale_tickets(db) == 1
    assert expire_stale_tickets(db) == 0

    db.refresh(stale)
    db.refresh(live)
    assert stale.status == VipTicketStatus.EXPIRED
    assert live.status == VipTicketStatus.ISSUED
    assert get_credit(db, stale_user.id) == "2.000000"
    assert get_credit(db, live_user.id) == "1.000000"


def test_ticket_transition_table():
    assert TICKET_TRANSITIONS[VipTicketStatus.ISSUED] == {
        VipTicketStatus.CONSUMED,
        VipTicketStatus.CANCELLED,
        VipTicketStatus.EXPIRED,
    }
    for terminal in (VipTicketStatus.CONSUMED, VipTicketStatus.CANCELLED, VipTicketStatus.EXPIRED):
        assert not TICKET_TRANSITIONS[terminal]
        ticket = VipTicket(status=terminal)
        assert ticket.is_terminal
        with pytest.raises(InvalidState):
            ticket.transition_to(VipTicketStatus.ISSUED)
