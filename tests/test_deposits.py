from decimal import Decimal

import pytest

from app.core.errors import InvalidEvent, Unauthorized
from app.models import Transaction, TransactionStatus, TransactionType, User
from app.schemas.wallet import DepositWebhookPayload
from app.services import deposits as deposits_service
from app.services.deposits import create_deposit_metadata, handle_deposit_webhook, to_ledger_amount
from app.services.wallet import confirmed_total, get_credit

SECRET = "test-webhook-secret"


def _payload(signature="SIG1", user="DepositWallet111", amount="5000000", event_type="DepositEvent", success=True):
    return DepositWebhookPayload.model_validate(
        {
            "event": {
                "signature": signature,
                "eventType": event_type,
                "success": success,
                "slot": 123,
                "blockTime": 1700000000,
                "data": {"user": user, "amount": amount},
            },
            "timestamp": 1700000001,
            "indexerVersion": "1.0.0",
        }
    )


def _user(db, wallet):
    return db.query(User).filter(User.wallet_address == wallet).one()


def test_to_ledger_amount_raw_units_and_decimal_strings():
    assert to_ledger_amount("5000000") == (5000000, Decimal("5.000000"))
    assert to_ledger_amount("2.5") == (2500000, Decimal("2.500000"))
    assert to_ledger_amount(1, decimals=6) == (1, Decimal("0.000001"))


@pytest.mark.parametrize(
    "raw",
    ["", "abc", "0", "-5", "0.0000001", "Infinity", "inf", "-inf", "NaN", "1e30", "1000000000000.5", "1" + "0" * 25],
)
def test_to_ledger_amount_rejects_bad_values(raw):
    with pytest.raises(InvalidEvent):
        to_ledger_amount(raw)


def test_webhook_replay_credits_once(db):
    first = handle_deposit_webhook(db, _payload(), secret_header=SECRET)
    second = handle_deposit_webhook(db, _payload(), secret_header=SECRET)

    assert first == {"processed": True}
    assert second == {"processed": False}
    user = _user(db, "DepositWallet111")
    assert get_credit(db, user.id) == "5.000000"
    assert db.query(Transaction).filter(Transaction.signature == "SIG1").count() == 1
    assert confirmed_total(db, user.id) == Decimal("5.000000")


def test_webhook_accepts_decimal_token_amount(db):
    handle_deposit_webhook(db, _payload(signature="SIG-DEC", user="DepositWallet222", amount="1.25"), secret_header=SECRET)
    user = _user(db, "DepositWallet222")
    tx = db.query(Transaction).filter(Transaction.signature == "SIG-DEC").one()
    assert get_credit(db, user.id) == "1.250000"
    assert tx.meta["raw_amount"] == "1250000"
    assert tx.meta["raw_amount_source"] == "1.25"


def test_webhook_rejects_bad_secret(db):
    with pytest.raises(Unauthorized):
        handle_deposit_webhook(db, _payload(signature="SIG-SECRET"), secret_header="wrong")
    with pytest.raises(Unauthorized):
        handle_deposit_webhook(db, _payload(signature="SIG-SECRET"), secret_header=None)
    assert db.query(Transaction).count() == 0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"event_type": "WithdrawEvent"},
        {"success": False},
        {"signature": ""},
        {"user": None},
        {"amount": None},
    ],
)
def test_webhook_rejects_invalid_events(db, kwargs):
    with pytest.raises(InvalidEvent):
        handle_deposit_webhook(db, _payload(**kwargs), secret_header=SECRET)
    assert db.query(Transaction).count() == 0


def test_webhook_repairs_pending_deposit(db, make_user):
    user = make_user("DepositWallet333")
    db.add(
        Transaction(
            user_id=user.id,
            tx_type=TransactionType.DEPOSIT,
            status=TransactionStatus.PENDING,
            amount=Decimal("3"),
            fee_amount=0,
            signature="SIG-PENDING",
        )
    )
    db.commit()

    result = handle_deposit_webhook(db, _payload(signature="SIG-PENDING", user="DepositWallet333", amount="3000000"), secret_header=SECRET)

    assert result == {"processed": True}
    tx = db.query(Transaction).filter(Transaction.signature == "SIG-PENDING").one()
    assert tx.status == TransactionStatus.CONFIRMED
    assert get_credit(db, user.id) == "3.000000"
    assert confirmed_total(db, user.id) == Decimal("3.000000")


def test_create_deposit_metadata(db):
    metadata = create_deposit_metadata(db, "DepositWallet444", "2.5")
    user = _user(db, "DepositWallet444")

    assert metadata["amount"] == "2.500000"
    assert metadata["decimals"] == 6
    assert metadata["token_mint"]
    assert metadata["memo"] == f"deposit:{user.id}:{metadata['reference_code']}"


def test_create_deposit_metadata_rejects_non_positive(db):
    with pytest.raises(InvalidEvent):
        create_deposit_metadata(db, "DepositWallet555", "0")


def test_create_deposit_metadata_rejects_oversized_amount(db):
    with pytest.raises(InvalidEvent):
        create_deposit_metadata(db, "DepositWallet666", "1000000000000")


def test_concurrent_signature_insert_is_not_processed(db, monkeypatch):
    handle_deposit_webhook(db, _payload(signature="SIG-RACE", user="DepositWallet777"), secret_header=SECRET)

    # The lookup misses, as if the other delivery committed right after it.
    monkeypatch.setattr(deposits_service, "_find_deposit", lambda session, signature: None)
    result = handle_deposit_webhook(db, _payload(signature="SIG-RACE", user="DepositWallet777"), secret_header=SECRET)

    assert result == {"processed": False}
    user = _user(db, "DepositWallet777")
    assert get_credit(db, user.id) == "5.000000"
    assert db.query(Transaction).filter(Transaction.signature == "SIG-RACE").count() == 1
    assert confirmed_total(db, user.id) == Decimal("5.000000")
