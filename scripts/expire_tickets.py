"""Sweep issued VIP tickets past their expiry and refund the held entry fee.

Run from cron; ``--retry-referrals`` also re-runs failed referral commissions and
``--reconcile-withdrawals`` resends withdrawals whose transfer outcome is unknown.
"""
import argparse
import logging
from app.core.database import SessionLocal
from app.core.errors import LedgerError
from app.core.logging import configure_logging
from app.services.referral import retry_failed_commissions
from app.services.tickets import expire_stale_tickets
from app.services.withdrawals import list_unresolved_withdrawals, retry_withdrawal


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--limit", type=int, default=500)
    parser.add_argument("--retry-referrals", action="store_true")
    parser.add_argument("--reconcile-withdrawals", action="store_true")
    args = parser.parse_args()

    configure_logging()
    logger = logging.getLogger("expire_tickets")
    db = SessionLocal()
    try:
        expired = expire_stale_tickets(db, limit=args.limit)
        logger.info("Expired %s ticket(s)", expired)
        if args.retry_referrals:
            confirmed = retry_failed_commissions(db, limit=args.limit)
            logger.info("Confirmed %s previously failed referral commission(s)", confirmed)
        if args.reconcile_withdrawals:
            for transaction_id in list_unresolved_withdrawals(db, limit=args.limit):
                try:
                    retry_withdrawal(db, transaction_id)
                except LedgerError as exc:
                    logger.warning("Withdrawal id=%s still unresolved: %s", transaction_id, exc)
    finally:
        db.close()


if __name__ == "__main__":
    main()
