"""Stable error kinds for ledger operations.

Callers (game server, indexer, clients) branch on ``code`` and ``retryable``
rather than on message text, so both are part of the public contract.
"""


class LedgerError(Exception):
    code = "LEDGER_ERROR"
    status_code = 400
    retryable = False

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_detail(self) -> dict:
        return {
            "message": self.message,
            "code": self.code,
            "retryable": self.retryable,
        }


class InsufficientFunds(LedgerError):
    code = "INSUFFICIENT_FUNDS"
    status_code = 400


class DuplicateReference(LedgerError):
    code = "DUPLICATE_REFERENCE"
    status_code = 409


class NotFound(LedgerError):
    code = "NOT_FOUND"
    status_code = 404


class InvalidState(LedgerError):
    code = "INVALID_STATE"
    status_code = 409


class AlreadyConsumed(InvalidState):
    code = "TICKET_ALREADY_CONSUMED"


class TicketExpired(InvalidState):
    code = "TICKET_EXPIRED"


class TicketCancelled(InvalidState):
    code = "TICKET_CANCELLED"


class Unauthorized(LedgerError):
    code = "UNAUTHORIZED"
    status_code = 401


class InvalidEvent(LedgerError):
    code = "INVALID_EVENT"
    status_code = 400


class StoreUnavailable(LedgerError):
    code = "STORE_UNAVAILABLE"
    status_code = 503
    retryable = True


class PaymentRejected(LedgerError):
    code = "PAYMENT_REJECTED"
    status_code = 400


class PaymentUnavailable(LedgerError):
    code = "PAYMENT_UNAVAILABLE"
    status_code = 503
    retryable = True
