"""
Exception hierarchy for the SurveyRewards ledger.

Services raise these; the HTTP layer turns any of them into the uniform
``{"success": false, "error": ...}`` body using ``status_code``.

    LedgerServiceError
    ├── ValidationError
    ├── AuthenticationError / AuthorizationError
    ├── NotFoundError
    │   ├── AccountNotFoundError, SurveyNotFoundError, PackageNotFoundError
    │   └── BonusNotFoundError, WithdrawalNotFoundError, PaymentIntentNotFoundError
    ├── PreconditionError
    │   ├── InsufficientBalanceError, NoActivePackageError, SurveyInactiveError
    │   ├── AccountDisabledError, InvalidStateTransitionError
    │   └── IdempotencyConflictError
    │       └── AlreadyCompletedError, AlreadyClaimedError, AccountExistsError
    └── CollaboratorError
        └── PaymentGatewayError

Store failures are raised by the store itself (``ledger.store.StoreError``)
and reported with the same generic message as ``CollaboratorError``.
"""

GENERIC_FAILURE = "Operation failed, please try again"


class LedgerServiceError(Exception):
    status_code = 400

    def __init__(self, message: str = ""):
        self.message = message or self.__class__.__name__
        super().__init__(self.message)


class ValidationError(LedgerServiceError):
    status_code = 422


class AuthenticationError(LedgerServiceError):
    status_code = 401


class AuthorizationError(LedgerServiceError):
    status_code = 403


class NotFoundError(LedgerServiceError):
    status_code = 404


class AccountNotFoundError(NotFoundError):
    pass


class SurveyNotFoundError(NotFoundError):
    pass


class PackageNotFoundError(NotFoundError):
    pass


class BonusNotFoundError(NotFoundError):
    pass


class WithdrawalNotFoundError(NotFoundError):
    pass


class PaymentIntentNotFoundError(NotFoundError):
    pass


class PreconditionError(LedgerServiceError):
    status_code = 400


class InsufficientBalanceError(PreconditionError):
    pass


class NoActivePackageError(PreconditionError):
    pass


class SurveyInactiveError(PreconditionError):
    pass


class AccountDisabledError(PreconditionError):
    status_code = 403


class InvalidStateTransitionError(PreconditionError):
    pass


class IdempotencyConflictError(PreconditionError):
    status_code = 409


class AlreadyCompletedError(IdempotencyConflictError):
    pass


class AlreadyClaimedError(IdempotencyConflictError):
    pass


class AccountExistsError(IdempotencyConflictError):
    pass


class CollaboratorError(LedgerServiceError):
    """The store or the payment gateway failed; the caller may retry the whole flow."""

    status_code = 503


class PaymentGatewayError(CollaboratorError):
    pass
