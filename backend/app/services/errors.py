class ServiceError(Exception):
    kind = "internal_error"
    status_code = 500


class PriceFeedUnavailable(ServiceError):
    kind = "price_feed_unavailable"
    status_code = 503


class MissingWalletAddress(ServiceError):
    kind = "missing_wallet_address"
    status_code = 400


class NoEntriesError(ServiceError):
    kind = "no_entries"
    status_code = 400


class Unauthorized(ServiceError):
    kind = "unauthorized"
    status_code = 401


class PaymentNotSatisfied(ServiceError):
    kind = "payment_required"
    status_code = 402

    def __init__(self, message: str, challenge: dict) -> None:
        super().__init__(message)
        self.challenge = challenge


class AlreadyDrawnError(ServiceError):
    kind = "already_drawn"
    status_code = 409


class DuplicateCodeError(ServiceError):
    kind = "duplicate_code"
    status_code = 500


class PaymentVerificationError(ServiceError):
    kind = "payment_verification_failed"
    status_code = 502


class StorageUnavailable(ServiceError):
    kind = "storage_unavailable"
    status_code = 503


class NoActiveRoundError(ServiceError):
    kind = "no_active_round"
    status_code = 503
