class ReconciliationError(Exception):
    """Base class for every error the service reports back to a caller."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(ReconciliationError):
    status_code = 500


class MissingSignatureError(ReconciliationError):
    status_code = 400


class InvalidSignatureError(ReconciliationError):
    status_code = 400


class MalformedEventError(ReconciliationError):
    status_code = 400


class StorageUnavailableError(ReconciliationError):
    """
    A storage lookup or write failed. The gateway must retry later, so this is
    never downgraded to "not found".
    """

    status_code = 500


class InvalidTransitionError(ReconciliationError):
    status_code = 409


class RefundError(ReconciliationError):
    status_code = 400


class RefundGatewayError(RefundError):
    status_code = 502


class InsufficientBalanceError(RefundGatewayError):
    status_code = 402


class DuplicateRefundError(RefundError):
    status_code = 409


class RefundNotFoundError(RefundError):
    status_code = 404


class ReturnRequestNotFoundError(RefundError):
    status_code = 404


class OrderNotFoundError(ReconciliationError):
    status_code = 404
