from rest_framework import status
from rest_framework.exceptions import APIException
from rest_framework.views import exception_handler


class LedgerError(APIException):
    """Base for ledger failures that carry extra fields next to the message."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Request failed"
    default_code = "error"

    def __init__(self, detail=None, code=None, **fields):
        message = detail or self.default_detail
        payload = {"detail": message}
        payload.update({key: str(value) for key, value in fields.items() if value is not None})
        super().__init__(payload, code)
        self.message = message
        self.fields = fields
        self.error_code = code or self.default_code

    def __str__(self):
        return str(self.message)


class LedgerValidationError(LedgerError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid request."
    default_code = "validation_error"


class InsufficientStock(LedgerError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Insufficient stock."
    default_code = "insufficient_stock"


class UnresolvedReference(LedgerError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Referenced record does not exist."
    default_code = "unresolved_reference"


class TransactionConflict(LedgerError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "The stock changed concurrently, please retry."
    default_code = "transaction_conflict"


class CleanupFailure(Exception):
    """Raised inside the detached cleanup job; logged, never returned to a caller."""


def api_exception_handler(exc, context):
    response = exception_handler(exc, context)
    if response is None:
        return response

    if isinstance(response.data, dict):
        detail = response.data.get("detail", "Request failed")
        fields = {k: v for k, v in response.data.items() if k != "detail"}
    else:
        detail = "Request failed"
        fields = {"non_field_errors": response.data} if isinstance(response.data, list) else {}

    response.data = {
        "code": getattr(exc, "error_code", None) or getattr(exc, "default_code", "error"),
        "detail": detail,
        "fields": fields,
    }
    return response
