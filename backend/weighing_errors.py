# backend/weighing_errors.py

"""
Weighing pipeline error taxonomy.

Every failure raised by the weighing core carries:
- error_code: stable machine-readable code
- message: user-facing text (rendered as "detail" by the API)
- field: offending input field, when there is one
- compound_id: compound the request was about, when known

None of these errors are retried inside the core.
"""

from typing import Optional, List


class WeighingError(Exception):
    """Base weighing error"""
    http_status = 422

    def __init__(
        self,
        error_code: str,
        message: str,
        field: Optional[str] = None,
        compound_id: Optional[str] = None
    ):
        self.error_code = error_code
        self.message = message
        self.field = field
        self.compound_id = compound_id
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "detail": self.message,
            "error_code": self.error_code,
            "field": self.field,
            "compound_id": self.compound_id
        }


class UnrecognizedUnitError(WeighingError):
    """Unit outside the recognized mass/volume set"""
    def __init__(self, unit: str, allowed_units: List[str], field: Optional[str] = None):
        super().__init__(
            "UNRECOGNIZED_UNIT",
            f"Unit '{unit}' is not recognized. Allowed units: {', '.join(allowed_units)}",
            field=field
        )
        self.unit = unit


class InvalidQuantityError(WeighingError):
    """Quantity is negative, zero where not allowed, or not a finite number"""
    def __init__(self, value, field: Optional[str] = None, reason: str = "must be a finite, non-negative number"):
        super().__init__(
            "INVALID_QUANTITY",
            f"{field or 'Quantity'} {reason}. Received: {value}",
            field=field
        )
        self.value = value


class DivisionByZeroError(WeighingError):
    """Prepared volume is zero or not finite"""
    def __init__(self, volume_ml, field: Optional[str] = "prepared_volume"):
        super().__init__(
            "DIVISION_BY_ZERO",
            f"Prepared volume must be greater than zero to compute a concentration. Received: {volume_ml} mL",
            field=field
        )


class CompoundNotFoundError(WeighingError):
    """Compound id unknown to the catalog"""
    http_status = 404

    def __init__(self, compound_id: str):
        super().__init__(
            "COMPOUND_NOT_FOUND",
            f"Compound '{compound_id}' not found",
            field="compound_id",
            compound_id=compound_id
        )


class InsufficientStockError(WeighingError):
    """Debit would drive stock below zero"""
    http_status = 409

    def __init__(self, compound_id: str, requested_mg: float, available_mg: float):
        super().__init__(
            "INSUFFICIENT_STOCK",
            f"Insufficient stock: requested {requested_mg:g} mg, available {available_mg:g} mg",
            field="weighed_amount",
            compound_id=compound_id
        )
        self.requested_mg = requested_mg
        self.available_mg = available_mg


class PayloadTooLongError(WeighingError):
    """Payload exceeds the encoding capacity for the label size"""
    def __init__(self, encoding: str, length: int, limit: str):
        super().__init__(
            "PAYLOAD_TOO_LONG",
            f"Payload of {length} characters does not fit the {encoding} encoding ({limit})",
            field="payload"
        )
        self.encoding = encoding
        self.length = length


class InvalidPayloadError(WeighingError):
    """Payload is empty or has characters the encoding cannot carry"""
    def __init__(self, encoding: str, reason: str):
        super().__init__(
            "INVALID_PAYLOAD",
            f"Payload cannot be encoded as {encoding}: {reason}",
            field="payload"
        )
        self.encoding = encoding


class TransactionAbortedError(WeighingError):
    """
    Failure after the stock debit.

    Raised only once every completed step has been compensated, so the
    ledger is back at its pre-request state.
    """
    http_status = 500

    def __init__(
        self,
        message: str,
        compound_id: Optional[str] = None,
        cause: Optional[BaseException] = None
    ):
        super().__init__(
            "TRANSACTION_ABORTED",
            message,
            field=getattr(cause, "field", None),
            compound_id=compound_id
        )
        self.cause = cause
        self.cause_code = getattr(cause, "error_code", type(cause).__name__ if cause else None)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["cause_code"] = self.cause_code
        return data
