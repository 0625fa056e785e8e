"""Error taxonomy for the payment subsystem.

Every failure that leaves the service layer is one of the exceptions below. Each
carries a ``kind`` discriminant and typed fields so callers can branch on the
shape of the failure instead of parsing messages.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import exc as sa_exc


class PaymentError(Exception):
    kind = "PaymentError"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": str(self)}


class NotFoundError(PaymentError):
    kind = "NotFound"

    def __init__(self, entity: str, id: str):
        self.entity = entity
        self.id = id
        super().__init__(f"{entity} with id '{id}' not found")

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "entity": self.entity, "id": self.id}


class InvalidInputError(PaymentError):
    kind = "InvalidInput"

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"Invalid input for field '{field}': {message}")

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "field": self.field, "message": self.message}


class PaymentValidationError(PaymentError):
    kind = "ValidationError"

    def __init__(self, messages: List[str]):
        self.messages = list(messages)
        super().__init__(f"Validation errors: {', '.join(self.messages)}")

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "messages": list(self.messages)}


class DatabaseError(PaymentError):
    kind = "DatabaseError"

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code
        super().__init__(f"Database error: {message} (code: {code})")

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "code": self.code}


class StorageConnectionError(PaymentError):
    kind = "ConnectionError"

    def __init__(self, message: str):
        self.message = message
        super().__init__(f"Connection error: {message}")

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class CacheError(PaymentError):
    kind = "CacheError"

    def __init__(self, message: str):
        self.message = message
        super().__init__(f"Cache error: {message}")

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


def storage_error_from(error: Exception) -> PaymentError:
    """Map a SQLAlchemy failure onto the taxonomy; taxonomy errors pass through."""
    if isinstance(error, PaymentError):
        return error
    if isinstance(error, sa_exc.TimeoutError):
        return StorageConnectionError("Database connection pool timed out")
    if isinstance(error, sa_exc.DisconnectionError):
        return StorageConnectionError(f"Database connection lost: {error}")
    if isinstance(error, sa_exc.DBAPIError):
        if error.connection_invalidated:
            return StorageConnectionError(f"Database connection lost: {error.orig}")
        return DatabaseError(str(error.orig), code=error.code)
    return DatabaseError(str(error))
