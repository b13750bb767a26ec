"""Result objects returned by the booking operations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional


class ErrorKind:
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    STORAGE = "storage"
    INCONSISTENCY = "inconsistency"


HTTP_STATUS_BY_KIND: Dict[str, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.STORAGE: 503,
    ErrorKind.INCONSISTENCY: 500,
}


@dataclass
class OperationResult:
    success: bool
    error: Optional[str] = None
    error_kind: Optional[str] = None
    request_id: Optional[int] = None
    rental_id: Optional[int] = None

    @classmethod
    def ok(cls, request_id: Optional[int] = None, rental_id: Optional[int] = None) -> "OperationResult":
        return cls(success=True, request_id=request_id, rental_id=rental_id)

    @classmethod
    def fail(
        cls,
        kind: str,
        error: str,
        request_id: Optional[int] = None,
        rental_id: Optional[int] = None,
    ) -> "OperationResult":
        return cls(success=False, error=error, error_kind=kind, request_id=request_id, rental_id=rental_id)

    @property
    def http_status(self) -> int:
        if self.success:
            return 200
        return HTTP_STATUS_BY_KIND.get(self.error_kind or "", 400)

    def as_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"success": self.success}
        if self.request_id is not None:
            payload["requestId"] = self.request_id
        if self.rental_id is not None:
            payload["rentalId"] = self.rental_id
        if not self.success:
            payload["error"] = self.error
            payload["errorKind"] = self.error_kind
        return payload
