"""Domain errors raised by the settlement services.

Each error is an HTTPException so routers can let it propagate unchanged;
service-level callers (sweeps, scripts) catch the specific subclass.
"""

from fastapi import HTTPException


class TaskNotFoundError(HTTPException):
    def __init__(self, detail: str = "Task not found") -> None:
        super().__init__(status_code=404, detail=detail)


class UserNotFoundError(HTTPException):
    def __init__(self, detail: str = "User not found") -> None:
        super().__init__(status_code=404, detail=detail)


class TransitionError(HTTPException):
    """Requested status edge is not in the transition table."""

    def __init__(self, detail: str) -> None:
        super().__init__(status_code=409, detail=detail)


class TaskConflictError(HTTPException):
    """Guarded update matched zero rows: someone else moved the row first."""

    def __init__(self, detail: str) -> None:
        super().__init__(status_code=409, detail=detail)


class PermissionDeniedError(HTTPException):
    def __init__(self, detail: str) -> None:
        super().__init__(status_code=403, detail=detail)


class DisputeError(HTTPException):
    def __init__(self, detail: str, status_code: int = 422) -> None:
        super().__init__(status_code=status_code, detail=detail)


class EscrowError(HTTPException):
    def __init__(self, detail: str, status_code: int = 409) -> None:
        super().__init__(status_code=status_code, detail=detail)


class PaymentError(HTTPException):
    def __init__(self, detail: str, status_code: int = 409) -> None:
        super().__init__(status_code=status_code, detail=detail)


class WithdrawalError(HTTPException):
    def __init__(self, detail: str, status_code: int = 422) -> None:
        super().__init__(status_code=status_code, detail=detail)
