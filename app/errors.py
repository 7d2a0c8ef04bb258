from fastapi import HTTPException, status


class SettlementError(HTTPException):
    """Base for every error the settlement engine raises towards a caller."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str, status_code: int | None = None) -> None:
        super().__init__(status_code=status_code or self.status_code, detail=detail)


class BookingNotFound(SettlementError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, booking_id: object) -> None:
        super().__init__(f"Booking {booking_id} not found")


class RefundRequestNotFound(SettlementError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, request_id: object) -> None:
        super().__init__(f"Refund request {request_id} not found")


class NotBookingOwner(SettlementError):
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, action: str = "cancel it") -> None:
        super().__init__(f"Only the guest who made this booking can {action}")


class ConflictError(SettlementError):
    status_code = status.HTTP_409_CONFLICT


class InvalidTransition(ConflictError):
    def __init__(self, current: str, action: str) -> None:
        super().__init__(f"Cannot {action} a booking in status '{current}'")


class InsufficientBalance(ConflictError):
    pass


class InvalidAmount(SettlementError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class GatewayError(SettlementError):
    """The payments service declined, failed or was unreachable."""

    status_code = status.HTTP_502_BAD_GATEWAY


class GatewayTimeout(GatewayError):
    """Outcome unknown. Re-read the intent state before doing anything else."""

    status_code = status.HTTP_504_GATEWAY_TIMEOUT
