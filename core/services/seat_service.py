# =============================================================================
# core/services/seat_service.py - Teacher Seat Management
# =============================================================================
# Wraps the seat RPCs. They run as the calling user so the SQL functions can
# check that the caller is a principal of the school.
#
# Database error messages are mapped to SeatErrorCode values the clients
# switch on.
# =============================================================================

import logging
from enum import Enum
from typing import Any

from app.exceptions import EduDashException
from core.models.subscription import SeatLimits, SeatUsageDisplay
from lib.supabase_client import SupabaseClient, SupabaseClientError

logger = logging.getLogger(__name__)


class SeatErrorCode(str, Enum):
    PERMISSION_DENIED = "PERMISSION_DENIED"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    NETWORK_ERROR = "NETWORK_ERROR"
    UNKNOWN = "UNKNOWN"


class SeatOperationError(EduDashException):
    """A seat RPC failed; seat_code says why."""

    def __init__(self, seat_code: SeatErrorCode, message: str, details: str | None = None):
        super().__init__(
            message=message,
            code=seat_code.value,
            status_code=400,
            details={"reason": details} if details else None,
        )
        self.seat_code = seat_code


# Substring of the database message -> (code, client message)
_ERROR_MAP = [
    ("Only principals can assign", SeatErrorCode.PERMISSION_DENIED, "Only principals can assign teacher seats"),
    ("Only principals can revoke", SeatErrorCode.PERMISSION_DENIED, "Only principals can revoke teacher seats"),
    ("No teacher seats available", SeatErrorCode.LIMIT_EXCEEDED, "No teacher seats available for this plan"),
    ("Target must be a teacher", SeatErrorCode.USER_NOT_FOUND, "Target user must be a teacher in the same school"),
]

_NETWORK_MARKERS = ("network", "connection", "timeout", "timed out")


def map_seat_error(error: Exception, action: str) -> SeatOperationError:
    message = getattr(error, "message", None) or str(error)

    for marker, code, client_message in _ERROR_MAP:
        if marker in message:
            return SeatOperationError(code, client_message)

    if any(m in message.lower() for m in _NETWORK_MARKERS):
        return SeatOperationError(SeatErrorCode.NETWORK_ERROR, f"Failed to {action}", message)

    return SeatOperationError(SeatErrorCode.UNKNOWN, f"Unexpected error trying to {action}", message)


def format_seat_usage(limits: SeatLimits) -> SeatUsageDisplay:
    is_over_limit = limits.limit is not None and limits.used > limits.limit

    if limits.limit is None:
        text = f"{limits.used} seats used (Unlimited)"
    else:
        text = f"{limits.used}/{limits.limit} seats used"
        if is_over_limit:
            text += " (Over limit)"

    return SeatUsageDisplay(
        used=limits.used,
        total=limits.limit,
        available=limits.available,
        is_over_limit=is_over_limit,
        display_text=text,
    )


def should_disable_assignment(limits: SeatLimits) -> bool:
    """Unlimited plans never disable assignment."""
    if limits.limit is None:
        return False
    return limits.available is None or limits.available <= 0


class SeatService:
    """Teacher seat RPC wrappers, all executed as the caller."""

    @staticmethod
    def _rpc(function_name: str, action: str, access_token: str, params: dict[str, Any] | None = None) -> Any:
        try:
            return SupabaseClient.call_rpc(function_name, params, access_token=access_token)
        except SupabaseClientError as e:
            logger.error(f"{function_name} failed: {e.message}")
            raise map_seat_error(e, action)

    @staticmethod
    def get_seat_limits(access_token: str) -> SeatLimits:
        data = SeatService._rpc("rpc_teacher_seat_limits", "fetch seat limits", access_token)
        if not data:
            raise SeatOperationError(SeatErrorCode.UNKNOWN, "No seat limit data returned")

        row = data[0] if isinstance(data, list) else data
        return SeatLimits(limit=row.get("limit"), used=row.get("used") or 0, available=row.get("available"))

    @staticmethod
    def assign_teacher_seat(teacher_user_id: str, access_token: str) -> Any:
        result = SeatService._rpc(
            "rpc_assign_teacher_seat",
            "assign teacher seat",
            access_token,
            {"target_user_id": teacher_user_id},
        )
        logger.info(f"Seat assigned to {teacher_user_id}")
        return result

    @staticmethod
    def revoke_teacher_seat(teacher_user_id: str, access_token: str) -> Any:
        result = SeatService._rpc(
            "rpc_revoke_teacher_seat",
            "revoke teacher seat",
            access_token,
            {"target_user_id": teacher_user_id},
        )
        logger.info(f"Seat revoked from {teacher_user_id}")
        return result

    @staticmethod
    def list_teacher_seats(access_token: str) -> list[dict[str, Any]]:
        return SeatService._rpc("rpc_list_teacher_seats", "list teacher seats", access_token) or []
