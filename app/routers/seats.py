# =============================================================================
# app/routers/seats.py - Teacher Seat Endpoints
# =============================================================================
# Seat RPCs run as the caller so the database enforces that only principals
# of the school can assign or revoke. Failures come back as
# SeatOperationError with a SeatErrorCode.
# =============================================================================

from typing import Annotated

from fastapi import APIRouter, Depends, Path

from app.auth import get_user_context
from app.dependencies import AccessTokenDep
from core.services.seat_service import SeatService, format_seat_usage, should_disable_assignment

router = APIRouter(dependencies=[Depends(get_user_context)])


@router.get("/limits")
async def get_seat_limits(access_token: AccessTokenDep):
    """
    Seat usage for the caller's school.

    Example response:
        {
            "limit": 10, "used": 4, "available": 6,
            "display": {"display_text": "4/10 seats used", ...},
            "assignment_disabled": false
        }
    """
    limits = SeatService.get_seat_limits(access_token)
    return {
        **limits.model_dump(),
        "display": format_seat_usage(limits),
        "assignment_disabled": should_disable_assignment(limits),
    }


@router.get("")
async def list_seats(access_token: AccessTokenDep):
    seats = SeatService.list_teacher_seats(access_token)
    return {"seats": seats, "total": len(seats)}


@router.post("/{teacher_id}")
async def assign_seat(
    teacher_id: Annotated[str, Path(description="Teacher's user id")],
    access_token: AccessTokenDep,
):
    result = SeatService.assign_teacher_seat(teacher_id, access_token)
    return {"success": True, "teacher_id": teacher_id, "result": result}


@router.delete("/{teacher_id}")
async def revoke_seat(
    teacher_id: Annotated[str, Path(description="Teacher's user id")],
    access_token: AccessTokenDep,
):
    result = SeatService.revoke_teacher_seat(teacher_id, access_token)
    return {"success": True, "teacher_id": teacher_id, "result": result}
