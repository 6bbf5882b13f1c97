from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_current_user_id, get_session
from ..infrastructure.repositories import SqlAlchemyBookingRepository
from ..schemas import BookingRead

router = APIRouter(prefix="/me", tags=["bookings"])


@router.get("/bookings", response_model=List[BookingRead])
async def list_my_bookings(
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> list[BookingRead]:
    booking_repo = SqlAlchemyBookingRepository(session)
    bookings = await booking_repo.list_by_user(user_id)
    return [BookingRead.from_db(booking=booking) for booking in bookings]
