import hmac
import logging
from functools import lru_cache
from typing import AsyncIterator, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import get_settings
from .database import async_session
from .domain.gateway import PaymentGateway
from .domain.locks import SlotLock
from .domain.repositories import UnitOfWorkFactory
from .infrastructure.locks import build_slot_lock
from .infrastructure.payments import build_payment_gateway
from .infrastructure.queue import EventQueue, build_event_queue
from .infrastructure.repositories import sqlalchemy_unit_of_work
from .models import User
from .utils.auth import TokenError, decode_access_token

logger = logging.getLogger(__name__)

_BEARER_CHALLENGE = {"WWW-Authenticate": "Bearer"}


async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers=_BEARER_CHALLENGE,
        )
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer token required",
            headers=_BEARER_CHALLENGE,
        )
    return token.strip()


async def get_current_user_id(
    authorization: Optional[str] = Header(default=None),
    session: AsyncSession = Depends(get_session),
) -> int:
    token = _bearer_token(authorization)
    settings = get_settings()
    try:
        user_id = decode_access_token(
            token,
            secret=settings.auth_secret,
            algorithms=[settings.auth_algorithm],
            issuer=settings.auth_issuer,
            leeway_seconds=settings.auth_leeway_seconds,
        )
    except TokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers=_BEARER_CHALLENGE,
        ) from exc

    try:
        exists = await session.scalar(select(User.id).where(User.id == user_id))
    except ProgrammingError as exc:
        await session.rollback()
        logger.error("user lookup failed", extra={"user_id": user_id, "error": str(exc)})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal error") from exc
    # end the lookup's implicit transaction so handlers can open their own
    await session.rollback()
    if exists is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers=_BEARER_CHALLENGE,
        )
    return user_id


async def require_worker_token(authorization: Optional[str] = Header(default=None)) -> None:
    expected = get_settings().worker_token
    if not expected:
        return None
    token = _bearer_token(authorization)
    if not hmac.compare_digest(token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid worker token",
            headers=_BEARER_CHALLENGE,
        )
    return None


@lru_cache
def get_slot_lock() -> SlotLock:
    return build_slot_lock(get_settings())


@lru_cache
def get_payment_gateway() -> PaymentGateway:
    return build_payment_gateway(get_settings())


@lru_cache
def get_event_queue() -> Optional[EventQueue]:
    return build_event_queue(get_settings())


def get_unit_of_work() -> UnitOfWorkFactory:
    return sqlalchemy_unit_of_work(async_session)
