from datetime import timedelta

import pytest
from fakes import (
    FakeCatalogRepo,
    FakeGateway,
    FakePaymentRepo,
    FakeReservationRepo,
    FakeSlotRepo,
    InMemoryStore,
    utc_now_naive,
)
from slot_reservation.domain.errors import (
    NotAuthorizedError,
    PaymentProcessorError,
    ReservationExpiredError,
    ReservationNotFoundError,
    ReservationNotHeldError,
)
from slot_reservation.domain.locks import NullSlotLock
from slot_reservation.models import PaymentFlow, PaymentStatus, ReservationStatus
from slot_reservation.usecases import payments as uc
from slot_reservation.usecases.reservations import reserve_slot


async def _held_reservation(store: InMemoryStore, *, user_id: int = 7):  # type: ignore[no-untyped-def]
    slot = store.add_slot(store.add_catalog(price_amount=4200, currency="usd"))
    reservation, _ = await reserve_slot(
        FakeSlotRepo(store),
        FakeReservationRepo(store),
        NullSlotLock(),
        slot_id=slot.id,
        user_id=user_id,
        hold_minutes=10,
        lock_ttl_seconds=30,
        now=utc_now_naive(),
    )
    return reservation, slot


async def _initiate(store: InMemoryStore, gateway: FakeGateway, **overrides):  # type: ignore[no-untyped-def]
    params = dict(
        flow=PaymentFlow.INTENT,
        success_url="https://app.example/ok",
        cancel_url="https://app.example/cancel",
        now=utc_now_naive(),
    )
    params.update(overrides)
    return await uc.initiate_payment(
        FakeReservationRepo(store),
        FakeSlotRepo(store),
        FakeCatalogRepo(store),
        FakePaymentRepo(store),
        gateway,
        **params,
    )


@pytest.mark.asyncio
async def test_intent_flow_uses_reservation_idempotency_key() -> None:
    store = InMemoryStore()
    reservation, slot = await _held_reservation(store)
    gateway = FakeGateway()

    result = await _initiate(store, gateway, user_id=7, reservation_id=reservation.id)

    assert result.client_secret == "secret_123"
    assert result.amount == 4200
    assert result.currency == "USD"
    call = gateway.calls[0]
    assert call["idempotency_key"] == f"reservation-{reservation.id}"
    assert call["metadata"]["reservation_id"] == str(reservation.id)
    assert call["metadata"]["slot_id"] == str(slot.id)
    assert call["metadata"]["provider_id"] == str(slot.provider_id)
    payment = store.payments[result.processor_payment_id]
    assert payment.status == PaymentStatus.REQUIRES_ACTION
    assert payment.reservation_id == reservation.id


@pytest.mark.asyncio
async def test_repeated_initiation_reuses_the_same_payment() -> None:
    store = InMemoryStore()
    reservation, _ = await _held_reservation(store)
    gateway = FakeGateway()

    first = await _initiate(store, gateway, user_id=7, reservation_id=reservation.id)
    second = await _initiate(store, gateway, user_id=7, reservation_id=reservation.id)

    assert first.processor_payment_id == second.processor_payment_id
    assert len(store.payments) == 1


@pytest.mark.asyncio
async def test_checkout_flow_returns_redirect() -> None:
    store = InMemoryStore()
    reservation, _ = await _held_reservation(store)
    gateway = FakeGateway()

    result = await _initiate(store, gateway, user_id=7, reservation_id=reservation.id, flow=PaymentFlow.CHECKOUT)

    assert result.redirect_url == "https://checkout.example/session"
    assert gateway.calls[0]["idempotency_key"].startswith(f"reservation-{reservation.id}-checkout-")
    assert gateway.calls[0]["success_url"] == "https://app.example/ok"
    assert store.payments[result.processor_payment_id].flow == PaymentFlow.CHECKOUT



@pytest.mark.asyncio
async def test_checkout_retry_with_new_return_urls_gets_a_new_key() -> None:
    store = InMemoryStore()
    reservation, _ = await _held_reservation(store)
    gateway = FakeGateway()
    checkout = dict(user_id=7, reservation_id=reservation.id, flow=PaymentFlow.CHECKOUT)

    first = await _initiate(store, gateway, **checkout)
    same = await _initiate(store, gateway, **checkout)
    moved = await _initiate(store, gateway, success_url="https://app.example/paid", **checkout)

    keys = [call["idempotency_key"] for call in gateway.calls]
    assert keys[0] == keys[1]
    assert keys[2] != keys[0]
    assert first.processor_payment_id == same.processor_payment_id
    assert moved.processor_payment_id != first.processor_payment_id
    assert gateway.calls[2]["success_url"] == "https://app.example/paid"


def test_idempotency_key_for_intent_ignores_return_urls() -> None:
    assert uc.idempotency_key_for(5, PaymentFlow.INTENT, success_url="https://a", cancel_url="https://b") == "reservation-5"
    assert uc.idempotency_key_for(5, PaymentFlow.CHECKOUT, success_url="https://a", cancel_url="https://b") != (
        uc.idempotency_key_for(5, PaymentFlow.CHECKOUT, success_url="https://a", cancel_url="https://c")
    )

@pytest.mark.asyncio
async def test_missing_reservation_is_not_found() -> None:
    store = InMemoryStore()
    with pytest.raises(ReservationNotFoundError):
        await _initiate(store, FakeGateway(), user_id=7, reservation_id=404)


@pytest.mark.asyncio
async def test_other_users_reservation_is_forbidden() -> None:
    store = InMemoryStore()
    reservation, _ = await _held_reservation(store)
    gateway = FakeGateway()
    with pytest.raises(NotAuthorizedError):
        await _initiate(store, gateway, user_id=8, reservation_id=reservation.id)
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_expired_hold_is_rejected_without_processor_call() -> None:
    store = InMemoryStore()
    reservation, _ = await _held_reservation(store)
    gateway = FakeGateway()
    with pytest.raises(ReservationExpiredError):
        await _initiate(
            store,
            gateway,
            user_id=7,
            reservation_id=reservation.id,
            now=reservation.hold_expires_at + timedelta(seconds=1),
        )
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_confirmed_reservation_is_not_payable() -> None:
    store = InMemoryStore()
    reservation, _ = await _held_reservation(store)
    reservation.status = ReservationStatus.CONFIRMED
    with pytest.raises(ReservationNotHeldError):
        await _initiate(store, FakeGateway(), user_id=7, reservation_id=reservation.id)


@pytest.mark.asyncio
async def test_processor_error_leaves_no_payment_row() -> None:
    store = InMemoryStore()
    reservation, _ = await _held_reservation(store)
    gateway = FakeGateway(fail=PaymentProcessorError("card network down"))
    with pytest.raises(PaymentProcessorError):
        await _initiate(store, gateway, user_id=7, reservation_id=reservation.id)
    assert store.payments == {}
