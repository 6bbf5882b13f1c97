from typing import Any, Optional, cast

import pytest
from fakes import FakeGateway
from fastapi import HTTPException
from slot_reservation.domain.errors import (
    NotAuthorizedError,
    PaymentProcessorError,
    ReservationExpiredError,
    ReservationNotFoundError,
)
from slot_reservation.domain.gateway import ProcessorPayment
from slot_reservation.models import PaymentFlow, PaymentStatus
from slot_reservation.routers import payments as router
from slot_reservation.schemas import CheckoutCreate, PaymentCreate
from slot_reservation.usecases.payments import PaymentInitiation, PaymentRequest
from sqlalchemy.ext.asyncio import AsyncSession


class JournalSession:
    def __init__(self, journal: Optional[list[str]] = None) -> None:
        self.journal = journal if journal is not None else []
        self.open = False

    async def __aenter__(self) -> "JournalSession":
        self.open = True
        self.journal.append("begin")
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> bool:
        self.open = False
        self.journal.append("commit" if exc_type is None else "rollback")
        return False

    def begin(self) -> "JournalSession":
        return self


@pytest.fixture
def audits(monkeypatch: pytest.MonkeyPatch) -> list[dict[str, Any]]:
    calls: list[dict[str, Any]] = []
    monkeypatch.setattr(router, "emit_audit_log", lambda **kwargs: calls.append(kwargs))
    return calls


def _request(flow: PaymentFlow, **kwargs: Any) -> PaymentRequest:
    return PaymentRequest(
        reservation_id=100,
        user_id=200,
        flow=flow,
        amount=5000,
        currency="USD",
        product_name="Haircut",
        metadata={"reservation_id": "100"},
        idempotency_key="reservation-100",
        success_url=kwargs.get("success_url", "https://app.example/ok"),
        cancel_url=kwargs.get("cancel_url", "https://app.example/cancel"),
    )


def _initiation(flow: PaymentFlow) -> PaymentInitiation:
    return PaymentInitiation(
        reservation_id=100,
        flow=flow,
        processor_payment_id="pi_100" if flow == PaymentFlow.INTENT else "cs_100",
        status=PaymentStatus.REQUIRES_ACTION,
        amount=5000,
        currency="USD",
        client_secret="pi_100_secret" if flow == PaymentFlow.INTENT else None,
        redirect_url=None if flow == PaymentFlow.INTENT else "https://checkout.stripe.com/c/cs_100",
    )


def _stub_phases(
    monkeypatch: pytest.MonkeyPatch,
    session: JournalSession,
    *,
    seen: Optional[dict[str, Any]] = None,
    prepare_error: Optional[Exception] = None,
    processor_error: Optional[Exception] = None,
) -> None:
    seen = seen if seen is not None else {}

    async def fake_prepare(*args: object, **kwargs: Any) -> PaymentRequest:
        seen.update(kwargs)
        session.journal.append("prepare")
        if prepare_error is not None:
            raise prepare_error
        return _request(kwargs["flow"], success_url=kwargs["success_url"], cancel_url=kwargs["cancel_url"])

    async def fake_processor(gateway: object, request: PaymentRequest) -> ProcessorPayment:
        session.journal.append("processor" if not session.open else "processor in transaction")
        if processor_error is not None:
            raise processor_error
        pid = "pi_100" if request.flow == PaymentFlow.INTENT else "cs_100"
        return ProcessorPayment(processor_payment_id=pid, status="requires_payment_method")

    async def fake_record(payment_repo: object, request: PaymentRequest, processor: ProcessorPayment, **kwargs: object) -> PaymentInitiation:
        session.journal.append("record")
        return _initiation(request.flow)

    monkeypatch.setattr(router.payment_usecase, "prepare_payment", fake_prepare)
    monkeypatch.setattr(router.payment_usecase, "request_processor_payment", fake_processor)
    monkeypatch.setattr(router.payment_usecase, "record_initiated_payment", fake_record)


@pytest.mark.asyncio
async def test_intent_response_and_audit(monkeypatch: pytest.MonkeyPatch, audits: list[dict[str, Any]]) -> None:
    session = JournalSession()
    seen: dict[str, Any] = {}
    _stub_phases(monkeypatch, session, seen=seen)

    result = await router.create_payment_intent(
        payload=PaymentCreate(reservation_id=100),
        session=cast(AsyncSession, session),
        user_id=200,
        gateway=FakeGateway(),
    )

    assert seen["flow"] == PaymentFlow.INTENT
    assert result.payment_intent_id == "pi_100"
    assert result.client_secret == "pi_100_secret"
    assert result.model_dump(by_alias=True)["paymentIntentId"] == "pi_100"
    assert audits[0]["action"] == "payment.initiated"
    assert audits[0]["processor_payment_id"] == "pi_100"


@pytest.mark.asyncio
async def test_processor_call_runs_outside_any_transaction(monkeypatch: pytest.MonkeyPatch, audits: list[dict[str, Any]]) -> None:
    session = JournalSession()
    _stub_phases(monkeypatch, session)

    await router.create_payment_intent(
        payload=PaymentCreate(reservation_id=100),
        session=cast(AsyncSession, session),
        user_id=200,
        gateway=FakeGateway(),
    )

    assert session.journal == ["begin", "prepare", "commit", "processor", "begin", "record", "commit"]


@pytest.mark.asyncio
async def test_checkout_uses_caller_redirects(monkeypatch: pytest.MonkeyPatch, audits: list[dict[str, Any]]) -> None:
    session = JournalSession()
    seen: dict[str, Any] = {}
    _stub_phases(monkeypatch, session, seen=seen)

    result = await router.create_checkout_session(
        payload=CheckoutCreate(reservation_id=100, success_url="https://shop.example/ok"),
        session=cast(AsyncSession, session),
        user_id=200,
        gateway=FakeGateway(),
    )

    assert result.session_id == "cs_100"
    assert result.url == "https://checkout.stripe.com/c/cs_100"
    assert seen["success_url"] == "https://shop.example/ok"
    assert seen["cancel_url"] == router.get_settings().checkout_cancel_url


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (ReservationNotFoundError("reservation not found"), 404),
        (NotAuthorizedError("not your reservation"), 403),
        (ReservationExpiredError("hold expired"), 410),
    ],
)
async def test_initiation_failures_map_to_http(
    monkeypatch: pytest.MonkeyPatch,
    audits: list[dict[str, Any]],
    error: Exception,
    status_code: int,
) -> None:
    session = JournalSession()
    _stub_phases(monkeypatch, session, prepare_error=error)

    with pytest.raises(HTTPException) as excinfo:
        await router.create_payment_intent(
            payload=PaymentCreate(reservation_id=100),
            session=cast(AsyncSession, session),
            user_id=200,
            gateway=FakeGateway(),
        )
    assert excinfo.value.status_code == status_code
    assert "processor" not in session.journal
    assert audits == []


@pytest.mark.asyncio
async def test_processor_failure_is_bad_gateway_and_records_nothing(
    monkeypatch: pytest.MonkeyPatch, audits: list[dict[str, Any]]
) -> None:
    session = JournalSession()
    _stub_phases(monkeypatch, session, processor_error=PaymentProcessorError("stripe unavailable"))

    with pytest.raises(HTTPException) as excinfo:
        await router.create_payment_intent(
            payload=PaymentCreate(reservation_id=100),
            session=cast(AsyncSession, session),
            user_id=200,
            gateway=FakeGateway(),
        )
    assert excinfo.value.status_code == 502
    assert "record" not in session.journal
    assert audits == []
