import logging
from datetime import datetime
from typing import List
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from tablepay.config import settings
from tablepay.deps import Caller, get_orchestrator, require_auth, require_staff
from tablepay.errors import SettlementError, SignatureInvalid, UnknownTransactionRef
from tablepay.models.core import PaymentMethod, PaymentStatus
from tablepay.providers.base import Ack
from tablepay.schemas.payments import (
    CreatePaymentData, CreatePaymentRes, DispatchIn, PaymentCreate, PaymentDetailOut, PaymentOut,
)
from tablepay.services.settlement import SettlementOrchestrator, SettlementResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def _create_res(result: SettlementResult) -> CreatePaymentRes:
    if result.payment.status == PaymentStatus.SUCCESS:
        message = "Payment successful"
    elif result.payment_url:
        message = "Payment created, continue at the provider"
    else:
        message = "Payment created"
    return CreatePaymentRes(
        message=message,
        data=CreatePaymentData(payment=result.payment, payment_url=result.payment_url, orders=result.orders),
    )


def _callback_adapter(orch: SettlementOrchestrator, provider: str):
    adapter = orch.adapter_by_slug(provider)
    if not adapter or not adapter.accepts_callbacks:
        raise HTTPException(status_code=404, detail="Unknown payment provider")
    return adapter


def _result_url(**params) -> str:
    return f"{settings.CLIENT_URL.rstrip('/')}/en/guest/orders/payment-result?{urlencode(params)}"


@router.post("", response_model=CreatePaymentRes)
def create_payment(
    body: PaymentCreate,
    caller: Caller = Depends(require_auth),
    orch: SettlementOrchestrator = Depends(get_orchestrator),
):
    """Settle every unpaid order of the guest in one payment."""
    return _create_res(orch.initiate(caller, body))


@router.get("", response_model=List[PaymentOut])
def list_payments(
    from_date: datetime | None = Query(default=None, alias="fromDate"),
    to_date: datetime | None = Query(default=None, alias="toDate"),
    status: PaymentStatus | None = None,
    payment_method: PaymentMethod | None = Query(default=None, alias="paymentMethod"),
    _: Caller = Depends(require_staff),
    orch: SettlementOrchestrator = Depends(get_orchestrator),
):
    return orch.list_payments(from_date, to_date, status, payment_method)


@router.get("/guest/mine", response_model=List[PaymentOut])
def my_payments(caller: Caller = Depends(require_auth), orch: SettlementOrchestrator = Depends(get_orchestrator)):
    return orch.guest_payments(caller.id)


@router.get("/{provider}/return")
def provider_return(provider: str, request: Request, orch: SettlementOrchestrator = Depends(get_orchestrator)):
    """The guest's browser lands here from the provider; bounce it to the client app."""
    adapter = _callback_adapter(orch, provider)
    try:
        result = orch.handle_return(adapter, dict(request.query_params))
    except SettlementError as e:
        logger.warning("return from %s not settled: %s", provider, e.message)
        return RedirectResponse(_result_url(success="false", error=e.message), status_code=302)
    p = result.payment
    return RedirectResponse(
        _result_url(
            success=str(p.status == PaymentStatus.SUCCESS).lower(),
            amount=p.amount,
            txnRef=p.transaction_ref,
            method=p.payment_method.value,
        ),
        status_code=302,
    )


def _webhook(orch: SettlementOrchestrator, adapter, raw_body: bytes, signature: str | None) -> Ack:
    try:
        return orch.handle_webhook(adapter, raw_body, signature).ack
    except UnknownTransactionRef:
        return Ack.UNKNOWN_REF
    except SignatureInvalid:
        return Ack.INVALID_SIGNATURE
    except SettlementError as e:
        # never answer the provider with a 5xx for a callback we understood
        logger.warning("webhook from %s ignored: %s", adapter.slug, e.message)
        return Ack.IGNORED


@router.post("/{provider}/webhook")
async def provider_webhook(provider: str, request: Request,
                           orch: SettlementOrchestrator = Depends(get_orchestrator)):
    adapter = _callback_adapter(orch, provider)
    raw_body = await request.body()
    signature = request.headers.get(adapter.signature_header) if adapter.signature_header else None
    ack = await run_in_threadpool(_webhook, orch, adapter, raw_body, signature)
    status_code, content = adapter.acknowledge(ack)
    return JSONResponse(status_code=status_code, content=content)


@router.post("/{payment_id}/dispatch", response_model=CreatePaymentRes)
def dispatch_payment(
    payment_id: str,
    body: DispatchIn | None = None,
    caller: Caller = Depends(require_auth),
    orch: SettlementOrchestrator = Depends(get_orchestrator),
):
    """Retry the provider call for a payment that is still Pending without a checkout URL."""
    return _create_res(orch.resume(payment_id, caller, body.return_url if body else None))


@router.post("/{payment_id}/cancel", response_model=PaymentDetailOut)
def cancel_payment(
    payment_id: str,
    staff: Caller = Depends(require_staff),
    orch: SettlementOrchestrator = Depends(get_orchestrator),
):
    result = orch.cancel(payment_id, staff)
    return PaymentDetailOut(**result.payment.model_dump(), orders=result.orders)


@router.get("/{payment_id}", response_model=PaymentDetailOut)
def get_payment(
    payment_id: str,
    caller: Caller = Depends(require_auth),
    orch: SettlementOrchestrator = Depends(get_orchestrator),
):
    result = orch.get_payment(payment_id, caller)
    return PaymentDetailOut(**result.payment.model_dump(), orders=result.orders)
