"""Payment, withdrawal and webhook endpoints.

Handlers are thin: validation, authorization and state changes live in the
settlement engine. Engine errors become the standard error envelope through
the application's exception handler.
"""

import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Path, Query, Request, status
from starlette.concurrency import run_in_threadpool

from settlement_engine.api.dependencies import CurrentActor, Engine, Reconciler
from settlement_engine.api.schemas import (
    BalanceListResponse,
    BalanceResponse,
    ConfirmRequest,
    ErrorResponse,
    PaymentHistoryResponse,
    PaymentIntentResponse,
    PaymentRecordResponse,
    WebhookAck,
    WithdrawalResponse,
    WithdrawRequest,
)
from settlement_engine.errors import AuthorizationError
from settlement_engine.services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])

ERRORS = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}


# ============================================================================
# Confirmation and withdrawals
# ============================================================================


@router.post("/confirm", response_model=PaymentRecordResponse, responses=ERRORS)
def confirm_payment(
    engine: Engine,
    actor: CurrentActor,
    payload: ConfirmRequest,
) -> PaymentRecordResponse:
    """Confirm a payment with its provider after the payer completed checkout."""
    record = engine.confirm(
        payload.external_transaction_id, actor=actor, session_ref=payload.session_id
    )
    return PaymentRecordResponse.model_validate(record)


@router.post(
    "/withdraw",
    response_model=WithdrawalResponse,
    status_code=status.HTTP_201_CREATED,
    responses={**ERRORS, 422: {"model": ErrorResponse}},
)
def withdraw(
    engine: Engine,
    actor: CurrentActor,
    payload: WithdrawRequest,
) -> WithdrawalResponse:
    """Pay out part of the caller's available balance."""
    result = engine.withdraw(
        actor.user_id, payload.amount, payload.provider, currency=payload.currency
    )
    return WithdrawalResponse.model_validate(result)


@router.get("/balance", response_model=BalanceListResponse, responses=ERRORS)
def get_balance(
    engine: Engine,
    actor: CurrentActor,
    provider: str | None = None,
    currency: str | None = None,
) -> BalanceListResponse:
    """Balances of the caller, for one provider or all of them."""
    if provider:
        snapshots = [engine.balance(actor.user_id, provider, currency=currency)]
    else:
        snapshots = engine.all_balances(actor.user_id)
    return BalanceListResponse(items=[BalanceResponse.model_validate(s) for s in snapshots])


@router.get("/history", response_model=PaymentHistoryResponse, responses=ERRORS)
def get_history(
    engine: Engine,
    actor: CurrentActor,
    record_type: Annotated[str | None, Query(alias="type")] = None,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
    provider: str | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100, alias="pageSize")] = 20,
    user_id: Annotated[str | None, Query(alias="userId")] = None,
) -> PaymentHistoryResponse:
    """Payments and withdrawals of the caller, newest first.

    Admins may pass ``userId`` to read another user's history.
    """
    subject = actor.user_id
    if user_id and user_id != actor.user_id:
        if not actor.is_admin:
            raise AuthorizationError("Only admins can read another user's history")
        subject = user_id

    result = engine.history(
        subject,
        record_type=record_type,
        status=status_filter,
        provider=provider,
        page=page,
        page_size=page_size,
    )
    return PaymentHistoryResponse(
        items=[PaymentRecordResponse.model_validate(r) for r in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        pages=result.pages,
    )


# ============================================================================
# Webhooks
# ============================================================================


def _process_in_background(reconciler: WebhookReconciler, inbox_id: UUID) -> None:
    # The event is already durable in the inbox; a crash here is retried by
    # process_pending.
    try:
        reconciler.process(inbox_id)
    except Exception:
        logger.exception("Background processing of webhook event %s failed", inbox_id)


@router.post(
    "/webhook/{provider}",
    response_model=WebhookAck,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
)
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    reconciler: Reconciler,
    provider: Annotated[str, Path()],
) -> WebhookAck:
    """Accept a signed provider notification.

    The signature is computed over the exact bytes received, so the body is
    read raw. The response is sent once the event is in the inbox.
    """
    raw_body = await request.body()
    received = await run_in_threadpool(
        reconciler.receive, provider, raw_body, dict(request.headers)
    )
    background_tasks.add_task(_process_in_background, reconciler, received.inbox_id)
    return WebhookAck(received=True, duplicate=received.duplicate)


# ============================================================================
# Per-contract operations
# ============================================================================


@router.post(
    "/{contract_id}/intent",
    response_model=PaymentIntentResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERRORS,
)
def create_payment_intent(
    engine: Engine,
    actor: CurrentActor,
    contract_id: Annotated[str, Path()],
    provider: Annotated[str, Query()] = "stripe",
    currency: str | None = None,
) -> PaymentIntentResponse:
    """Open a charge for a contract on behalf of its payer."""
    result = engine.initiate(contract_id, actor.user_id, provider, currency=currency)
    return PaymentIntentResponse.model_validate(result)


@router.post("/{contract_id}/release", response_model=PaymentRecordResponse, responses=ERRORS)
def release_payment(
    engine: Engine,
    actor: CurrentActor,
    contract_id: Annotated[str, Path()],
) -> PaymentRecordResponse:
    """Capture escrowed funds for the payee."""
    return PaymentRecordResponse.model_validate(engine.release(contract_id, actor))


@router.post("/{contract_id}/refund", response_model=PaymentRecordResponse, responses=ERRORS)
def refund_payment(
    engine: Engine,
    actor: CurrentActor,
    contract_id: Annotated[str, Path()],
) -> PaymentRecordResponse:
    """Return a payment to its payer."""
    return PaymentRecordResponse.model_validate(engine.refund(contract_id, actor))


@router.get("/{contract_id}", response_model=PaymentRecordResponse, responses=ERRORS)
def get_payment(
    engine: Engine,
    actor: CurrentActor,
    contract_id: Annotated[str, Path()],
) -> PaymentRecordResponse:
    """Payment record of a contract, visible to its payer, payee and admins."""
    return PaymentRecordResponse.model_validate(engine.get_payment(contract_id, actor))
