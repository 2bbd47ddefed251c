from functools import lru_cache
from typing import Optional
from urllib.parse import urlencode

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from commerce_payments import queries
from commerce_payments.auth import CurrentUser, customer
from commerce_payments.checkout import CheckoutOrchestrator
from commerce_payments.config import Settings, get_settings
from commerce_payments.database import get_db
from commerce_payments.enums import PaymentStatus, UserRole
from commerce_payments.errors import PaymentError, ProviderError
from commerce_payments.fallback import FallbackVerifier
from commerce_payments.notifications import LoggingNotifier, PaymentNotifier
from commerce_payments.providers import PaymentProvider, create_provider
from commerce_payments.reconciliation import ReconciliationEngine
from commerce_payments.schemas import (
    CaptureRequest,
    CartCheckoutRequest,
    SubscriptionCheckoutRequest,
)
from commerce_payments.shipping import ShippingCalculator

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/payment", tags=["payment"])


@lru_cache
def get_provider() -> PaymentProvider:
    return create_provider(get_settings())


def get_notifier() -> PaymentNotifier:
    return LoggingNotifier()


def get_engine(
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_provider),
    notifier: PaymentNotifier = Depends(get_notifier),
    settings: Settings = Depends(get_settings),
) -> ReconciliationEngine:
    return ReconciliationEngine(db, provider, notifier, settings.currency.value)


def get_checkout(
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_provider),
    settings: Settings = Depends(get_settings),
) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(db, provider, ShippingCalculator(db), settings)


# --- checkout ---

@router.post("/checkout/cart")
def checkout_cart(
    request: CartCheckoutRequest,
    user: CurrentUser = Depends(customer),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
):
    return checkout.checkout_cart(user.id, request)


@router.post("/checkout/subscription")
def checkout_subscription(
    request: SubscriptionCheckoutRequest,
    user: CurrentUser = Depends(customer),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
):
    return checkout.checkout_subscription(user.id, request.plan_id)


@router.post("/capture")
def capture_payment(
    request: CaptureRequest,
    user: CurrentUser = Depends(customer),
    engine: ReconciliationEngine = Depends(get_engine),
):
    return engine.capture_payment(request.token)


# --- processor callbacks ---

@router.post("/webhook")
async def handle_webhook(request: Request, engine: ReconciliationEngine = Depends(get_engine)):
    # Signatures are computed over the exact bytes received
    raw_body = await request.body()
    try:
        outcome = await run_in_threadpool(engine.handle_webhook, dict(request.headers), raw_body)
    except ProviderError as exc:
        log.error("webhook_processing_failed", error=exc.detail)
        raise HTTPException(status_code=500, detail="Webhook processing failed") from exc
    return outcome.to_response()


def _frontend_redirect(settings: Settings, path: str, **params) -> RedirectResponse:
    query = urlencode({k: v for k, v in params.items() if v is not None})
    url = f"{settings.frontend_url}{path}"
    return RedirectResponse(f"{url}?{query}" if query else url, status_code=303)


@router.get("/redirect/success")
def redirect_success(
    session_id: Optional[str] = None,
    token: Optional[str] = None,
    engine: ReconciliationEngine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
):
    provider_ref = session_id or token
    if not provider_ref:
        return _frontend_redirect(settings, "/payment/failure", reason="missing_reference")

    try:
        result = engine.capture_payment(provider_ref)
    except PaymentError as exc:
        log.warning("redirect_capture_failed", provider_ref=provider_ref, error=exc.detail)
        return _frontend_redirect(settings, "/payment/failure", reason=exc.detail)

    if result["status"] in (PaymentStatus.FAILED.value, PaymentStatus.CANCELLED.value):
        return _frontend_redirect(settings, "/payment/failure", status=result["status"],
                                  paymentId=result["paymentId"])
    return _frontend_redirect(settings, "/payment/success", status=result["status"],
                              paymentId=result["paymentId"])


@router.get("/redirect/cancel")
def redirect_cancel(
    session_id: Optional[str] = None,
    token: Optional[str] = None,
    engine: ReconciliationEngine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
):
    provider_ref = session_id or token
    log.info("payment_cancelled_by_user", provider_ref=provider_ref)
    if not provider_ref:
        return _frontend_redirect(settings, "/payment/cancelled")

    # An abandoned session is still open on the provider side and stays PENDING
    try:
        result = engine.capture_payment(provider_ref)
    except PaymentError as exc:
        log.warning("redirect_capture_failed", provider_ref=provider_ref, error=exc.detail)
        return _frontend_redirect(settings, "/payment/cancelled", token=provider_ref)
    return _frontend_redirect(settings, "/payment/cancelled", token=provider_ref, status=result["status"],
                              paymentId=result["paymentId"])


# --- queries ---

@router.get("/status/{payment_id}")
def get_payment_status(
    payment_id: str,
    user: CurrentUser = Depends(customer),
    db: Session = Depends(get_db),
):
    owner = None if user.role == UserRole.ADMIN else user.id
    return queries.get_payment_status(db, payment_id, user_id=owner)


@router.post("/verify/{payment_id}")
def verify_payment(
    payment_id: str,
    user: CurrentUser = Depends(customer),
    engine: ReconciliationEngine = Depends(get_engine),
    db: Session = Depends(get_db),
):
    owner = None if user.role == UserRole.ADMIN else user.id
    queries.ensure_payment_access(db, payment_id, user_id=owner)
    outcome = FallbackVerifier(engine).verify_payment_status(payment_id)
    return {
        "paymentId": outcome.payment_id or payment_id,
        "outcome": outcome.outcome,
        "status": outcome.status.value if outcome.status else None,
        "reason": outcome.reason,
    }


@router.get("/subscription/status")
def subscription_status(user: CurrentUser = Depends(customer), db: Session = Depends(get_db)):
    return queries.get_user_subscription_status(db, user.id)


@router.get("/subscription/history")
def subscription_history(user: CurrentUser = Depends(customer), db: Session = Depends(get_db)):
    return queries.get_user_subscription_history(db, user.id)
