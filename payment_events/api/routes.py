"""
API routes for the payment-event core.

Routes stay thin: they translate HTTP to service calls. Domain errors
(PaymentEventsError) are rendered by the application's exception handler.
"""
import time
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from payment_events.bootstrap import PaymentCore
from payment_events.core.exceptions import VerificationError

from .schemas import (
    ChargeRequest,
    ChargeResponse,
    CheckoutRequest,
    CheckoutResponse,
    HealthCheckResponse,
    JobResponse,
    LoreDropRequest,
    LoreDropResponse,
    RefundRequest,
    RefundResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
billing_router = APIRouter(tags=["billing"])
jobs_router = APIRouter(prefix="/jobs", tags=["jobs"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_core(request: Request) -> PaymentCore:
    """The core attached to the running application."""
    return request.app.state.core


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Verify and process a Stripe webhook delivery",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    core: PaymentCore = Depends(get_core),
) -> Any:
    """
    Handle Stripe webhook events.

    400 on verification failure and 500 on internal failure, both without
    details, so the provider re-delivers only what might succeed later.
    """
    start_time = time.time()
    body = await request.body()

    try:
        result = await core.webhooks.handle(body, stripe_signature)
    except VerificationError:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"received": False})
    except Exception as e:
        logger.error("api_webhook_unexpected_error", error=str(e), error_type=type(e).__name__)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"received": False}
        )

    logger.info(
        "api_webhook_handled",
        event_id=result.get("event_id"),
        status=result.get("status"),
        duration_seconds=time.time() - start_time,
    )
    return {"received": True}


@billing_router.post(
    "/checkout",
    response_model=CheckoutResponse,
    summary="Create a checkout",
    description="Hosted checkout for one product or a list of items",
)
async def create_checkout(
    request: CheckoutRequest,
    core: PaymentCore = Depends(get_core),
) -> Dict[str, Any]:
    """Create a checkout session or return a static payment link."""
    result = await core.checkout.create_checkout(
        success_url=request.success_url,
        cancel_url=request.cancel_url,
        product_id=request.product_id,
        items=[item.model_dump() for item in request.items] if request.items is not None else None,
        user_id=request.user_id,
    )
    return {
        "url": result.url,
        "session_id": result.session_id,
        "integrity_token": result.integrity_token,
        "mode": result.mode,
        "static_link": result.is_static_link,
    }


@billing_router.post(
    "/charges",
    response_model=ChargeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a charge",
)
async def create_charge(
    request: ChargeRequest,
    core: PaymentCore = Depends(get_core),
) -> Dict[str, Any]:
    logger.info("api_create_charge_request", user_id=request.user_id, amount=request.amount)
    charge = await core.charges.create_charge(
        user_id=request.user_id,
        amount=request.amount,
        currency=request.currency,
        source=request.source,
        description=request.description,
        coupon=request.coupon,
    )
    return {
        "id": charge.id,
        "status": charge.status,
        "amount": charge.amount,
        "currency": charge.currency,
    }


@billing_router.post(
    "/refunds",
    response_model=RefundResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Refund a charge",
)
async def refund_charge(
    request: RefundRequest,
    core: PaymentCore = Depends(get_core),
) -> Dict[str, Any]:
    logger.info("api_refund_request", user_id=request.user_id, charge_id=request.charge_id)
    refund = await core.charges.refund_charge(request.charge_id, request.user_id)
    return {
        "refund_id": refund.id,
        "charge_id": refund.charge_id,
        "status": refund.status,
        "amount": refund.amount,
    }


@billing_router.post(
    "/lore-drops",
    response_model=LoreDropResponse,
    summary="Record a lore drop",
    description="Meter one lore drop against the account's tier allowance",
)
async def record_lore_drop(
    request: LoreDropRequest,
    core: PaymentCore = Depends(get_core),
) -> Dict[str, Any]:
    decision = await core.charges.record_lore_drop(request.user_id)
    return {
        "user_id": request.user_id,
        "tier": decision.tier,
        "count": decision.count,
        "limit": decision.limit,
    }


@jobs_router.get("/{job_id}", response_model=JobResponse, summary="Get a job")
async def get_job(job_id: str, core: PaymentCore = Depends(get_core)) -> Dict[str, Any]:
    job = await core.jobs.get(job_id)
    return job.to_dict()


@jobs_router.post(
    "/{job_id}/replay",
    response_model=JobResponse,
    summary="Replay a pending job",
    description="Re-run a job left pending; terminal jobs are refused with 409",
)
async def replay_job(job_id: str, core: PaymentCore = Depends(get_core)) -> Dict[str, Any]:
    job = await core.jobs.replay(job_id)
    logger.info("api_job_replayed", job_id=job_id, status=job.status)
    return job.to_dict()


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(core: PaymentCore = Depends(get_core)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await core.health.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(core: PaymentCore = Depends(get_core)) -> Dict[str, Any]:
    return await core.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(core: PaymentCore = Depends(get_core)) -> Dict[str, Any]:
    result = await core.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
