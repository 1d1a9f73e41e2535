"""
Subscription Microservice

Responsibilities:
- Subscription lifecycle (create, cancel, resume, renew, pause, expire)
- Plan changes with proration, immediate or at period end
- Dunning: payment failure handling, retries and escalation
- Scheduled billing sweeps
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, status

from core.config import get_settings
from core.logger import setup_service_logger
from core.nats_client import get_event_bus

from .factory import BillingComponents, create_billing_components
from .models import (
    BulkCancelRequest, BulkCancelResponse, CancelSubscriptionRequest,
    ChangePlanRequest, CreateSubscriptionRequest, DunningRunRequest,
    DunningRunSummary, DunningStatus, HealthResponse, InvoiceResponse,
    PackageAssignment, PauseStatus, PauseSubscriptionRequest,
    PaymentSignalRequest, PlanChangeResponse, PreviewPlanChangeRequest,
    ProrationPreviewResponse, RenewSubscriptionRequest, SubscriptionListResponse,
    SubscriptionResponse, SubscriptionStatus,
)
from .protocols import (
    ConcurrentModificationError,
    InvoiceNotFoundError,
    PackageNotFoundError,
    PauseLimitExceededError,
    PausingDisabledError,
    SubscriptionNotFoundError,
    SubscriptionServiceError,
    SubscriptionTerminatedError,
    SubscriptionValidationError,
)
from .routes_registry import SERVICE_METADATA

settings = get_settings()
config = settings.services

# Setup loggers
app_logger = setup_service_logger(config.service_name, settings.logging)
logger = app_logger


class SubscriptionMicroservice:
    """Subscription microservice core class"""

    def __init__(self):
        self.components: Optional[BillingComponents] = None
        self.event_bus = None

    async def initialize(self, event_bus=None):
        """Initialize the microservice"""
        try:
            self.event_bus = event_bus
            self.components = create_billing_components(settings, event_bus)
            await self.components.initialize()
            logger.info("Subscription microservice initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize subscription microservice: {e}")
            raise

    async def shutdown(self):
        """Shutdown the microservice"""
        try:
            if self.event_bus:
                await self.event_bus.close()
                logger.info("Event bus closed")
            if self.components:
                await self.components.close()
            logger.info("Subscription microservice shutdown completed")
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")


# Global microservice instance
subscription_microservice = SubscriptionMicroservice()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    event_bus = None
    if settings.infrastructure.nats_enabled:
        try:
            event_bus = await get_event_bus(config.service_name, settings.infrastructure)
            logger.info("Event bus initialized successfully")
        except Exception as e:
            logger.warning(
                f"Failed to initialize event bus: {e}. Continuing without event publishing."
            )
            event_bus = None

    await subscription_microservice.initialize(event_bus=event_bus)

    # Subscribe to payment events if event bus is available
    if event_bus and subscription_microservice.components:
        try:
            from .events.handlers import SubscriptionEventHandlers

            event_handlers = SubscriptionEventHandlers(subscription_microservice.components.dunning)
            handler_map = event_handlers.get_event_handler_map()

            for event_pattern, handler_func in handler_map.items():
                await event_bus.subscribe_to_events(pattern=event_pattern, handler=handler_func)
                logger.info(f"Subscribed to {event_pattern} events")

            logger.info(f"Event handlers registered - Subscribed to {len(handler_map)} event types")
        except Exception as e:
            logger.warning(f"Failed to subscribe to events: {e}")

    yield

    await subscription_microservice.shutdown()


# Create FastAPI application
app = FastAPI(
    title="Subscription Service",
    description="Subscription lifecycle, plan change and dunning microservice",
    version=SERVICE_METADATA["version"],
    lifespan=lifespan,
)


# Dependency injection
def get_components() -> BillingComponents:
    """Get wired billing services"""
    if not subscription_microservice.components:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Subscription service not initialized",
        )
    return subscription_microservice.components


def _http_error(e: SubscriptionServiceError) -> HTTPException:
    """Map service exceptions to HTTP status codes"""
    if isinstance(e, (SubscriptionNotFoundError, InvoiceNotFoundError, PackageNotFoundError)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, SubscriptionValidationError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(e, (ConcurrentModificationError, SubscriptionTerminatedError)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(e, (PauseLimitExceededError, PausingDisabledError)):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    else:
        logger.error(f"Subscription service error: {e}")
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=str(e))


# ====================
# Health Endpoints
# ====================

@app.get("/health")
async def health_check():
    """Service health check"""
    return {
        "status": "healthy",
        "service": config.service_name,
        "port": config.service_port,
        "version": SERVICE_METADATA["version"],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/health/detailed", response_model=HealthResponse)
async def detailed_health_check(components: BillingComponents = Depends(get_components)):
    """Detailed health check"""
    database_connected = False
    db = getattr(components.lifecycle.repository, "db", None)
    if db is not None:
        database_connected = bool(await db.health_check())

    return HealthResponse(
        status="healthy" if database_connected else "degraded",
        service=config.service_name,
        port=config.service_port,
        version=SERVICE_METADATA["version"],
        timestamp=datetime.now(timezone.utc).isoformat(),
        database_connected=database_connected,
    )


# ====================
# Subscription Endpoints
# ====================

@app.post("/api/v1/subscriptions", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    request: CreateSubscriptionRequest,
    components: BillingComponents = Depends(get_components),
):
    """Create a subscription for a fulfilled package assignment"""
    try:
        assignment = PackageAssignment(
            assignment_id=request.package_assignment_id,
            workspace_id=request.workspace_id,
            package_code=request.package_code,
        )
        subscription = await components.lifecycle.create(
            assignment,
            billing_cycle=request.billing_cycle,
            gateway=request.gateway,
            gateway_subscription_id=request.gateway_subscription_id,
            gateway_customer_id=request.gateway_customer_id,
        )
        return SubscriptionResponse(success=True, message="Subscription created", subscription=subscription)
    except SubscriptionServiceError as e:
        raise _http_error(e)


@app.get("/api/v1/subscriptions", response_model=SubscriptionListResponse)
async def list_subscriptions(
    workspace_id: Optional[str] = Query(None, description="Filter by workspace ID"),
    status_filter: Optional[SubscriptionStatus] = Query(None, alias="status", description="Filter by status"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=100, description="Items per page"),
    components: BillingComponents = Depends(get_components),
):
    """List subscriptions with filters"""
    try:
        subscriptions = await components.lifecycle.list_subscriptions(
            workspace_id=workspace_id,
            status=status_filter,
            page=page,
            page_size=page_size,
        )
        return SubscriptionListResponse(
            success=True,
            message=f"Found {len(subscriptions)} subscriptions",
            subscriptions=subscriptions,
            total=len(subscriptions),
        )
    except SubscriptionServiceError as e:
        raise _http_error(e)


@app.get("/api/v1/subscriptions/expiring", response_model=SubscriptionListResponse)
async def get_expiring_subscriptions(
    days: int = Query(7, ge=1, le=365, description="Look-ahead window in days"),
    components: BillingComponents = Depends(get_components),
):
    """Active subscriptions whose period ends within the window"""
    subscriptions = await components.lifecycle.get_expiring_soon(days)
    return SubscriptionListResponse(
        success=True,
        message=f"{len(subscriptions)} subscriptions expiring within {days} days",
        subscriptions=subscriptions,
        total=len(subscriptions),
    )


@app.post("/api/v1/subscriptions/bulk-cancel", response_model=BulkCancelResponse)
async def bulk_cancel_subscriptions(
    request: BulkCancelRequest,
    components: BillingComponents = Depends(get_components),
):
    """Administrative immediate cancellation of several subscriptions"""
    results = await components.lifecycle.bulk_cancel(
        request.subscription_ids, reason=request.reason, expire=request.expire
    )
    ended = sum(1 for outcome in results.values() if outcome in ("cancelled", "expired"))
    return BulkCancelResponse(
        success=ended == len(results),
        message=f"Ended {ended} of {len(results)} subscriptions",
        results=results,
    )


@app.get("/api/v1/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: str,
    components: BillingComponents = Depends(get_components),
):
    """Get subscription by ID"""
    try:
        subscription = await components.lifecycle.get_subscription(subscription_id)
        return SubscriptionResponse(success=True, message="Subscription found", subscription=subscription)
    except SubscriptionServiceError as e:
        raise _http_error(e)


@app.post("/api/v1/subscriptions/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: str,
    request: CancelSubscriptionRequest,
    components: BillingComponents = Depends(get_components),
):
    """Cancel at period end, or end immediately"""
    try:
        if request.immediate:
            subscription = await components.lifecycle.cancel_immediately(
                subscription_id, reason=request.reason, expire=request.expire
            )
            message = f"Subscription ended ({subscription.status.value})"
        else:
            subscription = await components.lifecycle.request_cancellation_at_period_end(
                subscription_id, reason=request.reason
            )
            message = f"Subscription will cancel at {subscription.current_period_end.isoformat()}"
        return SubscriptionResponse(success=True, message=message, subscription=subscription)
    except SubscriptionServiceError as e:
        raise _http_error(e)


@app.post("/api/v1/subscriptions/{subscription_id}/resume", response_model=SubscriptionResponse)
async def resume_subscription(
    subscription_id: str,
    components: BillingComponents = Depends(get_components),
):
    """Withdraw a pending cancellation"""
    try:
        subscription = await components.lifecycle.resume(subscription_id)
        return SubscriptionResponse(success=True, message="Subscription resumed", subscription=subscription)
    except SubscriptionServiceError as e:
        raise _http_error(e)


@app.post("/api/v1/subscriptions/{subscription_id}/renew", response_model=SubscriptionResponse)
async def renew_subscription(
    subscription_id: str,
    request: Optional[RenewSubscriptionRequest] = None,
    components: BillingComponents = Depends(get_components),
):
    """Extend the subscription by one period"""
    request = request or RenewSubscriptionRequest()
    try:
        subscription = await components.lifecycle.renew(
            subscription_id, supersede_cancellation=request.supersede_cancellation
        )
        return SubscriptionResponse(success=True, message="Subscription renewed", subscription=subscription)
    except SubscriptionServiceError as e:
        raise _http_error(e)


@app.post("/api/v1/subscriptions/{subscription_id}/expire", response_model=SubscriptionResponse)
async def expire_subscription(
    subscription_id: str,
    reason: Optional[str] = Query(None, description="Reason for expiry"),
    components: BillingComponents = Depends(get_components),
):
    """End the subscription as expired"""
    try:
        subscription = await components.lifecycle.expire(subscription_id, reason=reason)
        return SubscriptionResponse(success=True, message="Subscription expired", subscription=subscription)
    except SubscriptionServiceError as e:
        raise _http_error(e)


# ====================
# Pause Endpoints
# ====================

@app.post("/api/v1/subscriptions/{subscription_id}/pause", response_model=SubscriptionResponse)
async def pause_subscription(
    subscription_id: str,
    request: Optional[PauseSubscriptionRequest] = None,
    components: BillingComponents = Depends(get_components),
):
    """Voluntary pause"""
    request = request or PauseSubscriptionRequest()
    try:
        subscription = await components.lifecycle.pause(subscription_id, force=request.force)
        return SubscriptionResponse(success=True, message="Subscription paused", subscription=subscription)
    except SubscriptionServiceError as e:
        raise _http_error(e)


@app.post("/api/v1/subscriptions/{subscription_id}/unpause", response_model=SubscriptionResponse)
async def unpause_subscription(
    subscription_id: str,
    components: BillingComponents = Depends(get_components),
):
    try:
        subscription = await components.lifecycle.unpause(subscription_id)
        return SubscriptionResponse(success=True, message="Subscription unpaused", subscription=subscription)
    except SubscriptionServiceError as e:
        raise _http_error(e)


@app.get("/api/v1/subscriptions/{subscription_id}/pause-status", response_model=PauseStatus)
async def get_pause_status(
    subscription_id: str,
    components: BillingComponents = Depends(get_components),
):
    try:
        return await components.lifecycle.get_pause_status(subscription_id)
    except SubscriptionServiceError as e:
        raise _http_error(e)


# ====================
# Plan Change Endpoints
# ====================

@app.post("/api/v1/subscriptions/{subscription_id}/plan-change", response_model=PlanChangeResponse)
async def change_plan(
    subscription_id: str,
    request: ChangePlanRequest,
    components: BillingComponents = Depends(get_components),
):
    """Change package now, or schedule it for period end"""
    try:
        result = await components.plan_changes.change_plan(
            subscription_id,
            request.new_package_code,
            prorate=request.prorate,
            immediate=request.immediate,
        )
        return PlanChangeResponse(
            success=True,
            message="Plan changed" if result.immediate else "Plan change scheduled",
            subscription=result.subscription,
            proration=result.proration.to_dict() if result.proration else None,
            immediate=result.immediate,
        )
    except SubscriptionServiceError as e:
        raise _http_error(e)


@app.post("/api/v1/subscriptions/{subscription_id}/plan-change/preview", response_model=ProrationPreviewResponse)
async def preview_plan_change(
    subscription_id: str,
    request: PreviewPlanChangeRequest,
    components: BillingComponents = Depends(get_components),
):
    """Proration for a prospective change"""
    try:
        proration = await components.plan_changes.preview_plan_change(
            subscription_id, request.new_package_code, request.billing_cycle
        )
        return ProrationPreviewResponse(success=True, message="Proration calculated", proration=proration.to_dict())
    except SubscriptionServiceError as e:
        raise _http_error(e)


@app.get("/api/v1/subscriptions/{subscription_id}/plan-change")
async def get_pending_plan_change(
    subscription_id: str,
    components: BillingComponents = Depends(get_components),
):
    try:
        pending = await components.plan_changes.get_pending_plan_change(subscription_id)
        return {
            "success": True,
            "has_pending_plan_change": pending is not None,
            "pending_plan_change": pending.model_dump(mode="json") if pending else None,
        }
    except SubscriptionServiceError as e:
        raise _http_error(e)


@app.delete("/api/v1/subscriptions/{subscription_id}/plan-change", response_model=SubscriptionResponse)
async def cancel_scheduled_plan_change(
    subscription_id: str,
    components: BillingComponents = Depends(get_components),
):
    try:
        subscription = await components.plan_changes.cancel_scheduled_plan_change(subscription_id)
        return SubscriptionResponse(success=True, message="Scheduled plan change cancelled", subscription=subscription)
    except SubscriptionServiceError as e:
        raise _http_error(e)


# ====================
# Dunning Endpoints
# ====================

@app.get("/api/v1/subscriptions/{subscription_id}/dunning-status", response_model=DunningStatus)
async def get_dunning_status(
    subscription_id: str,
    components: BillingComponents = Depends(get_components),
):
    try:
        subscription = await components.lifecycle.get_subscription(subscription_id)
        return await components.dunning.get_dunning_status(subscription)
    except SubscriptionServiceError as e:
        raise _http_error(e)


@app.post("/api/v1/dunning/payment-failed", response_model=InvoiceResponse)
async def payment_failed(
    request: PaymentSignalRequest,
    components: BillingComponents = Depends(get_components),
):
    """Record a failed charge for an invoice"""
    try:
        invoice = await components.dunning.handle_payment_failure(request.invoice_id, request.subscription_id)
        if invoice is None:
            raise ConcurrentModificationError(f"Invoice {request.invoice_id} changed concurrently")
        return InvoiceResponse(success=True, message="Payment failure recorded", invoice=invoice)
    except SubscriptionServiceError as e:
        raise _http_error(e)


@app.post("/api/v1/dunning/payment-recovered", response_model=InvoiceResponse)
async def payment_recovered(
    request: PaymentSignalRequest,
    components: BillingComponents = Depends(get_components),
):
    """Record a successful charge for an invoice"""
    try:
        invoice = await components.dunning.handle_payment_recovery(request.invoice_id, request.subscription_id)
        if invoice is None:
            raise ConcurrentModificationError(f"Invoice {request.invoice_id} changed concurrently")
        return InvoiceResponse(success=True, message="Payment recovery recorded", invoice=invoice)
    except SubscriptionServiceError as e:
        raise _http_error(e)


@app.post("/api/v1/dunning/invoices/{invoice_id}/retry")
async def retry_invoice_payment(
    invoice_id: str,
    components: BillingComponents = Depends(get_components),
):
    """Charge an outstanding invoice again"""
    try:
        succeeded = await components.dunning.retry_payment(invoice_id)
        return {
            "success": succeeded,
            "message": "Payment succeeded" if succeeded else "Payment retry failed",
            "invoice_id": invoice_id,
        }
    except SubscriptionServiceError as e:
        raise _http_error(e)


@app.post("/api/v1/dunning/run", response_model=DunningRunSummary)
async def run_billing_sweep(
    request: Optional[DunningRunRequest] = None,
    components: BillingComponents = Depends(get_components),
):
    """Run one or all sweep stages"""
    request = request or DunningRunRequest()
    try:
        return await components.sweeps.run(stage=request.stage, dry_run=request.dry_run)
    except SubscriptionServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


if __name__ == "__main__":
    uvicorn.run(
        "microservices.subscription_service.main:app",
        host=config.service_host,
        port=config.service_port,
        reload=config.debug,
        log_level=settings.logging.log_level.lower(),
    )
