"""
FastAPI server exposing the escrow engine.

Callers authenticate with the Telegram Mini App init data in an
``Authorization: tma <initData>`` header; the verified Telegram user id is
the only identity the escrow engine trusts. Escrow errors are mapped to HTTP
responses with a ``{error, detail, current_status, retryable}`` body.

The transfer provider reports failed deposit transfers to
``/webhooks/transfers``; such escrows are moved to ``disputed``.
"""

import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Optional, Any, Dict

from fastapi import Depends, FastAPI, Header, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config import get_config, Config
from escrow_errors import (
    DatabaseError,
    EscrowError,
    EscrowNotFound,
    InvalidState,
    TransferFailed,
    TransferTimeout,
    Unauthenticated,
    Unauthorized,
    ValidationFailed,
)
from escrow_models import EscrowState
from escrow_service import EscrowService
from escrow_state_machine import Accept, Cancel, Confirm, Dispute, OpenDeposit, Reject
from identity import TelegramIdentityVerifier
from utils import sanitize_input

logger = logging.getLogger(__name__)

# Checked in order; subclasses before their bases
ERROR_STATUS = (
    (Unauthenticated, status.HTTP_401_UNAUTHORIZED),
    (Unauthorized, status.HTTP_403_FORBIDDEN),
    (EscrowNotFound, status.HTTP_404_NOT_FOUND),
    (InvalidState, status.HTTP_409_CONFLICT),
    (ValidationFailed, status.HTTP_400_BAD_REQUEST),
    (TransferTimeout, status.HTTP_504_GATEWAY_TIMEOUT),
    (TransferFailed, status.HTTP_502_BAD_GATEWAY),
    (DatabaseError, status.HTTP_503_SERVICE_UNAVAILABLE),
)

FAILED_TRANSFER_STATUSES = ('failed', 'reverted')
CONFIRMED_TRANSFER_STATUSES = ('success', 'confirmed')


# ==================== Pydantic Models ====================

class DepositRequest(BaseModel):
    """Open an escrow for a deposit already paid into the holding account."""
    listing_id: str = Field(min_length=1)
    deposit_amount: int = Field(gt=0)
    total_price: int = Field(gt=0)
    deposit_receipt: str = Field(min_length=1, max_length=200)


class RejectRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class ConfirmRequest(BaseModel):
    """Buyer confirmation carries the remaining payment receipt; seller sends nothing."""
    receipt: Optional[str] = Field(default=None, max_length=200)


class DisputeRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class MessageRequest(BaseModel):
    body: str = Field(min_length=1, max_length=2000)


class TransferWebhookEvent(BaseModel):
    """Transfer status notification from the transfer provider."""
    receipt: str
    status: str
    reason: Optional[str] = None


def error_response(exc: EscrowError) -> JSONResponse:
    """Map an escrow error to its HTTP response."""
    code = next(
        (http_status for cls, http_status in ERROR_STATUS if isinstance(exc, cls)),
        status.HTTP_500_INTERNAL_SERVER_ERROR
    )
    body = exc.to_dict()
    body.setdefault("current_status", None)
    return JSONResponse(status_code=code, content=body)


def create_app(
    service: EscrowService,
    verifier: TelegramIdentityVerifier,
    config: Optional[Config] = None,
    automation: Optional[Any] = None
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        service: Escrow transition executor
        verifier: Identity collaborator for caller authentication
        config: Configuration instance (optional, will load if not provided)
        automation: EscrowAutomation, reported on /health when given

    Returns:
        Configured FastAPI app
    """
    config = config or get_config()

    app = FastAPI(
        title="P2P Escrow Server",
        description="Escrow lifecycle API for peer-to-peer marketplace listings",
        version=config.app_version
    )

    async def current_user(authorization: Optional[str] = Header(default=None)) -> str:
        """Resolve the verified caller identity from the Authorization header."""
        if not authorization:
            raise Unauthenticated("missing Authorization header")
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() != "tma" or not credentials.strip():
            raise Unauthenticated("expected 'Authorization: tma <initData>'")
        return verifier.verify(credentials.strip())

    # ==================== Error Handlers ====================

    @app.exception_handler(EscrowError)
    async def escrow_error_handler(request: Request, exc: EscrowError):
        if isinstance(exc, (TransferFailed, TransferTimeout, DatabaseError)):
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        else:
            logger.warning(f"{request.method} {request.url.path} refused: {exc.code} ({exc})")
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
            for err in exc.errors()
        )
        return error_response(ValidationFailed(errors or "invalid request"))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """
        Global exception handler for unhandled errors.

        Returns:
            JSON response without internal details
        """
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "internal_error",
                "detail": "Internal server error",
                "current_status": None,
                "retryable": True,
                "path": str(request.url.path)
            }
        )

    # ==================== Info ====================

    @app.get("/", tags=["Info"])
    async def root():
        """Welcome endpoint with API information."""
        return {
            "service": config.app_name,
            "version": config.app_version,
            "status": "running",
            "endpoints": {
                "deposit": "/escrow/deposit",
                "escrow": "/escrow/{escrow_id}",
                "escrows": "/escrows",
                "health": "/health",
                "docs": "/docs"
            }
        }

    @app.get("/health", tags=["Health"])
    async def health_check():
        """
        Health check endpoint.

        Returns:
            JSON response with service health status
        """
        health_status: Dict[str, Any] = {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": "escrow-api",
            "simulated_transfers": config.uses_simulated_transfers,
        }

        try:
            health_status["escrows"] = await service.get_stats()
            health_status["database"] = "connected"
        except Exception as e:
            logger.error(f"Health check store query failed: {e}")
            health_status["database"] = "unavailable"
            health_status["status"] = "degraded"

        if automation is not None:
            health_status["automation"] = automation.get_stats()

        status_code = (
            status.HTTP_200_OK if health_status["status"] == "healthy"
            else status.HTTP_503_SERVICE_UNAVAILABLE
        )
        return JSONResponse(content=health_status, status_code=status_code)

    # ==================== Escrow Actions ====================

    @app.post("/escrow/deposit", tags=["Escrow"], status_code=status.HTTP_201_CREATED)
    async def open_deposit(body: DepositRequest, caller: str = Depends(current_user)):
        payload = OpenDeposit(
            listing_id=body.listing_id,
            deposit_amount=body.deposit_amount,
            total_price=body.total_price,
            deposit_receipt=body.deposit_receipt.strip()
        )
        result = await service.execute(caller, payload)
        return result.to_dict()

    @app.post("/escrow/{escrow_id}/accept", tags=["Escrow"])
    async def accept(escrow_id: str, caller: str = Depends(current_user)):
        result = await service.execute(caller, Accept(), escrow_id)
        return result.to_dict()

    @app.post("/escrow/{escrow_id}/reject", tags=["Escrow"])
    async def reject(
        escrow_id: str,
        body: Optional[RejectRequest] = None,
        caller: str = Depends(current_user)
    ):
        reason = sanitize_input(body.reason, max_length=500) if body else ""
        result = await service.execute(caller, Reject(reason=reason), escrow_id)
        return result.to_dict()

    @app.post("/escrow/{escrow_id}/cancel", tags=["Escrow"])
    async def cancel(escrow_id: str, caller: str = Depends(current_user)):
        result = await service.execute(caller, Cancel(), escrow_id)
        return result.to_dict()

    @app.post("/escrow/{escrow_id}/confirm", tags=["Escrow"])
    async def confirm(
        escrow_id: str,
        body: Optional[ConfirmRequest] = None,
        caller: str = Depends(current_user)
    ):
        receipt = body.receipt.strip() if body and body.receipt else None
        result = await service.execute(caller, Confirm(receipt=receipt), escrow_id)
        return result.to_dict()

    @app.post("/escrow/{escrow_id}/dispute", tags=["Escrow"])
    async def dispute(
        escrow_id: str,
        body: DisputeRequest,
        caller: str = Depends(current_user)
    ):
        reason = sanitize_input(body.reason, max_length=500)
        result = await service.execute(caller, Dispute(reason=reason), escrow_id)
        return result.to_dict()

    # ==================== Escrow Reads ====================

    @app.get("/escrows", tags=["Escrow"])
    async def list_escrows(
        status_filter: Optional[EscrowState] = Query(default=None, alias="status"),
        limit: int = 50,
        caller: str = Depends(current_user)
    ):
        escrows = await service.list_escrows(caller, status=status_filter, limit=min(max(limit, 1), 200))
        return {"escrows": [e.to_dict() for e in escrows], "count": len(escrows)}

    @app.get("/escrow/by-listing/{listing_id}", tags=["Escrow"])
    async def escrow_for_listing(listing_id: str, caller: str = Depends(current_user)):
        return {"escrow": await service.get_escrow_for_listing(listing_id, caller)}

    @app.get("/escrow/{escrow_id}", tags=["Escrow"])
    async def get_escrow(escrow_id: str, caller: str = Depends(current_user)):
        escrow = await service.get_escrow(escrow_id, caller)
        return {"escrow": escrow.to_dict()}

    @app.get("/escrow/{escrow_id}/timeline", tags=["Escrow"])
    async def get_timeline(escrow_id: str, caller: str = Depends(current_user)):
        events = await service.get_timeline(escrow_id, caller)
        return {"events": [e.to_dict() for e in events]}

    # ==================== Messages ====================

    @app.get("/escrow/{escrow_id}/messages", tags=["Messages"])
    async def list_messages(escrow_id: str, caller: str = Depends(current_user)):
        messages = await service.list_messages(escrow_id, caller)
        return {"messages": [m.to_dict() for m in messages]}

    @app.post("/escrow/{escrow_id}/messages", tags=["Messages"], status_code=status.HTTP_201_CREATED)
    async def post_message(escrow_id: str, body: MessageRequest, caller: str = Depends(current_user)):
        message = await service.post_message(escrow_id, caller, body.body)
        return {"message": message.to_dict()}

    # ==================== Webhooks ====================

    @app.post("/webhooks/transfers", tags=["Webhooks"])
    async def transfer_webhook(
        request: Request,
        x_signature: Optional[str] = Header(default=None)
    ):
        """
        Handle transfer status notifications from the transfer provider.

        The raw body must be signed with HMAC-SHA256 using TRANSFER_WEBHOOK_SECRET
        and the hex digest sent in ``X-Signature``.
        """
        raw_body = await request.body()

        if not config.transfer_webhook_secret:
            raise Unauthorized("transfer webhook is not configured")

        expected = hmac.new(
            config.transfer_webhook_secret.encode(), raw_body, hashlib.sha256
        ).hexdigest()
        if not x_signature or not hmac.compare_digest(expected, x_signature):
            logger.warning("Rejected transfer webhook with invalid signature")
            raise Unauthenticated("invalid webhook signature")

        try:
            event = TransferWebhookEvent.model_validate_json(raw_body)
        except ValueError as e:
            raise ValidationFailed(f"Invalid webhook payload: {e}")

        logger.info(f"Transfer webhook: receipt {event.receipt} is {event.status}")

        event_status = event.status.lower()

        if event_status in CONFIRMED_TRANSFER_STATUSES:
            try:
                escrow = await service.record_deposit_confirmed(event.receipt)
            except EscrowNotFound:
                logger.info(f"Transfer webhook for unknown receipt {event.receipt} ignored")
                return {"status": "ignored"}
            return {"status": "processed", "escrow": escrow.public_view()}

        if event_status not in FAILED_TRANSFER_STATUSES:
            return {"status": "ignored"}

        reason = sanitize_input(event.reason or f"deposit transfer {event_status}", 500)
        try:
            result = await service.flag_failed_deposit(event.receipt, reason)
        except EscrowNotFound:
            logger.info(f"Transfer webhook for unknown receipt {event.receipt} ignored")
            return {"status": "ignored"}

        return {"status": "processed", "escrow": result.escrow.public_view()}

    return app
