"""
FastAPI server for the fashion marketplace escrow lifecycle.

Maps client actions onto EscrowService, DisputeManager, KycService and
AdminReviewService commands and maps their typed errors onto HTTP status
codes. Every request is authenticated with a bearer token resolved by the
identity provider.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from admin_review import AdminReviewService
from catalog_service import CatalogService
from config import Config, get_config
from database import DatabaseError
from dispute_manager import DisputeManager
from escrow_service import (
    AlreadyResolved,
    DuplicateDispute,
    EscrowService,
    InvalidTransition,
    Unauthorized,
    ValidationError,
)
from identity import IdentityError, IdentityProvider
from kyc_service import KycService
from models import DisputeReason, KycStatus, OrderState, Party, PaymentProof
from order_store import ConcurrentModification, DisputeNotFound, ItemNotFound, OrderNotFound, OrderStore

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500


# ==================== Request Models ====================

class CreateItemRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    price: Decimal = Field(gt=0)
    currency: str
    available: bool = True


class UpdateItemRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    price: Optional[Decimal] = Field(None, gt=0)
    currency: Optional[str] = None
    available: Optional[bool] = None


class PlaceOrderRequest(BaseModel):
    item_id: str
    designer_id: str
    quantity: int = Field(1, ge=1)
    amount: Decimal
    currency: str
    delivery_address: Optional[str] = None
    special_instructions: Optional[str] = None


class ShipOrderRequest(BaseModel):
    tracking_reference: Optional[str] = None
    carrier: Optional[str] = None
    photo_references: List[str] = Field(default_factory=list)
    notes: Optional[str] = None


class ConfirmDeliveryRequest(BaseModel):
    rating: Optional[int] = None
    review: Optional[str] = None


class OpenDisputeRequest(BaseModel):
    reason: DisputeReason
    description: str


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = None


class ResolveDisputeRequest(BaseModel):
    outcome: str
    notes: Optional[str] = None


class MarkReadRequest(BaseModel):
    notification_ids: Optional[List[str]] = None


class KycSubmitRequest(BaseModel):
    full_name: str
    document_references: List[str]


class KycReviewRequest(BaseModel):
    approve: bool
    notes: Optional[str] = None


# ==================== Error Mapping ====================

ERROR_RESPONSES = [
    (ValidationError, status.HTTP_400_BAD_REQUEST, 'validation_error'),
    (IdentityError, status.HTTP_401_UNAUTHORIZED, 'unauthenticated'),
    (Unauthorized, status.HTTP_403_FORBIDDEN, 'unauthorized'),
    (OrderNotFound, status.HTTP_404_NOT_FOUND, 'order_not_found'),
    (DisputeNotFound, status.HTTP_404_NOT_FOUND, 'dispute_not_found'),
    (ItemNotFound, status.HTTP_404_NOT_FOUND, 'item_not_found'),
    (InvalidTransition, status.HTTP_409_CONFLICT, 'invalid_transition'),
    (DuplicateDispute, status.HTTP_409_CONFLICT, 'duplicate_dispute'),
    (AlreadyResolved, status.HTTP_409_CONFLICT, 'already_resolved'),
    (ConcurrentModification, status.HTTP_409_CONFLICT, 'concurrent_modification'),
    (DatabaseError, status.HTTP_503_SERVICE_UNAVAILABLE, 'database_error'),
]


def _error_handler(status_code: int, kind: str):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        else:
            logger.info(f"{request.method} {request.url.path} -> {status_code} {kind}: {exc}")

        content = {"error": kind, "detail": str(exc)}
        if isinstance(exc, ConcurrentModification):
            content["retryable"] = True
        return JSONResponse(status_code=status_code, content=content)
    return handler


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "validation_error", "detail": str(exc.errors())}
    )


async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_error",
            "detail": str(exc),
            "path": str(request.url)
        }
    )


# ==================== Application Factory ====================

def create_app(
    store: OrderStore,
    escrow_service: EscrowService,
    dispute_manager: DisputeManager,
    kyc_service: KycService,
    admin_review: AdminReviewService,
    identity: IdentityProvider,
    config: Optional[Config] = None,
    lifespan: Optional[Any] = None,
    catalog_service: Optional[CatalogService] = None
) -> FastAPI:
    """
    Build the FastAPI application around already-wired services.

    Args:
        store: Order store (notifications are read straight from it)
        escrow_service: Lifecycle state machine
        dispute_manager: Dispute resolution
        kyc_service: Designer KYC
        admin_review: Admin projections and commands
        identity: Bearer token resolver
        config: Configuration instance (optional)
        lifespan: Optional FastAPI lifespan context
        catalog_service: Designer listings (built on the store when omitted)

    Returns:
        Configured FastAPI app
    """
    config = config or get_config()
    catalog_service = catalog_service or CatalogService(store, config)

    app = FastAPI(
        title="Fashion Marketplace Escrow",
        description="Order and escrow lifecycle for the fashion marketplace",
        version=config.app_version,
        lifespan=lifespan
    )
    app.state.store = store
    app.state.escrow_service = escrow_service
    app.state.identity = identity

    for exc_class, status_code, kind in ERROR_RESPONSES:
        app.add_exception_handler(exc_class, _error_handler(status_code, kind))
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(Exception, _global_exception_handler)

    bearer = HTTPBearer(auto_error=False)

    async def current_party(
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)
    ) -> Party:
        if credentials is None:
            raise IdentityError("Missing bearer token")
        return identity.resolve(credentials.credentials)

    # ==================== Info ====================

    @app.get("/", tags=["Info"])
    async def root():
        """Welcome endpoint with API information."""
        return {
            "service": config.app_name,
            "version": config.app_version,
            "status": "running",
            "endpoints": {
                "items": "/items",
                "orders": "/orders",
                "notifications": "/notifications",
                "kyc": "/kyc",
                "admin": "/admin",
                "health": "/health",
                "docs": "/docs"
            }
        }

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "service": config.app_name,
            "environment": config.app_env,
            "store": type(store).__name__
        }

    # ==================== Catalog ====================

    @app.post("/items", status_code=status.HTTP_201_CREATED, tags=["Catalog"])
    async def create_item(body: CreateItemRequest, party: Party = Depends(current_party)):
        return await catalog_service.create_item(
            party, body.name, body.price, body.currency, available=body.available
        )

    @app.get("/items", tags=["Catalog"])
    async def list_items(
        designer_id: Optional[str] = None,
        available: Optional[bool] = None,
        limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
        offset: int = Query(0, ge=0),
        party: Party = Depends(current_party)
    ):
        return await catalog_service.list_items(
            designer_id=designer_id, available=available, limit=limit, offset=offset
        )

    @app.get("/items/{item_id}", tags=["Catalog"])
    async def get_item(item_id: str, party: Party = Depends(current_party)):
        return await catalog_service.get_item(item_id)

    @app.patch("/items/{item_id}", tags=["Catalog"])
    async def update_item(item_id: str, body: UpdateItemRequest, party: Party = Depends(current_party)):
        return await catalog_service.update_item(
            party,
            item_id,
            name=body.name,
            price=body.price,
            currency=body.currency,
            available=body.available
        )

    @app.delete("/items/{item_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Catalog"])
    async def delete_item(item_id: str, party: Party = Depends(current_party)):
        await catalog_service.delete_item(party, item_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # ==================== Orders ====================

    @app.post("/orders", status_code=status.HTTP_201_CREATED, tags=["Orders"])
    async def place_order(body: PlaceOrderRequest, party: Party = Depends(current_party)):
        return await escrow_service.place_order(
            party,
            item_id=body.item_id,
            customer_id=party.party_id,
            designer_id=body.designer_id,
            amount=body.amount,
            currency=body.currency,
            delivery_address=body.delivery_address,
            special_instructions=body.special_instructions,
            quantity=body.quantity
        )

    @app.get("/orders", tags=["Orders"])
    async def list_orders(
        state: Optional[OrderState] = None,
        limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
        offset: int = Query(0, ge=0),
        party: Party = Depends(current_party)
    ):
        return await escrow_service.list_orders_for(party, state=state, limit=limit, offset=offset)

    @app.get("/orders/{order_id}", tags=["Orders"])
    async def get_order(order_id: str, party: Party = Depends(current_party)):
        order = await escrow_service.get_order(order_id, party)
        return {
            "order": order,
            "escrow": await escrow_service.get_escrow(order_id, party)
        }

    @app.get("/orders/{order_id}/history", tags=["Orders"])
    async def get_order_history(order_id: str, party: Party = Depends(current_party)):
        return await escrow_service.get_order_history(order_id, party)

    @app.post("/orders/{order_id}/payment", tags=["Orders"])
    async def record_payment(order_id: str, body: PaymentProof, party: Party = Depends(current_party)):
        return await escrow_service.record_payment(order_id, body, party)

    @app.post("/orders/{order_id}/ship", tags=["Orders"])
    async def mark_shipped(order_id: str, body: ShipOrderRequest, party: Party = Depends(current_party)):
        return await escrow_service.mark_shipped(
            order_id,
            party,
            tracking_reference=body.tracking_reference,
            carrier=body.carrier,
            photo_references=body.photo_references,
            notes=body.notes
        )

    @app.post("/orders/{order_id}/confirm-delivery", tags=["Orders"])
    async def confirm_delivery(
        order_id: str,
        body: ConfirmDeliveryRequest,
        party: Party = Depends(current_party)
    ):
        return await escrow_service.confirm_delivery(
            order_id, party, rating=body.rating, review=body.review
        )

    @app.post("/orders/{order_id}/disputes", status_code=status.HTTP_201_CREATED, tags=["Disputes"])
    async def open_dispute(order_id: str, body: OpenDisputeRequest, party: Party = Depends(current_party)):
        return await dispute_manager.open(party, order_id, body.reason, body.description)

    @app.get("/orders/{order_id}/disputes", tags=["Disputes"])
    async def list_order_disputes(order_id: str, party: Party = Depends(current_party)):
        return await dispute_manager.list_for_order(order_id, party)

    @app.get("/disputes/{dispute_id}", tags=["Disputes"])
    async def get_dispute(dispute_id: str, party: Party = Depends(current_party)):
        return await dispute_manager.get(dispute_id, party)

    @app.post("/orders/{order_id}/cancel", tags=["Orders"])
    async def cancel_order(order_id: str, body: CancelOrderRequest, party: Party = Depends(current_party)):
        return await escrow_service.cancel_order(order_id, party, body.reason)

    # ==================== Notifications ====================

    @app.get("/notifications", tags=["Notifications"])
    async def list_notifications(unread_only: bool = False, party: Party = Depends(current_party)):
        return await store.list_notifications(party.party_id, unread_only=unread_only)

    @app.post("/notifications/read", tags=["Notifications"])
    async def mark_notifications_read(body: MarkReadRequest, party: Party = Depends(current_party)):
        marked = await store.mark_notifications_read(party.party_id, body.notification_ids)
        return {"marked": marked}

    # ==================== KYC ====================

    @app.post("/kyc", status_code=status.HTTP_201_CREATED, tags=["KYC"])
    async def submit_kyc(body: KycSubmitRequest, party: Party = Depends(current_party)):
        return await kyc_service.submit(party, body.full_name, body.document_references)

    @app.get("/kyc/me", tags=["KYC"])
    async def get_my_kyc(party: Party = Depends(current_party)):
        record = await kyc_service.get(party.party_id)
        return {"kyc": record, "approved": await kyc_service.is_approved(party.party_id)}

    # ==================== Admin ====================

    @app.get("/admin/orders", tags=["Admin"])
    async def admin_list_orders(
        state: Optional[OrderState] = None,
        limit: int = Query(100, ge=1, le=MAX_PAGE_SIZE),
        offset: int = Query(0, ge=0),
        party: Party = Depends(current_party)
    ):
        return await admin_review.list_orders(party, state=state, limit=limit, offset=offset)

    @app.get("/admin/orders/{order_id}", tags=["Admin"])
    async def admin_order_overview(order_id: str, party: Party = Depends(current_party)):
        return await admin_review.get_order_overview(party, order_id)

    @app.post("/admin/orders/{order_id}/cancel", tags=["Admin"])
    async def admin_cancel_order(order_id: str, body: CancelOrderRequest, party: Party = Depends(current_party)):
        return await admin_review.cancel_order(party, order_id, body.reason)

    @app.get("/admin/disputes", tags=["Admin"])
    async def admin_open_disputes(party: Party = Depends(current_party)):
        return await admin_review.list_open_disputes(party)

    @app.post("/admin/disputes/{dispute_id}/resolve", tags=["Admin"])
    async def admin_resolve_dispute(
        dispute_id: str,
        body: ResolveDisputeRequest,
        party: Party = Depends(current_party)
    ):
        return await admin_review.resolve_dispute(party, dispute_id, body.outcome, body.notes)

    @app.get("/admin/summary", tags=["Admin"])
    async def admin_summary(party: Party = Depends(current_party)):
        return await admin_review.get_escrow_summary(party)

    @app.get("/admin/kyc", tags=["Admin"])
    async def admin_list_kyc(
        kyc_status: Optional[KycStatus] = Query(None, alias="status"),
        party: Party = Depends(current_party)
    ):
        return await admin_review.list_kyc(party, kyc_status)

    @app.post("/admin/kyc/{party_id}/review", tags=["Admin"])
    async def admin_review_kyc(party_id: str, body: KycReviewRequest, party: Party = Depends(current_party)):
        return await admin_review.review_kyc(party, party_id, body.approve, body.notes)

    return app
