from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Header, Request
from fastapi.responses import Response
from sqlalchemy.orm import Session

from paygate import history
from paygate.auth import verify_token
from paygate.database import get_db
from paygate.dependencies import Services, get_services
from paygate.schemas import (
    CancelPaymentRequest,
    CreatePaymentRequest,
    PaypalCaptureRequest,
    PaypalOrderRequest,
    UpdateStatusRequest,
)

router = APIRouter(prefix="/api/payments")
admin_router = APIRouter(prefix="/api/admin")


def _signature(request: Request, services: Services) -> Optional[str]:
    return request.headers.get(services.settings.SIGNATURE_HEADER)


@router.post("/create")
def create_payment_api(
    payload: CreatePaymentRequest,
    request: Request,
    x_idempotency_key: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    return services.payments.create_payment(db, payload, _signature(request, services), x_idempotency_key)


@router.get("/history")
def list_history_api(
    order_id: Optional[str] = None,
    payment_method: Optional[str] = None,
    status: Optional[str] = None,
    event_type: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = 1,
    limit: int = 50,
    db: Session = Depends(get_db),
    auth=Depends(verify_token),
):
    return history.list_history(
        db,
        page=page,
        limit=limit,
        order_id=order_id,
        payment_method=payment_method,
        status=status,
        event_type=event_type,
        date_from=date_from,
        date_to=date_to,
    )


@router.get("/history/export")
def export_history_api(
    order_id: Optional[str] = None,
    payment_method: Optional[str] = None,
    status: Optional[str] = None,
    event_type: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    db: Session = Depends(get_db),
    auth=Depends(verify_token),
):
    body = history.export_csv(
        db,
        order_id=order_id,
        payment_method=payment_method,
        status=status,
        event_type=event_type,
        date_from=date_from,
        date_to=date_to,
    )
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=payment-history.csv"},
    )


@router.get("/statistics")
def statistics_api(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    db: Session = Depends(get_db),
    auth=Depends(verify_token),
):
    return history.statistics(db, date_from=date_from, date_to=date_to)


@router.post("/webhooks/{provider}")
def webhook_api(
    provider: str,
    request: Request,
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    # Gateways get a 200 for anything we accepted, matched or not
    outcome = services.reconciler.reconcile(db, provider, payload, _signature(request, services))
    return {"success": True, "matched": outcome.matched, "status": outcome.status}


@router.post("/paypal/create-order")
def paypal_create_order_api(
    payload: PaypalOrderRequest,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    return services.payments.create_paypal_order(db, payload.payment_id)


@router.post("/paypal/capture-order")
def paypal_capture_order_api(
    payload: PaypalCaptureRequest,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    return services.payments.capture_paypal_order(db, payload.payment_id, payload.paypal_order_id)


@router.get("/{payment_id}/status")
def payment_status_api(
    payment_id: str,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    return services.payments.get_payment_status(db, payment_id)


@router.post("/{payment_id}/cancel")
def cancel_payment_api(
    payment_id: str,
    payload: CancelPaymentRequest,
    request: Request,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    return services.payments.cancel_payment(db, payment_id, payload, _signature(request, services))


@router.post("/{payment_id}/update-status")
def update_status_api(
    payment_id: str,
    payload: UpdateStatusRequest,
    request: Request,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    return services.payments.update_status(db, payment_id, payload, _signature(request, services))


@router.get("/{payment_id}/history")
def payment_history_api(
    payment_id: str,
    db: Session = Depends(get_db),
    auth=Depends(verify_token),
):
    return history.payment_history(db, payment_id)


@admin_router.post("/sweep")
def sweep_api(
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    auth=Depends(verify_token),
):
    return services.sweeper.sweep(db).as_dict()


@admin_router.post("/callbacks/retry")
def retry_callbacks_api(
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    auth=Depends(verify_token),
):
    return services.notifier.retry_due(db)
