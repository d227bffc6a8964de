from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query

from slotwise.auth import assert_actor_authorized
from slotwise.errors import SchedulingSystemError, SlotWiseError
from slotwise.models import (
    BulkNotificationRequest,
    DeviceTokenRegisterRequest,
    NotificationPage,
    NotificationRecord,
    UnreadCount,
)
from slotwise.routers.bookings import raise_http_error
from slotwise.services.booking_engine import booking_engine
from slotwise.services.notification_dispatcher import notification_dispatcher

router = APIRouter(prefix="/notifications", tags=["notifications"])


def _require_admin(actor_user_id: str) -> None:
    try:
        actor = booking_engine.resolve_actor(actor_user_id)
    except (SlotWiseError, SchedulingSystemError) as exc:
        raise_http_error(exc)
    if not actor.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")


@router.get("", response_model=NotificationPage)
def list_notifications(
    user_id: str = Query(...),
    unread_only: bool = Query(default=False),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    return notification_dispatcher.list_for_user(user_id=user_id, page=page, limit=limit, unread_only=unread_only)


@router.get("/unread-count", response_model=UnreadCount)
def unread_count(
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    return UnreadCount(user_id=user_id, unread=notification_dispatcher.unread_count(user_id))


@router.get("/search", response_model=NotificationPage)
def search_notifications(
    actor_user_id: str = Query(...),
    user_id: Optional[str] = Query(default=None),
    booking_id: Optional[str] = Query(default=None),
    notification_type: Optional[str] = Query(default=None, alias="type"),
    status: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    _require_admin(actor_user_id)
    return notification_dispatcher.search(
        user_id=user_id,
        booking_id=booking_id,
        notification_type=notification_type,
        status=status,
        page=page,
        limit=limit,
    )


@router.post("/register-device", response_model=dict)
def register_device(
    payload: DeviceTokenRegisterRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.user_id, authorization=authorization)
    notification_dispatcher.register_device(
        user_id=payload.user_id,
        device_token=payload.device_token,
        platform=payload.platform,
    )
    return {"status": "ok"}


@router.post("/read-all", response_model=dict)
def mark_all_read(
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    return {"status": "ok", "updated": notification_dispatcher.mark_all_read(user_id)}


@router.post("/bulk", response_model=list[NotificationRecord])
def send_bulk(
    request: BulkNotificationRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    _require_admin(request.actor_user_id)
    if not request.user_ids:
        raise HTTPException(status_code=400, detail="user_ids must not be empty")
    return notification_dispatcher.send_bulk(
        request.user_ids,
        request.type,
        request.title,
        request.message,
        metadata={"event": "bulk", "sent_by": request.actor_user_id},
    )


@router.get("/{notification_id}", response_model=NotificationRecord)
def get_notification(
    notification_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return notification_dispatcher.get(notification_id, user_id)
    except SlotWiseError as exc:
        raise_http_error(exc)


@router.post("/{notification_id}/read", response_model=NotificationRecord)
def mark_notification_read(
    notification_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return notification_dispatcher.mark_read(notification_id, user_id)
    except SlotWiseError as exc:
        raise_http_error(exc)


@router.delete("/{notification_id}", response_model=dict)
def delete_notification(
    notification_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        notification_dispatcher.delete(notification_id, user_id)
    except SlotWiseError as exc:
        raise_http_error(exc)
    return {"status": "deleted", "notification_id": notification_id}
