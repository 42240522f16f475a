from __future__ import annotations

import logging
import math
import os
from http import HTTPStatus
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from notifyhub.config import AppConfig
from notifyhub.data.db import dispose_engine
from notifyhub.errors import (
    ConfigurationError,
    InvalidTransition,
    NotFound,
    NotificationError,
    ProviderError,
    StoreUnavailable,
    ValidationError,
)
from notifyhub.logging_utils import configure_service_logging, setup_debug_logging
from notifyhub.models import Channel, DispatchResult, NotificationRecord, NotificationStatus, SendResult
from notifyhub.notifications.reconciler import ReconcileOutcome
from notifyhub.schemas import (
    CallbackAck,
    CountResponse,
    DeliveryCallback,
    DispatchResponse,
    EmailRequest,
    MarkReadRequest,
    NotificationItem,
    NotificationPage,
    NotificationStats,
    PushRequest,
    PushTargetRequest,
    PushTargetResult,
    PushTargetsResponse,
    SmsRequest,
    TopicMembershipRequest,
    TopicMembershipResponse,
)
from notifyhub.setup import Services, build_services, initialize_environment


PROJECT_ROOT = Path(__file__).resolve().parent
CONFIG_PATH = PROJECT_ROOT / "config.yaml"
API_KEY_HEADER = "X-API-Key"
USER_ID_HEADER = "X-User-Id"

app = FastAPI(title="notifyhub", version="1.0.0")
setup_debug_logging(PROJECT_ROOT)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)
logger = logging.getLogger("notifyhub.api")


_ERROR_CODE_MAP = {
    status.HTTP_400_BAD_REQUEST: "bad_request",
    status.HTTP_401_UNAUTHORIZED: "unauthorized",
    status.HTTP_403_FORBIDDEN: "forbidden",
    status.HTTP_404_NOT_FOUND: "not_found",
    status.HTTP_409_CONFLICT: "conflict",
    status.HTTP_422_UNPROCESSABLE_ENTITY: "validation_error",
    status.HTTP_500_INTERNAL_SERVER_ERROR: "server_error",
    status.HTTP_503_SERVICE_UNAVAILABLE: "service_unavailable",
}

_EXCEPTION_STATUS = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    NotFound: status.HTTP_404_NOT_FOUND,
    InvalidTransition: status.HTTP_409_CONFLICT,
    ProviderError: status.HTTP_502_BAD_GATEWAY,
    ConfigurationError: status.HTTP_503_SERVICE_UNAVAILABLE,
    StoreUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _status_to_error_code(status_code: int) -> str:
    return _ERROR_CODE_MAP.get(status_code, f"http_{status_code}")


def _build_error_payload(status_code: int, detail: Any) -> Dict[str, Any]:
    code = _status_to_error_code(status_code)
    message: Optional[str] = None
    extra: Optional[Any] = None

    if isinstance(detail, dict):
        code = str(detail.get("code") or code)
        message = detail.get("message") or detail.get("detail")
        remaining = {k: v for k, v in detail.items() if k not in {"code", "message", "detail"}}
        if remaining:
            extra = remaining
    elif isinstance(detail, list):
        extra = detail
    elif detail:
        message = str(detail)

    if message is None:
        try:
            message = HTTPStatus(status_code).phrase
        except ValueError:
            message = "Request failed"

    payload: Dict[str, Any] = {
        "error": {
            "code": code,
            "message": message,
        }
    }
    if extra is not None:
        payload["error"]["details"] = extra
    return payload


def _exception_status(exc: NotificationError) -> int:
    for klass in type(exc).__mro__:
        if klass in _EXCEPTION_STATUS:
            return _EXCEPTION_STATUS[klass]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.exception_handler(HTTPException)
async def _http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    payload = _build_error_payload(exc.status_code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=payload)


@app.exception_handler(RequestValidationError)
async def _validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    detail = {
        "code": "validation_error",
        "message": "Request validation failed",
        "fields": exc.errors(),
    }
    payload = _build_error_payload(status.HTTP_422_UNPROCESSABLE_ENTITY, detail)
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=payload)


@app.exception_handler(NotificationError)
async def _notification_exception_handler(request: Request, exc: NotificationError) -> JSONResponse:
    status_code = _exception_status(exc)
    if status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    payload = _build_error_payload(status_code, {"code": exc.code, "message": exc.message})
    if exc.details:
        payload["error"]["details"] = exc.details
    return JSONResponse(status_code=status_code, content=payload)


@app.on_event("startup")
async def startup_event() -> None:
    config_path = Path(os.getenv("NOTIFYHUB_CONFIG") or CONFIG_PATH)
    app_config, resources = initialize_environment(
        config_data=yaml.safe_load(config_path.read_text(encoding="utf-8")),
        base_dir=PROJECT_ROOT,
    )
    configure_service_logging(app_config.notifyhub.log_level)

    services = await build_services(
        app_config,
        transport=getattr(app.state, "provider_transport", None),
        smtp_send=getattr(app.state, "smtp_send", None),
    )

    app.state.app_config = app_config
    app.state.resources = resources
    app.state.services = services


@app.on_event("shutdown")
async def shutdown_event() -> None:
    services: Services | None = getattr(app.state, "services", None)
    if services is not None:
        await services.close()
        app.state.services = None
    await dispose_engine()


def _ensure_state(request: Request) -> tuple[AppConfig, Services]:
    services = getattr(request.app.state, "services", None)
    if services is None or not hasattr(request.app.state, "app_config"):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Application not initialized",
        )
    return request.app.state.app_config, services


async def _require_api_key(
    request: Request,
    api_key: Optional[str] = Header(None, alias=API_KEY_HEADER),
) -> None:
    app_config, _ = _ensure_state(request)
    expected = app_config.notifyhub.api_key
    if not expected:
        return
    # Provider callbacks cannot set headers, so the key may ride on the query string.
    provided = api_key or request.query_params.get("api_key")
    if provided != expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )


async def _owner_id(user_id: Optional[str] = Header(None, alias=USER_ID_HEADER)) -> str:
    if not user_id or not user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {USER_ID_HEADER} header",
        )
    return user_id.strip()


async def _optional_owner_id(user_id: Optional[str] = Header(None, alias=USER_ID_HEADER)) -> Optional[str]:
    return user_id.strip() if user_id and user_id.strip() else None


def _dispatch_response(result: DispatchResult) -> DispatchResponse:
    return DispatchResponse(**result.to_dict())


def _record_item(record: NotificationRecord) -> NotificationItem:
    return NotificationItem(**record.to_dict())


def _parse_enum(enum_cls, value: Optional[str], field: str):
    if value in (None, ""):
        return None
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise ValidationError(
            f"Invalid {field} value: {value}",
            details={"field": field, "allowed": [member.value for member in enum_cls]},
        ) from exc


@app.post(
    "/notifications/email",
    response_model=DispatchResponse,
    dependencies=[Depends(_require_api_key)],
)
async def send_email(
    payload: EmailRequest,
    request: Request,
    owner_id: Optional[str] = Depends(_optional_owner_id),
) -> DispatchResponse:
    _, services = _ensure_state(request)
    result = await services.engine.send_email(
        to=payload.to,
        user_id=payload.user_id,
        subject=payload.subject,
        body=payload.body,
        template=payload.template,
        variables=payload.variables,
        html=payload.html,
        owner_id=owner_id,
    )
    return _dispatch_response(result)


@app.post(
    "/notifications/sms",
    response_model=DispatchResponse,
    dependencies=[Depends(_require_api_key)],
)
async def send_sms(
    payload: SmsRequest,
    request: Request,
    owner_id: Optional[str] = Depends(_optional_owner_id),
) -> DispatchResponse:
    _, services = _ensure_state(request)
    result = await services.engine.send_sms(
        to=payload.to,
        user_id=payload.user_id,
        message=payload.message,
        owner_id=owner_id,
    )
    return _dispatch_response(result)


@app.post(
    "/notifications/push",
    response_model=DispatchResponse,
    dependencies=[Depends(_require_api_key)],
)
async def send_push(
    payload: PushRequest,
    request: Request,
    owner_id: Optional[str] = Depends(_optional_owner_id),
) -> DispatchResponse:
    _, services = _ensure_state(request)
    result = await services.engine.send_push(
        title=payload.title,
        body=payload.body,
        token=payload.token,
        tokens=payload.tokens,
        user_id=payload.user_id,
        topic=payload.topic,
        data=payload.data,
        owner_id=owner_id,
    )
    return _dispatch_response(result)


@app.get(
    "/notifications",
    response_model=NotificationPage,
    dependencies=[Depends(_require_api_key)],
)
async def list_notifications(
    request: Request,
    owner_id: str = Depends(_owner_id),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    channel_type: Optional[str] = Query(None, alias="type"),
    status_filter: Optional[str] = Query(None, alias="status"),
) -> NotificationPage:
    app_config, services = _ensure_state(request)
    limit = min(limit, app_config.notifyhub.page_limit_max)
    records, total = await services.store.list_for_owner(
        owner_id,
        channel=_parse_enum(Channel, channel_type, "type"),
        status=_parse_enum(NotificationStatus, status_filter, "status"),
        page=page,
        limit=limit,
    )
    return NotificationPage(
        items=[_record_item(record) for record in records],
        total=total,
        page=page,
        limit=limit,
        pages=math.ceil(total / limit) if total else 0,
    )


@app.get(
    "/notifications/stats",
    response_model=NotificationStats,
    dependencies=[Depends(_require_api_key)],
)
async def notification_stats(
    request: Request,
    owner_id: str = Depends(_owner_id),
) -> NotificationStats:
    _, services = _ensure_state(request)
    stats = await services.store.aggregate_stats(owner_id)
    return NotificationStats(**stats.to_dict())


@app.patch(
    "/notifications/read",
    response_model=CountResponse,
    dependencies=[Depends(_require_api_key)],
)
async def mark_all_read(
    request: Request,
    payload: Optional[MarkReadRequest] = None,
    owner_id: str = Depends(_owner_id),
) -> CountResponse:
    _, services = _ensure_state(request)
    ids = payload.ids if payload is not None else None
    updated = await services.store.mark_all_read(owner_id, ids)
    return CountResponse(count=updated)


@app.get(
    "/notifications/{notification_id}",
    response_model=NotificationItem,
    dependencies=[Depends(_require_api_key)],
)
async def get_notification(
    notification_id: str,
    request: Request,
    owner_id: str = Depends(_owner_id),
) -> NotificationItem:
    _, services = _ensure_state(request)
    record = await services.store.get_for_owner(notification_id, owner_id)
    return _record_item(record)


@app.patch(
    "/notifications/{notification_id}/read",
    response_model=NotificationItem,
    dependencies=[Depends(_require_api_key)],
)
async def mark_read(
    notification_id: str,
    request: Request,
    owner_id: str = Depends(_owner_id),
) -> NotificationItem:
    _, services = _ensure_state(request)
    record = await services.store.mark_read(notification_id, owner_id)
    return _record_item(record)


@app.delete(
    "/notifications/{notification_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(_require_api_key)],
)
async def delete_notification(
    notification_id: str,
    request: Request,
    owner_id: str = Depends(_owner_id),
) -> None:
    _, services = _ensure_state(request)
    await services.store.delete_one(notification_id, owner_id)


@app.delete(
    "/notifications",
    response_model=CountResponse,
    dependencies=[Depends(_require_api_key)],
)
async def delete_all_notifications(
    request: Request,
    owner_id: str = Depends(_owner_id),
) -> CountResponse:
    _, services = _ensure_state(request)
    deleted = await services.store.delete_all(owner_id)
    return CountResponse(count=deleted)


@app.post(
    "/webhooks/delivery",
    response_model=CallbackAck,
    dependencies=[Depends(_require_api_key)],
)
async def delivery_webhook(payload: DeliveryCallback, request: Request) -> CallbackAck:
    _, services = _ensure_state(request)
    try:
        channel = Channel(payload.channel.strip().lower())
    except ValueError:
        logger.warning("Delivery callback for unknown channel %r ignored", payload.channel)
        return CallbackAck(outcome=ReconcileOutcome.IGNORED.value)
    result = await services.reconciler.reconcile(
        payload.provider_message_id,
        channel,
        payload.provider_status,
        payload.error_detail,
    )
    return CallbackAck(outcome=result.outcome.value, notification_id=result.notification_id)


@app.post(
    "/webhooks/twilio",
    response_model=CallbackAck,
    dependencies=[Depends(_require_api_key)],
)
async def twilio_webhook(request: Request) -> CallbackAck:
    _, services = _ensure_state(request)
    form = await request.form()
    result = await services.reconciler.reconcile_twilio(dict(form))
    return CallbackAck(outcome=result.outcome.value, notification_id=result.notification_id)


@app.get(
    "/push/targets",
    response_model=PushTargetsResponse,
    dependencies=[Depends(_require_api_key)],
)
async def list_push_targets(
    request: Request,
    owner_id: str = Depends(_owner_id),
) -> PushTargetsResponse:
    _, services = _ensure_state(request)
    tokens = await services.targets.targets_for(owner_id)
    return PushTargetsResponse(user_id=owner_id, tokens=sorted(tokens))


@app.post(
    "/push/targets",
    response_model=PushTargetResult,
    dependencies=[Depends(_require_api_key)],
)
async def register_push_target(
    payload: PushTargetRequest,
    request: Request,
    owner_id: str = Depends(_owner_id),
) -> PushTargetResult:
    _, services = _ensure_state(request)
    added = await services.targets.register_target(
        owner_id,
        payload.token,
        validate=payload.validate_token,
    )
    return PushTargetResult(token=payload.token, added=added)


@app.delete(
    "/push/targets/{token}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(_require_api_key)],
)
async def remove_push_target(
    token: str,
    request: Request,
    owner_id: str = Depends(_owner_id),
) -> None:
    _, services = _ensure_state(request)
    removed = await services.targets.remove_target(owner_id, token)
    if not removed:
        logger.info("Push target removal for user %s was a no-op", owner_id)


def _topic_response(topic: str, result: SendResult) -> TopicMembershipResponse:
    metadata = result.metadata or {}
    return TopicMembershipResponse(
        topic=metadata.get("topic", topic),
        success=result.success,
        success_count=metadata.get("successCount", 0),
        failure_count=metadata.get("failureCount", 0),
        errors=metadata.get("errors", {}),
        error_kind=None if result.success or result.error_kind is None else result.error_kind.value,
        error_detail=None if result.success else result.error_detail,
    )


@app.post(
    "/push/topics/{topic}",
    response_model=TopicMembershipResponse,
    dependencies=[Depends(_require_api_key)],
)
async def subscribe_push_topic(
    topic: str,
    request: Request,
    payload: Optional[TopicMembershipRequest] = None,
    owner_id: str = Depends(_owner_id),
) -> TopicMembershipResponse:
    _, services = _ensure_state(request)
    token = payload.token if payload else None
    result = await services.targets.subscribe_topic(owner_id, topic, token)
    return _topic_response(topic, result)


@app.delete(
    "/push/topics/{topic}",
    response_model=TopicMembershipResponse,
    dependencies=[Depends(_require_api_key)],
)
async def unsubscribe_push_topic(
    topic: str,
    request: Request,
    token: Optional[str] = Query(None),
    owner_id: str = Depends(_owner_id),
) -> TopicMembershipResponse:
    _, services = _ensure_state(request)
    result = await services.targets.unsubscribe_topic(owner_id, topic, token)
    return _topic_response(topic, result)
