from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class EmailRequest(BaseModel):
    to: Optional[str] = None
    user_id: Optional[str] = Field(default=None, alias="userId")
    subject: Optional[str] = None
    body: Optional[str] = None
    html: Optional[str] = None
    template: Optional[str] = Field(default=None, description="confirm, reset or welcome")
    variables: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class SmsRequest(BaseModel):
    to: Optional[str] = None
    user_id: Optional[str] = Field(default=None, alias="userId")
    message: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class PushRequest(BaseModel):
    title: Optional[str] = None
    body: Optional[str] = None
    token: Optional[str] = None
    tokens: List[str] = Field(default_factory=list)
    user_id: Optional[str] = Field(default=None, alias="userId")
    topic: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class DispatchResponse(BaseModel):
    success: bool
    notification_id: Optional[str] = None
    provider_message_id: Optional[str] = None
    error_kind: Optional[str] = None
    error_detail: Optional[str] = None


class NotificationItem(BaseModel):
    id: str
    owner_id: Optional[str] = None
    channel: str
    title: str
    body: str
    status: str
    created_at: str
    delivered_at: Optional[str] = None
    read_at: Optional[str] = None
    failure_reason: Optional[str] = None
    provider_metadata: Dict[str, Any] = Field(default_factory=dict)


class NotificationPage(BaseModel):
    items: List[NotificationItem]
    total: int = Field(..., ge=0)
    page: int = Field(..., ge=1)
    limit: int = Field(..., ge=1)
    pages: int = Field(..., ge=0)


class NotificationStats(BaseModel):
    by_status: Dict[str, int] = Field(..., alias="byStatus")
    by_type: Dict[str, int] = Field(..., alias="byType")
    by_day: Dict[str, int] = Field(..., alias="byDay")

    model_config = ConfigDict(populate_by_name=True)


class MarkReadRequest(BaseModel):
    ids: Optional[List[str]] = None


class CountResponse(BaseModel):
    count: int = Field(..., ge=0)


class DeliveryCallback(BaseModel):
    provider_message_id: str = Field(..., alias="providerMessageId", min_length=1)
    channel: str
    provider_status: str = Field(..., alias="providerStatus", min_length=1)
    error_detail: Optional[str] = Field(default=None, alias="errorDetail")

    model_config = ConfigDict(populate_by_name=True)


class CallbackAck(BaseModel):
    received: bool = True
    outcome: str
    notification_id: Optional[str] = None


class PushTargetRequest(BaseModel):
    token: str = Field(..., min_length=1)
    validate_token: Optional[bool] = Field(default=None, alias="validate")

    model_config = ConfigDict(populate_by_name=True)


class PushTargetsResponse(BaseModel):
    user_id: str
    tokens: List[str]


class PushTargetResult(BaseModel):
    token: str
    added: bool


class TopicMembershipRequest(BaseModel):
    token: Optional[str] = None


class TopicMembershipResponse(BaseModel):
    topic: str
    success: bool
    success_count: int = 0
    failure_count: int = 0
    errors: Dict[str, str] = Field(default_factory=dict)
    error_kind: Optional[str] = None
    error_detail: Optional[str] = None
