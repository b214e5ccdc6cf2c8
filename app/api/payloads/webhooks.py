"""
Pydantic models for provider change notifications.
"""

import base64
import binascii
import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.exceptions import MalformedPayloadError


class PubSubMessage(BaseModel):
    data: str = Field(..., description="Base64 encoded Gmail notification")
    message_id: str | None = Field(None, alias="messageId")
    publish_time: str | None = Field(None, alias="publishTime")


class GmailPushEnvelope(BaseModel):
    """Cloud Pub/Sub push delivery of a Gmail watch notification."""

    message: PubSubMessage
    subscription: str | None = None


class GmailNotification(BaseModel):
    email_address: str = Field(..., alias="emailAddress")
    history_id: int = Field(..., alias="historyId")

    @classmethod
    def from_payload(cls, payload: Any) -> "GmailNotification":
        try:
            envelope = GmailPushEnvelope.model_validate(payload)
            decoded = json.loads(base64.b64decode(envelope.message.data, validate=False))
            return cls.model_validate(decoded)
        except (ValidationError, binascii.Error, UnicodeDecodeError, ValueError) as e:
            raise MalformedPayloadError(f"Invalid Gmail push notification: {e}", provider="gmail") from e


class GraphChangeNotification(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subscription_id: str = Field(..., alias="subscriptionId")
    client_state: str | None = Field(None, alias="clientState")
    change_type: str = Field(..., alias="changeType")
    resource: str
    tenant_id: str | None = Field(None, alias="tenantId")


class OutlookNotificationBatch(BaseModel):
    """Microsoft Graph change notification collection."""

    value: list[GraphChangeNotification] = Field(..., min_length=1)

    @classmethod
    def from_payload(cls, payload: Any) -> "OutlookNotificationBatch":
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise MalformedPayloadError(f"Invalid Graph change notification: {e}", provider="outlook") from e


class NotificationResponse(BaseModel):
    request_id: str = Field(..., description="Unique request identifier")
    status: str = Field(..., description="accepted when a sync was triggered, ignored otherwise")
