"""
Provider change notification endpoints.
"""

import json
from typing import Any

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, Path, Query, Request
from fastapi.responses import PlainTextResponse

from app.api.payloads.error import APIError
from app.api.payloads.webhooks import NotificationResponse
from app.container import ApplicationContainer
from app.controllers.notifications.dispatcher import NotificationDispatcher
from app.exceptions import InvalidDataError, MalformedPayloadError
from app.models import AccountProvider

router = APIRouter()


@router.post(
    "/{provider}/{account_id}",
    response_model=NotificationResponse,
    responses={400: {"model": APIError, "description": "Malformed notification"}},
    summary="Receive a provider change notification",
    description=(
        "Acknowledges a Gmail Pub/Sub push or Microsoft Graph change notification and triggers a sync "
        "in the background. Graph subscription validation requests are answered with the echoed token."
    ),
)
@inject
async def receive_notification(
    request: Request,
    provider: str = Path(..., examples=["gmail", "outlook"]),
    account_id: str = Path(..., description="Account UUID the channel was registered for"),
    validation_token: str | None = Query(None, alias="validationToken"),
    dispatcher: NotificationDispatcher = Depends(Provide[ApplicationContainer.controllers.dispatcher]),
) -> NotificationResponse | PlainTextResponse:
    if validation_token is not None:
        return PlainTextResponse(validation_token)

    try:
        account_provider = AccountProvider(provider)
    except ValueError as e:
        raise InvalidDataError(f"Unknown provider '{provider}'") from e

    payload = await _read_json(request, provider)
    ack = await dispatcher.handle_notification(account_provider, account_id, payload)
    return NotificationResponse(request_id=ack.request_id, status=ack.status.value)


async def _read_json(request: Request, provider: str) -> Any:
    body = await request.body()
    try:
        return json.loads(body)
    except ValueError as e:
        raise MalformedPayloadError("Notification body is not JSON", provider=provider) from e
