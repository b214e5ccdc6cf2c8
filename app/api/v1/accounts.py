"""
Operator endpoints for inspecting and forcing account synchronization.
"""

import uuid

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, Path

from app.api.middlewares.authentication import get_current_app
from app.api.models.messages import (
    ChannelStateData,
    SyncOutcomeData,
    SyncOutcomeResponse,
    SyncStateData,
    SyncStateResponse,
)
from app.api.payloads.error import APIError
from app.api.utils.errors import validate_account_access
from app.container import ApplicationContainer
from app.controllers.sync.models import SyncTrigger
from app.controllers.sync.orchestrator import SyncOrchestrator
from app.models.app import App
from app.repos.push_channel import PushChannelRepo
from app.repos.sync_state import SyncStateRepo

router = APIRouter()

ACCOUNT_ID_EXAMPLE = "a3ec500d-126b-4532-a632-7808721b3732"


@router.post(
    "/{account_id}/sync",
    response_model=SyncOutcomeResponse,
    responses={
        400: {"model": APIError, "description": "Invalid account id"},
        401: {"model": APIError, "description": "Invalid API key"},
        404: {"model": APIError, "description": "Account not found"},
    },
    summary="Force a sync",
    description="Runs a sync pass immediately, bypassing the error backoff, and returns its outcome",
)
@inject
async def force_sync(
    account_id: str = Path(..., examples=[ACCOUNT_ID_EXAMPLE]),
    app: App = Depends(get_current_app),
    orchestrator: SyncOrchestrator = Depends(Provide[ApplicationContainer.controllers.orchestrator]),
) -> SyncOutcomeResponse:
    account = await validate_account_access(app.id, account_id)
    outcome = await orchestrator.sync_account(account.id, SyncTrigger.manual, force=True)
    return SyncOutcomeResponse(
        request_id=str(uuid.uuid4()),
        data=SyncOutcomeData(
            result=outcome.result.value,
            trigger=outcome.trigger.value,
            fetched=outcome.fetched,
            stored=outcome.stored,
            duplicates=outcome.duplicates,
            threads_created=outcome.threads_created,
            pages=outcome.pages,
            error=outcome.error,
        ),
    )


@router.get(
    "/{account_id}/sync-state",
    response_model=SyncStateResponse,
    responses={
        400: {"model": APIError, "description": "Invalid account id"},
        401: {"model": APIError, "description": "Invalid API key"},
        404: {"model": APIError, "description": "Account not found"},
    },
    summary="Get sync state",
)
@inject
async def get_sync_state(
    account_id: str = Path(..., examples=[ACCOUNT_ID_EXAMPLE]),
    app: App = Depends(get_current_app),
    sync_state_repo: SyncStateRepo = Depends(Provide[ApplicationContainer.repos.sync_state]),
    push_channel_repo: PushChannelRepo = Depends(Provide[ApplicationContainer.repos.push_channel]),
) -> SyncStateResponse:
    account = await validate_account_access(app.id, account_id)
    state = await sync_state_repo.get_by_account(account.id)
    channel = await push_channel_repo.get_by_account(account.id)

    return SyncStateResponse(
        request_id=str(uuid.uuid4()),
        account_id=str(account.uuid),
        provider=account.provider.value,
        sync_state=(
            SyncStateData(
                sync_status=state.sync_status.value,
                is_processing=state.is_processing,
                checkpoint=state.checkpoint,
                last_sync_at=state.last_sync_at,
                last_error=state.last_error,
                last_error_kind=state.last_error_kind.value if state.last_error_kind else None,
                last_error_at=state.last_error_at,
                lock_acquisitions=state.lock_acquisitions,
            )
            if state
            else None
        ),
        channel=(
            ChannelStateData(
                channel_id=channel.channel_id,
                is_active=channel.is_active,
                expires_at=channel.expires_at,
                last_renewed_at=channel.last_renewed_at,
                last_error=channel.last_error,
            )
            if channel
            else None
        ),
    )
