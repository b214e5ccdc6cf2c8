from fastapi import APIRouter

from app.api.v1.accounts import router as accounts_router
from app.api.webhooks import router as webhooks_router

api_router = APIRouter()
api_router.include_router(accounts_router, prefix="/accounts", tags=["accounts"])

webhook_router = APIRouter()
webhook_router.include_router(webhooks_router, tags=["webhooks"])
