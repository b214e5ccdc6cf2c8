import sentry_sdk

from app.container import close_clients, get_wire_container
from app.create_app import create_app
from logging_config import setup_logging
from settings import settings

if settings.sentry.is_enabled:
    sentry_sdk.init(dsn=settings.sentry.dsn, environment=settings.environment.value, send_default_pii=False)

setup_logging()
container = get_wire_container()
app = create_app()


@app.on_event("shutdown")
async def shutdown() -> None:
    await close_clients(container)
