from .account import AccountRepo
from .app import AppRepo
from .integration_token import IntegrationTokenRepo
from .message import MessageRepo
from .push_channel import PushChannelRepo
from .sync_state import SyncStateRepo
from .thread import ThreadRepo
from .webhook_log import WebhookLogRepo

__all__ = [
    "AccountRepo",
    "AppRepo",
    "IntegrationTokenRepo",
    "MessageRepo",
    "PushChannelRepo",
    "SyncStateRepo",
    "ThreadRepo",
    "WebhookLogRepo",
]
