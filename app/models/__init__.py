from .account import Account, AccountProvider, AccountStatus, ProviderKind
from .app import App
from .base import Base
from .integration_token import IntegrationToken
from .message import Message
from .push_channel import PushChannel
from .sync_state import SyncErrorKind, SyncState, SyncStatus
from .thread import ConversationThread
from .webhook_log import WebhookLog

__all__ = [
    "Base",
    "Account",
    "AccountProvider",
    "AccountStatus",
    "App",
    "ConversationThread",
    "IntegrationToken",
    "Message",
    "ProviderKind",
    "PushChannel",
    "SyncErrorKind",
    "SyncState",
    "SyncStatus",
    "WebhookLog",
]
