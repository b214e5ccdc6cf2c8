from dependency_injector import containers, providers

from app.repos.account import AccountRepo
from app.repos.app import AppRepo
from app.repos.integration_token import IntegrationTokenRepo
from app.repos.message import MessageRepo
from app.repos.push_channel import PushChannelRepo
from app.repos.sync_state import SyncStateRepo
from app.repos.thread import ThreadRepo
from app.repos.webhook_log import WebhookLogRepo


class RepoContainer(containers.DeclarativeContainer):
    app = providers.Singleton(AppRepo)
    account = providers.Singleton(AccountRepo)
    integration_token = providers.Singleton(IntegrationTokenRepo)
    message = providers.Singleton(MessageRepo)
    push_channel = providers.Singleton(PushChannelRepo)
    sync_state = providers.Singleton(SyncStateRepo)
    thread = providers.Singleton(ThreadRepo)
    webhook_log = providers.Singleton(WebhookLogRepo)
