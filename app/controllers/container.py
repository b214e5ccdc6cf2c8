from typing import cast

from dependency_injector import containers, providers

from app.controllers.notifications.dispatcher import NotificationDispatcher
from app.controllers.notifications.publisher import MailEventPublisher
from app.controllers.providers.gmail import GmailAdapter
from app.controllers.providers.imap import IMAPAdapter
from app.controllers.providers.imap_connection import ConnectionManager
from app.controllers.providers.outlook import OutlookAdapter
from app.controllers.providers.registry import ProviderRegistry
from app.controllers.sync.deduplication import Deduplicator
from app.controllers.sync.orchestrator import SyncOrchestrator
from app.controllers.sync.reconstruction import ThreadReconstructor
from app.controllers.tokens.oauth_client import OAuthTokenClient
from app.controllers.tokens.token_manager import TokenLifecycleManager
from app.db import session_scope
from app.repos.container import RepoContainer
from settings import settings


class ControllerContainer(containers.DeclarativeContainer):
    repos: RepoContainer = cast(RepoContainer, providers.DependenciesContainer())

    session_scope = providers.Object(session_scope)

    imap_connection_manager = providers.Singleton(ConnectionManager, imap_settings=settings.imap)
    gmail_adapter = providers.Singleton(
        GmailAdapter, channel_settings=settings.channels, timeout=settings.sync.adapter_timeout
    )
    outlook_adapter = providers.Singleton(
        OutlookAdapter, channel_settings=settings.channels, timeout=settings.sync.adapter_timeout
    )
    imap_adapter = providers.Singleton(IMAPAdapter, connection_manager=imap_connection_manager)
    provider_registry = providers.Singleton(
        ProviderRegistry, adapters=providers.List(gmail_adapter, outlook_adapter, imap_adapter)
    )

    oauth_client = providers.Singleton(OAuthTokenClient, oauth_settings=settings.oauth)
    token_manager = providers.Singleton(
        TokenLifecycleManager,
        integration_token_repo=repos.integration_token,
        oauth_client=oauth_client,
        oauth_settings=settings.oauth,
        session_scope=session_scope,
    )

    deduplicator = providers.Singleton(Deduplicator, window_seconds=settings.sync.dedup_window)
    thread_reconstructor = providers.Singleton(
        ThreadReconstructor, recency_window_seconds=settings.sync.thread_recency_window
    )
    publisher = providers.Singleton(
        MailEventPublisher, webhook_log_repo=repos.webhook_log, webhook_settings=settings.webhook
    )

    orchestrator = providers.Singleton(
        SyncOrchestrator,
        account_repo=repos.account,
        sync_state_repo=repos.sync_state,
        message_repo=repos.message,
        thread_repo=repos.thread,
        token_manager=token_manager,
        provider_registry=provider_registry,
        deduplicator=deduplicator,
        thread_reconstructor=thread_reconstructor,
        publisher=publisher,
        sync_settings=settings.sync,
        session_scope=session_scope,
    )

    dispatcher = providers.Singleton(
        NotificationDispatcher,
        account_repo=repos.account,
        push_channel_repo=repos.push_channel,
        token_manager=token_manager,
        provider_registry=provider_registry,
        orchestrator=orchestrator,
        channel_settings=settings.channels,
        sync_settings=settings.sync,
        session_scope=session_scope,
    )
