from typing import cast

from dependency_injector import containers, providers

from app.controllers.container import ControllerContainer
from app.repos.container import RepoContainer


class ApplicationContainer(containers.DeclarativeContainer):
    repos: RepoContainer = cast(RepoContainer, providers.Container(RepoContainer))
    controllers: ControllerContainer = cast(ControllerContainer, providers.Container(ControllerContainer, repos=repos))


def get_wire_container() -> ApplicationContainer:
    application_container = ApplicationContainer()

    application_container.wire(packages=["app.api"])

    return application_container


async def close_clients(application_container: ApplicationContainer) -> None:
    """Wait for in-flight notification syncs, then close the HTTP and IMAP clients held by singletons."""
    controllers = application_container.controllers
    await controllers.dispatcher().shutdown()
    await controllers.provider_registry().close_all()
    await controllers.oauth_client().close()
    await controllers.publisher().close_session()
