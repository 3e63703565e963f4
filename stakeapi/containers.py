from dependency_injector import containers, providers

from stakeapi.config import Settings
from stakeapi.services.payment_gateway import HttpPaymentGateway, ManualPaymentGateway
from stakeapi.services.verification_service import VerificationClient


class ConfigModule(containers.DeclarativeContainer):
    """Application configuration."""

    config = providers.Singleton(Settings)


class ClientModule(containers.DeclarativeContainer):
    """External collaborators, shared across requests."""

    config = providers.DependenciesContainer()

    verification_client = providers.Singleton(VerificationClient, settings=config.config)
    payment_gateway = providers.Selector(
        config.config.provided.PAYMENT_GATEWAY,
        manual=providers.Singleton(ManualPaymentGateway),
        http=providers.Singleton(HttpPaymentGateway, settings=config.config),
    )


class Container(containers.DeclarativeContainer):
    """Application container."""

    config = providers.Container(ConfigModule)
    clients = providers.Container(ClientModule, config=config)
