from identity_chain.config_loader import Settings
from identity_chain.identity_providers.default_identity_provider import DefaultIdentityProvider
from identity_chain.identity_providers.identity_provider import IdentityProvider, ServiceIdentity


def get_identity_provider(settings: Settings) -> IdentityProvider:
    return DefaultIdentityProvider(settings)


__all__ = [
    "DefaultIdentityProvider",
    "IdentityProvider",
    "ServiceIdentity",
    "get_identity_provider",
]
