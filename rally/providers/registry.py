"""Build the provider table from configuration."""

import logging

from config.config_loader import AppConfig
from rally.providers.base import AIProvider
from rally.providers.http_provider import HTTPProvider
from rally.providers.simulated import SimulatedProvider

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    "http": HTTPProvider,
    "simulated": SimulatedProvider,
}


def build_providers(config: AppConfig) -> dict[str, AIProvider]:
    """Instantiate one provider per descriptor. Returns dict keyed by provider id.

    Providers without credentials are still built: they answer with an
    explanatory placeholder at request time.
    """
    providers: dict[str, AIProvider] = {}
    for name, model_cfg in config.models.items():
        provider_cls = PROVIDER_CLASSES.get(model_cfg.kind)
        if provider_cls is None:
            logger.warning("Provider '%s' has unknown kind '%s', skipping", name, model_cfg.kind)
            continue
        providers[name] = provider_cls(model_cfg)
    logger.debug("Built %d providers: %s", len(providers), ", ".join(providers))
    return providers
