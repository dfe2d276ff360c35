from __future__ import annotations

from bgrelay.config import Settings
from bgrelay.domain.background_remover import BackgroundRemover
from bgrelay.infrastructure.providers.custom_api_remover import CustomApiRemover
from bgrelay.infrastructure.providers.removebg_remover import RemoveBgRemover
from bgrelay.infrastructure.providers.replicate_remover import ReplicateRemover


class ProviderConfigurationError(RuntimeError):
    pass


def build_remover(settings: Settings) -> BackgroundRemover:
    provider = settings.bg_provider

    if provider == "replicate":
        if not settings.replicate_api_token:
            raise ProviderConfigurationError("REPLICATE_API_TOKEN is required for the replicate provider")
        return ReplicateRemover(
            api_token=settings.replicate_api_token,
            model_version=settings.replicate_model_version,
            api_url=settings.replicate_api_url,
            timeout=min(30.0, settings.provider_timeout_seconds),
            poll_interval=settings.replicate_poll_interval_seconds,
            max_wait=settings.provider_timeout_seconds,
        )

    if provider == "removebg":
        if not settings.removebg_api_key:
            raise ProviderConfigurationError("REMOVEBG_API_KEY is required for the removebg provider")
        return RemoveBgRemover(
            api_key=settings.removebg_api_key,
            api_url=settings.removebg_api_url,
            timeout=settings.provider_timeout_seconds,
        )

    if provider == "custom":
        if not settings.custom_api_url:
            raise ProviderConfigurationError("CUSTOM_API_URL is required for the custom provider")
        return CustomApiRemover(
            api_url=settings.custom_api_url,
            api_key=settings.custom_api_key or "",
            timeout=settings.provider_timeout_seconds,
        )

    raise ProviderConfigurationError(f"Unknown BG_PROVIDER: {provider!r}")
