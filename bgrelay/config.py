from __future__ import annotations

import os


class Settings:
    bg_provider: str = os.getenv("BG_PROVIDER", "custom").strip().lower()

    replicate_api_token: str | None = os.getenv("REPLICATE_API_TOKEN")
    replicate_api_url: str = os.getenv("REPLICATE_API_URL", "https://api.replicate.com/v1")
    replicate_model_version: str = os.getenv(
        "REPLICATE_MODEL_VERSION",
        "fb8af171cfa1616ddcf1242c093f9c46bcada5ad4cf6f2fbe8b81b330ec5c003",
    )
    replicate_poll_interval_seconds: float = float(os.getenv("REPLICATE_POLL_INTERVAL_SECONDS", "1.0"))

    removebg_api_key: str | None = os.getenv("REMOVEBG_API_KEY")
    removebg_api_url: str = os.getenv("REMOVEBG_API_URL", "https://api.remove.bg/v1.0/removebg")

    custom_api_url: str | None = os.getenv("CUSTOM_API_URL")
    custom_api_key: str | None = os.getenv("CUSTOM_API_KEY")

    provider_timeout_seconds: float = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "60"))
    max_upload_bytes: int = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

    rate_limit_window_seconds: float = float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", str(15 * 60)))
    rate_limit_max_requests: int = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "50"))
    rate_limit_backend: str = os.getenv("RATE_LIMIT_BACKEND", "memory").strip().lower()
    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    allowed_origins: tuple[str, ...] = tuple(
        origin.strip()
        for origin in os.getenv(
            "ALLOWED_ORIGINS",
            "http://localhost:5173,http://localhost:3000",
        ).split(",")
        if origin.strip()
    )
    frontend_url: str | None = os.getenv("FRONTEND_URL")
    allowed_origin_regex: str | None = os.getenv("ALLOWED_ORIGIN_REGEX", r"https://.*\.vercel\.app")
    trust_proxy: bool = os.getenv("TRUST_PROXY", "true").lower() == "true"

    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "4000"))

    def cors_origins(self) -> list[str]:
        origins = list(self.allowed_origins)
        if self.frontend_url and self.frontend_url not in origins:
            origins.append(self.frontend_url)
        return origins


settings = Settings()
