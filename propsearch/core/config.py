from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "propsearch-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    bulk_search_worker_pool_size: int = 8
    bulk_search_item_timeout_seconds: float = 30.0
    bulk_search_max_items: int = 100
    address_match_threshold: float = 0.8
    address_weight_line1: float = 0.4
    address_weight_town: float = 0.3
    address_weight_postcode: float = 0.3
    royal_mail_base_url: str = "https://api.royalmail.com/address"
    royal_mail_api_key: str | None = None
    land_registry_base_url: str = "https://landregistry.data.gov.uk"
    land_registry_api_key: str | None = None
    http_timeout_seconds: float = 10.0
    otel_enabled: bool = True
    otel_service_name: str = "propsearch-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: dict[str, str] = {}
    otel_trace_sample_ratio: float = 1.0

    model_config = SettingsConfigDict(env_prefix="PS_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
