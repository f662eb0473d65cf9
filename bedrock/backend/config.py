"""Bedrock — Application Configuration."""

import json
import logging
from pathlib import Path
from pydantic_settings import BaseSettings
from typing import Optional

_cfg_logger = logging.getLogger("bedrock.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Server
    app_name: str = "Bedrock Terminal"
    app_version: str = "1.0.0"
    host: str = "0.0.0.0"
    port: int = 4000
    cors_origins: list[str] = ["*"]

    # Redis cache
    redis_url: str = "redis://localhost:6379"
    use_redis: bool = False  # Set True when Redis is available
    cache_key_prefix: str = "bedrock:"

    # MarineTraffic
    marinetraffic_api_key: Optional[str] = None
    marinetraffic_base_url: str = "https://services.marinetraffic.com/api"
    upstream_timeout: float = 15.0

    # Vessel rooms (seconds)
    vessel_refresh_interval: float = 30.0

    # Cache TTLs (seconds)
    vessel_positions_ttl: int = 300
    vessel_details_ttl: int = 3600
    port_info_ttl: int = 1800
    vessel_track_ttl: int = 3600
    vessel_search_ttl: int = 1800

    # OilPriceAPI
    oil_price_api_key: Optional[str] = None
    oil_price_base_url: str = "https://api.oilpriceapi.com/v1"
    commodity_ttl: int = 3600
    commodity_background_refresh: bool = True

    # MongoDB (port records)
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_database: str = "bedrock-terminal"
    mongodb_ports_collection: str = "ports"

    # Mapbox
    mapbox_token: Optional[str] = None

    # RSS feeds
    news_feeds: dict[str, str] = {
        "energy": "https://rss.app/feeds/_iP3HVWTdd0BxHjSn.xml",
        "commodities": "https://rss.nytimes.com/services/xml/rss/nyt/HomePage.xml",
        "bloomberg": "https://www.bloomberg.com/feed/podcast/energy.xml",
        "minerals and metals": "https://rss.app/feeds/_Ky0tiLYZBarIjRMC.xml",
    }

    model_config = {"env_file": ".env", "env_prefix": "BEDROCK_"}


def _load_settings() -> Settings:
    """Load settings, supplementing with credentials.json for API keys."""
    s = Settings()

    # Auto-load credentials from credentials.json if not set via env
    creds_path = Path(__file__).resolve().parent.parent / "credentials.json"
    if creds_path.exists():
        try:
            creds = json.loads(creds_path.read_text(encoding="utf-8"))

            if not s.marinetraffic_api_key:
                s.marinetraffic_api_key = creds.get("marinetraffic_api_key") or None
                if s.marinetraffic_api_key:
                    _cfg_logger.info("MarineTraffic key loaded from %s", creds_path.name)

            if not s.oil_price_api_key:
                s.oil_price_api_key = creds.get("oil_price_api_key") or None
                if s.oil_price_api_key:
                    _cfg_logger.info("OilPriceAPI key loaded from %s", creds_path.name)

            if not s.mapbox_token:
                s.mapbox_token = creds.get("mapbox_token") or None
        except Exception as e:
            _cfg_logger.warning("Failed to read credentials.json: %s", e)

    return s


settings = _load_settings()
