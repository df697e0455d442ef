from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Singapore Bus Finder API"
    debug: bool = False
    # CORS: "*" for dev; in production set to comma-separated origins
    cors_origins: str = "*"

    lta_api_key: str = ""  # LTA DataMall account key (get at datamall.lta.gov.sg)
    # Comma-separated DataMall base URLs, tried in order during endpoint discovery
    datamall_base_urls: str = (
        "https://datamall2.mytransport.sg/ltaodataservice,"
        "http://datamall2.mytransport.sg/ltaodataservice"
    )
    request_timeout_seconds: float = 15.0
    user_agent: str = "Singapore-Bus-Finder/2.0"
    preload_stops: bool = True  # Discover endpoint and load all stops at startup

    default_search_radius_m: int = 50
    default_max_stops: int = 3
    max_sessions: int = 10_000

    onemap_url: str = "https://www.onemap.gov.sg/api/common/elastic/search"
    nominatim_url: str = "https://nominatim.openstreetmap.org/search"
    geocode_timeout_seconds: float = 10.0

    def base_url_list(self) -> list[str]:
        return [u.strip() for u in self.datamall_base_urls.split(",") if u.strip()]


def get_settings() -> Settings:
    return Settings()
