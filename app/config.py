from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Storage
    database_path: str = "tickets.db"

    # Liveness
    heartbeat_interval_seconds: int = 45
    stale_after_missed_heartbeats: int = 3

    # Listing
    default_page_size: int = 20
    max_page_size: int = 100

    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "extra": "ignore"}

    @property
    def stale_threshold_seconds(self) -> int:
        return self.heartbeat_interval_seconds * self.stale_after_missed_heartbeats


settings = Settings()
