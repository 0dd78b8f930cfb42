from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    app_name: str = "story_reader"
    environment: str = "dev"

    api_base_url: str = "http://localhost:8000"
    request_timeout: float = 30.0

    generation_poll_interval: float = 5.0
    generation_poll_max_attempts: int = 60
    story_refresh_interval: float = 15.0
    progress_save_debounce: float = 2.0

    state_database_url: str = "sqlite:///./reader_state.db"

    log_level: str = "INFO"


settings = Settings()
