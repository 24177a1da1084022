from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {
        "env_file": ".env",
        "extra": "ignore",
        "env_prefix": "",
        "case_sensitive": False,
    }

    # Supabase
    supabase_url: str = ""
    supabase_anon_key: str = ""
    storage_bucket: str = "rooms"
    jobs_table: str = "room_jobs"
    edge_function_path: str = "/functions/v1/empty-room"

    # Local storage
    photo_cache_dir: str = ".homify"  # empty = in-memory only
    photo_cache_key: str = "@homify_saved_photos"
    failed_jobs_key: str = "@homify_failed_jobs"
    upload_dir: str = ".homify/uploads"

    # Polling
    poll_interval_seconds: float = 10.0
    poll_session_timeout_seconds: float = 300.0
    max_consecutive_failures: int = 3
    persist_failed_jobs: bool = False
    reconcile_strict_job_id: bool = False

    # Submission
    default_style: str = "modern"
    default_quality: str = "standard"
    default_room_type: str = "living_room"
    http_timeout_seconds: float = 30.0

    # App
    environment: str = "development"
    log_level: str = "INFO"
    log_file: str = ""

    @property
    def edge_function_url(self) -> str:
        return f"{self.supabase_url.rstrip('/')}{self.edge_function_path}"


settings = Settings()
