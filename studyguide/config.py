from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Groq
    groq_api_key: str = ""
    default_model: str = "meta-llama/llama-4-scout-17b-16e-instruct"
    ranking_model: str = "llama-3.1-8b-instant"

    # YouTube Data API (empty = video search disabled)
    youtube_api_key: str = ""
    video_search_results: int = 10
    rerank_videos: bool = True

    # Batch orchestration
    batch_mode: bool = True
    batch_chunk_size: int = 5
    chunk_delay_seconds: float = 2.0
    individual_pool_size: int = 3
    individual_delay_seconds: float = 1.0

    # Generative call throttling
    min_call_interval_seconds: float = 1.0
    max_generation_attempts: int = 3
    default_retry_delay_seconds: float = 30.0

    # Storage
    storage_root: str = "storage"
    database_path: str = "studyguide.db"
    signing_secret: str = "change-me"
    signed_url_ttl_seconds: int = 300
    public_base_url: str = "http://127.0.0.1:8000"

    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()
