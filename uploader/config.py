from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "object-uploader"
    app_version: str = "dev"
    host: str = "0.0.0.0"
    port: int = 8000
    storage_backend: str = "local"
    storage_root: str = "./data"
    s3_bucket: str = ""
    aws_region: str = "us-east-1"
    s3_endpoint_url: str = ""
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    r2_bucket: str = ""
    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_endpoint_url: str = ""
    tracing_enabled: bool = False
    tracing_service_name: str = "object-uploader"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True
    multipart_threshold_bytes: int = 8 * 1024 * 1024
    target_part_size_bytes: int = 8 * 1024 * 1024
    min_part_size_bytes: int = 5 * 1024 * 1024
    max_concurrent_parts: int = 4
    part_retry_attempts: int = 3
    retry_backoff_seconds: float = 0.2
    denylist_patterns: str = "virus,.exe"
    list_page_size: int = 1000
    list_max_pages: int = 10000
    download_chunk_size_bytes: int = 64 * 1024

    def denylist(self) -> tuple[str, ...]:
        return tuple(pattern.strip() for pattern in self.denylist_patterns.split(",") if pattern.strip())


settings = Settings()
