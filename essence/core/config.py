from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DB_HOST: str = 'localhost'
    DB_PORT: int = 5432
    DB_USER: str = 'postgres'
    DB_PASS: str = 'postgres'
    DB_NAME: str = 'essence'
    # overrides the DB_* parts when set (sqlite in tests)
    DATABASE_URL: str | None = None

    PROJECT_NAME: str = 'Essence Jobs'
    DEBUG: bool = False
    LOG_LEVEL: str = 'INFO'

    # base url the provider can reach us on, used for webhook callbacks
    PUBLIC_BASE_URL: str = 'http://localhost:8000'

    REPLICATE_API_TOKEN: str = ''
    REPLICATE_API_BASE: str = 'https://api.replicate.com/v1'
    REPLICATE_WEBHOOK_SECRET: str | None = None
    WEBHOOK_TOLERANCE_SECONDS: int = 300
    TRAINING_MODEL: str = 'black-forest-labs/flux-pro-trainer'
    GENERATION_MODEL: str = 'black-forest-labs/flux-1.1-pro-ultra-finetuned'

    STORAGE_BACKEND: str = 'local'     # local | supabase
    STORAGE_ROOT: str = 'storage'
    STORAGE_PUBLIC_URL: str = 'http://localhost:8000/storage'
    SUPABASE_URL: str = ''
    SUPABASE_SERVICE_ROLE_KEY: str = ''
    SUPABASE_BUCKET: str = 'generated-images'

    ARTIFACT_DOWNLOAD_ATTEMPTS: int = 3

    IP_REGISTRAR_URL: str | None = None
    IP_REGISTRAR_TOKEN: str | None = None
    SPG_NFT_CONTRACT: str | None = None
    REGISTRATION_MAX_ATTEMPTS: int = 3
    REGISTRATION_BACKOFF_SECONDS: float = 2.0

    RETRY_SWEEP_LIMIT: int = 5
    RETRY_SWEEP_DELAY_SECONDS: float = 3.0

    OUTBOX_POLL_INTERVAL: float = 1.0
    OUTBOX_BATCH_SIZE: int = 10
    OUTBOX_MAX_ATTEMPTS: int = 5
    OUTBOX_RETRY_SECONDS: float = 15.0

    STALE_JOB_MINUTES: int = 30

    model_config = SettingsConfigDict(
        env_file='.env',
        extra='ignore'
    )

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f'postgresql+asyncpg://{self.DB_USER}:{self.DB_PASS}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}'


settings = Settings()
