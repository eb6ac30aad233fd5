from dotenv import load_dotenv
from pydantic_settings import BaseSettings

load_dotenv(override=True)

class Settings(BaseSettings):
    PROJECT_NAME: str = "TS Pass Claims"
    # Application settings
    PORT: int = 8000
    HOST: str = "127.0.0.1"
    VERSION: str = "1.0.0"
    CORS_ORIGINS: str = "*"

    # SSL settings
    SSL_KEY: str | None = None
    SSL_CERT: str | None = None

    # SQLAlchemy database URL
    DATABASE_URL: str
    CLAIMS_TABLE: str = "ts_pass_claims"

    # Claim registration
    NONCE_NUM_BYTES: int = 16  # 32 hex characters
    REQUIRE_NONCE: bool = True
    # client may build a message without nonce when the nonce fetch fails
    ALLOW_UNVERIFIED_FALLBACK: bool = False
    RETRY_COOLDOWN_SECONDS: int = 5
    TARGET_CHAIN_ID: str = "0x2105"  # Base mainnet

    # Debug settings
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"

# Instantiate the settings
settings = Settings()
