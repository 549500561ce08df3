from pydantic_settings import BaseSettings
from pydantic import Field

class Settings(BaseSettings):
    app_title: str = Field("Image Vault", env="APP_TITLE")

    # Root of the vault, album subdirectories live directly beneath it
    vault_dir: str = Field("encrypted", env="VAULT_DIR")

    min_key_length: int = Field(4, env="MIN_KEY_LENGTH")
    max_upload_bytes: int = Field(50 * 1024 * 1024, env="MAX_UPLOAD_BYTES")
    thumbnail_size: int = Field(256, env="THUMBNAIL_SIZE")
    page_size_default: int = Field(24, env="PAGE_SIZE_DEFAULT")

    log_level: str = Field("INFO", env="LOG_LEVEL")

    class Config:
        env_file = ".env"
        extra = "allow"  # tolerate unknown vars if needed

settings = Settings()
