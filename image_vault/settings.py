from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List, Literal, Optional

# Values without which the storage and metadata layers cannot work
REQUIRED_SETTINGS = (
    "aws_region",
    "s3_bucket",
    "dynamodb_table",
    "aws_access_key_id",
    "aws_secret_access_key",
)

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow",  # tolerate unknown vars if needed
    )

    # Storage / metadata store
    aws_region: str = Field("us-east-1")
    s3_bucket: str = Field("image-vault-bucket")
    dynamodb_table: str = Field("Images")
    aws_endpoint_url: Optional[str] = Field(None)
    external_endpoint: Optional[str] = Field(None)
    presign_expire_seconds: int = Field(3600)

    aws_access_key_id: Optional[str] = Field(None)
    aws_secret_access_key: Optional[str] = Field(None)

    # Upload limits
    max_upload_bytes: int = Field(10 * 1024 * 1024)
    upload_session_ttl_seconds: int = Field(3600)
    max_upload_sessions: int = Field(1000)

    # Vision model
    gemini_api_key: Optional[str] = Field(None)
    gemini_model: str = Field("gemini-2.5-flash")
    gemini_api_base: str = Field("https://generativelanguage.googleapis.com/v1beta")
    analysis_timeout_seconds: float = Field(30.0)
    analysis_max_attempts: int = Field(3, ge=1)
    analysis_backoff_seconds: float = Field(1.0, ge=0)

    # Retrieval proxy
    proxy_cache_seconds: int = Field(60)
    proxy_timeout_seconds: float = Field(30.0)

    # "server" fails at startup on missing config, "function" fails per request
    deployment_mode: Literal["server", "function"] = Field("server")

    app_title: str = Field("Image Vault")
    log_level: str = Field("INFO")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    def missing_required(self) -> List[str]:
        """Names of the required settings that are unset or empty."""
        return [name.upper() for name in REQUIRED_SETTINGS if not getattr(self, name)]

    @property
    def analysis_attempts(self) -> int:
        """Retries for the vision call only happen in the on-demand variant."""
        if self.deployment_mode == "function":
            return self.analysis_max_attempts
        return 1

settings = Settings()
