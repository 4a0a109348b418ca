from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings
from pydantic import ConfigDict


class Settings(BaseSettings):
    # Storage
    data_dir: Path = Path("./data")
    railway_volume_mount_path: Optional[str] = None  # Set by Railway when a volume is mounted
    store_locking: bool = True

    # Externally visible base address, resolved at request time
    public_base_url: str = "http://localhost:8000"

    # Uploads
    upload_backend: str = "local"  # "local" or "cloudinary"
    max_upload_bytes: int = 10 * 1024 * 1024
    upload_retries: int = 2
    upload_retry_backoff: float = 0.5
    cloudinary_cloud_name: str = ""
    cloudinary_api_key: str = ""
    cloudinary_api_secret: str = ""
    cloudinary_folder: str = "perrin-papers"
    cloudinary_api_url: str = "https://api.cloudinary.com/v1_1"
    cloudinary_delivery_url: str = "https://res.cloudinary.com"

    # Mail
    sendgrid_api_key: str = ""
    sendgrid_from_email: str = "noreply@perrininstitution.org"
    sendgrid_api_url: str = "https://api.sendgrid.com/v3/mail/send"
    signin_url: str = "https://perrininstitution.org/auth/signin"

    # Bootstrap credentials (disable in production)
    bootstrap_enabled: bool = True
    bootstrap_token: str = "test-token"
    bootstrap_pin: str = "000000"
    bootstrap_email: str = "employee@perrin.org"
    bootstrap_password: str = "password"

    # Auth
    admin_emails: list[str] = ["employee@perrin.org"]
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    token_ttl_minutes: int = 12 * 60
    pin_ttl_days: Optional[int] = None

    # Chat
    chat_history_limit: Optional[int] = None

    # HTTP
    cors_origins: list[str] = ["*"]

    # Circuit breaker settings
    cb_max_failures: int = 5
    cb_reset_timeout: float = 30.0
    cb_call_timeout: float = 10.0

    model_config = ConfigDict(env_prefix="", env_file=".env")

    @property
    def storage_root(self) -> Path:
        """Root for data and uploads; the mounted volume wins when present."""
        if self.railway_volume_mount_path:
            return Path(self.railway_volume_mount_path)
        return self.data_dir

    @property
    def db_file(self) -> Path:
        return self.storage_root / "db.json"

    @property
    def chat_file(self) -> Path:
        return self.storage_root / "data" / "chat.json"

    @property
    def uploads_dir(self) -> Path:
        return self.storage_root / "uploads"


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get singleton settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
