from pathlib import Path
import secrets

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 3000
    # Single operator allowed through the session gate
    access_login: str = "test"
    access_password: str = "123456"
    interactions_file: Path = Path("interactions.log")
    callback_data_file: Path = Path("callback.data")
    webhook_data_file: Path = Path("webhook.data")
    private_key_file: Path = Path("private-key.pem")
    html_dir: Path = Path("html")
    # GitHub App identity
    app_id: str = ""
    app_name: str = "SPI Test GitHub App"
    github_api_url: str = "https://api.github.com"
    log_level: str = "INFO"
    session_secret: str | None = None  # random per process when unset
    # Bounds on suspension points
    upstream_timeout_seconds: float = 10.0
    audit_lock_timeout_seconds: float = 5.0
    max_body_bytes: int = 10 * 1024 * 1024
    # The token route is left open unless this is set
    gate_installation_access_token: bool = False

    def model_post_init(self, __context):  # type: ignore[override]
        if not self.session_secret:
            self.session_secret = secrets.token_hex(64)

settings = Settings()
