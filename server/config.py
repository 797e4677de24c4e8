"""Timetable Sync Server Configuration."""

import secrets
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Server
    server_name: str = "Timetable Sync Server"
    host: str = "0.0.0.0"
    port: int = 8080
    debug: bool = False
    cors_origins: list[str] = ["*"]

    # Paths
    data_dir: Path = Path.home() / "timetable-sync" / "data"

    # Database
    db_path: Path = Path.home() / "timetable-sync" / "data" / "timetable.db"
    database_url: str = ""  # overrides db_path when set

    # Session JWT (first-party web login)
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    session_token_expire_minutes: int = 1440  # 24 hours

    # Device tokens
    device_token_expire_hours: int = 24
    token_rotation_grace_seconds: int = 120  # a repeated refresh may replace an unused successor

    # Pairing
    pairing_code_length: int = 8
    pairing_expire_seconds: int = 300  # 5 minutes

    # Rate limits, requests per client IP per window (0 disables)
    rate_limit_window_seconds: int = 60
    save_rate_limit: int = 10
    register_rate_limit: int = 30
    link_rate_limit: int = 60
    exchange_rate_limit: int = 120
    trust_forwarded_for: bool = False  # take the client IP from X-Forwarded-For behind a proxy

    model_config = {"env_prefix": "TIMETABLE_"}

    @property
    def sqlalchemy_url(self) -> str:
        return self.database_url or f"sqlite:///{self.db_path}"

    def ensure_dirs(self) -> None:
        """Create all required directories."""
        for d in [self.data_dir, self.db_path.parent]:
            d.mkdir(parents=True, exist_ok=True)

    def ensure_secrets(self) -> None:
        """Generate the JWT secret if not set, persist it so sessions survive restarts."""
        if self.jwt_secret:
            return

        secrets_file = self.data_dir / ".secrets"
        saved = {}
        if secrets_file.exists():
            for line in secrets_file.read_text().strip().splitlines():
                if "=" in line:
                    k, v = line.split("=", 1)
                    saved[k.strip()] = v.strip()

        self.jwt_secret = saved.get("jwt_secret", "") or secrets.token_urlsafe(32)
        secrets_file.write_text(f"jwt_secret={self.jwt_secret}\n")
