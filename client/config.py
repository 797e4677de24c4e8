"""Client configuration.

Passed explicitly into every client component; nothing reads ambient globals,
so several configurations can live side by side in one process.
"""

from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class ClientConfig(BaseSettings):
    # Endpoints
    api_base_url: str = "http://localhost:8080/api/v1"
    web_base_url: str = "http://localhost:3000"
    request_timeout: float = 10.0

    # Pairing
    poll_interval: float = 2.5
    poll_timeout: float = 300.0  # 5 minutes
    poll_max_backoff: float = 30.0

    # Tokens
    token_refresh_skew: float = 300.0  # refresh when within 5 minutes of expiry

    # Sync
    sync_debounce: float = 1.5
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_jitter: float = 1.0
    max_retry_after: float = 60.0  # cap on a server-sent Retry-After

    # Local state
    storage_namespace: str = "timetable"
    storage_path: Optional[Path] = None

    model_config = {"env_prefix": "TIMETABLE_CLIENT_"}
