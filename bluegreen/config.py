from pathlib import Path
from typing import List, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

HEALTH_POLICIES = ("strict", "lenient")


class Settings(BaseSettings):
    # Paths (relative values resolve against PROJECT_ROOT)
    PROJECT_ROOT: Path = Path(".")
    REGISTRY_DIR: Path = Path("service-registry")
    STATE_DIR: Path = Path("state")
    NGINX_CONF_DIR: Path = Path("nginx/conf.d")
    NGINX_TEMPLATE: Path = Path("nginx/templates/domain-blue-green.conf.template")
    LOG_DIR: Path = Path("logs/blue-green")

    # Reverse proxy
    NGINX_CONTAINER: str = "nginx-microservice"
    PROXY_COMMAND_TIMEOUT: int = 15

    # Container runtime
    NETWORK_NAME: str = "nginx-network"
    HEALTH_CHECK_IMAGE: str = "alpine/curl:latest"
    COMMAND_TIMEOUT: int = 60
    BUILD_TIMEOUT: int = 900
    MAX_PARALLEL_BUILDS: int = 4
    INFRASTRUCTURE_CONTAINERS: List[str] = [
        "nginx-microservice",
        "db-server-postgres",
        "db-server-redis",
    ]

    # Health probing
    PROBE_BACKOFF_SECONDS: float = 1.0
    DEFAULT_HEALTH_TIMEOUT: int = 5
    DEFAULT_HEALTH_RETRIES: int = 3
    PROMOTION_HEALTH_POLICY: str = "strict"
    MONITOR_HEALTH_POLICY: str = "lenient"

    # Startup delay after containers are started
    STARTUP_DELAY_DEFAULT: int = 5
    STARTUP_DELAY_MIN: int = 1
    STARTUP_DELAY_MAX: int = 5

    # Post-switch monitoring window
    MONITOR_DURATION_SECONDS: int = 120
    MONITOR_INTERVAL_SECONDS: int = 30
    MONITOR_REQUIRED_SUCCESSES: int = 4
    MONITOR_FAILURE_TOLERANCE: int = 0

    # Public endpoint check (warning only)
    HTTPS_CHECK_ENABLED: bool = True
    HTTPS_CHECK_TIMEOUT: int = 10
    HTTPS_CHECK_RETRIES: int = 3
    HTTPS_VERIFY_TLS: bool = False

    LOG_LEVEL: str = "INFO"
    METRICS_TEXTFILE: Optional[Path] = None
    HISTORY_LIMIT: int = 20
    LOCK_TIMEOUT_SECONDS: float = 0.0

    class Config:
        env_prefix = ""
        env_file = ".env"
        extra = "ignore"

    @field_validator("PROMOTION_HEALTH_POLICY", "MONITOR_HEALTH_POLICY")
    @classmethod
    def _known_policy(cls, value: str) -> str:
        value = value.lower()
        if value not in HEALTH_POLICIES:
            raise ValueError(f"health policy must be one of {HEALTH_POLICIES}, got {value!r}")
        return value

    @model_validator(mode="after")
    def _sane_startup_bounds(self) -> "Settings":
        if self.STARTUP_DELAY_MIN > self.STARTUP_DELAY_MAX:
            raise ValueError("STARTUP_DELAY_MIN must not exceed STARTUP_DELAY_MAX")
        if self.MONITOR_INTERVAL_SECONDS <= 0:
            raise ValueError("MONITOR_INTERVAL_SECONDS must be positive")
        return self

    def resolve(self, path: Path) -> Path:
        """Anchor a configured path at PROJECT_ROOT unless it is already absolute."""
        path = Path(path)
        if path.is_absolute():
            return path
        return (Path(self.PROJECT_ROOT) / path).resolve()

    @property
    def registry_dir(self) -> Path:
        return self.resolve(self.REGISTRY_DIR)

    @property
    def state_dir(self) -> Path:
        return self.resolve(self.STATE_DIR)

    @property
    def nginx_conf_dir(self) -> Path:
        return self.resolve(self.NGINX_CONF_DIR)

    @property
    def nginx_template(self) -> Path:
        return self.resolve(self.NGINX_TEMPLATE)

    @property
    def log_dir(self) -> Path:
        return self.resolve(self.LOG_DIR)


settings = Settings()
