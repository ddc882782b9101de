"""
Configuration module for the Replica Sync Operator.

Loads configuration from environment variables. The correlation label key
and the watched kinds are fixed contracts and are not configurable here.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

SERVICE_ACCOUNT_DIR = "/var/run/secrets/kubernetes.io/serviceaccount"

# Names accepted by both logging and uvicorn
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


def _default_api_url() -> str:
    host = os.getenv("KUBERNETES_SERVICE_HOST")
    port = os.getenv("KUBERNETES_SERVICE_PORT", "443")
    if host:
        if ":" in host:  # IPv6
            host = f"[{host}]"
        return f"https://{host}:{port}"
    return "https://kubernetes.default.svc"


@dataclass
class KubernetesConfig:
    """Kubernetes API server connection configuration."""

    api_url: str = "https://kubernetes.default.svc"
    token_file: str = f"{SERVICE_ACCOUNT_DIR}/token"
    token: str = field(default="", repr=False)  # Never log token
    ca_file: str = f"{SERVICE_ACCOUNT_DIR}/ca.crt"
    insecure: bool = False
    request_timeout: float = 10.0  # seconds
    watch_namespace: str = ""  # empty = all namespaces
    watch_timeout: int = 300  # seconds

    def __post_init__(self):
        if self.request_timeout <= 0:
            raise ValueError("KUBERNETES_REQUEST_TIMEOUT must be positive")
        if self.watch_timeout <= 0:
            raise ValueError("WATCH_TIMEOUT must be positive")

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            api_url=os.getenv("KUBERNETES_API_URL") or _default_api_url(),
            token_file=os.getenv(
                "KUBERNETES_TOKEN_FILE", f"{SERVICE_ACCOUNT_DIR}/token"
            ),
            token=os.getenv("KUBERNETES_TOKEN", ""),
            ca_file=os.getenv("KUBERNETES_CA_FILE", f"{SERVICE_ACCOUNT_DIR}/ca.crt"),
            insecure=os.getenv("KUBERNETES_INSECURE", "false").lower() == "true",
            request_timeout=float(os.getenv("KUBERNETES_REQUEST_TIMEOUT", "10")),
            watch_namespace=os.getenv("WATCH_NAMESPACE", ""),
            watch_timeout=int(os.getenv("WATCH_TIMEOUT", "300")),
        )

    def read_token(self) -> Optional[str]:
        """Return the bearer token, preferring an explicit one over the file."""
        if self.token:
            return self.token
        if self.token_file and os.path.exists(self.token_file):
            with open(self.token_file, "r") as f:
                return f.read().strip()
        return None


@dataclass
class ControllerConfig:
    """Work queue and worker pool configuration."""

    max_concurrent_reconciles: int = 5
    resync_interval: int = 600  # seconds
    reconcile_timeout: float = 30.0  # seconds

    # Exponential backoff configuration
    backoff_base_delay: float = 0.5  # base delay in seconds
    backoff_max_delay: float = 300.0  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    def __post_init__(self):
        if self.max_concurrent_reconciles < 1:
            raise ValueError("MAX_CONCURRENT_RECONCILES must be at least 1")
        if self.resync_interval <= 0:
            raise ValueError("RESYNC_INTERVAL must be positive")
        if self.reconcile_timeout <= 0:
            raise ValueError("RECONCILE_TIMEOUT must be positive")
        if self.backoff_base_delay <= 0 or self.backoff_max_delay < self.backoff_base_delay:
            raise ValueError(
                "BACKOFF_BASE_DELAY must be positive and not exceed BACKOFF_MAX_DELAY"
            )
        if not 0 <= self.backoff_jitter_factor < 1:
            raise ValueError("BACKOFF_JITTER_FACTOR must be in [0, 1)")

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            resync_interval=int(os.getenv("RESYNC_INTERVAL", "600")),
            reconcile_timeout=float(os.getenv("RECONCILE_TIMEOUT", "30")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "0.5")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "300")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class APIConfig:
    """Health and status API configuration."""

    host: str = "0.0.0.0"
    port: int = 8081
    log_level: str = "INFO"

    def __post_init__(self):
        if not 0 <= self.port <= 65535:
            raise ValueError("API_PORT must be in [0, 65535]")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8081")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@dataclass
class Config:
    """Main configuration object."""

    kubernetes: KubernetesConfig
    controller: ControllerConfig
    api: APIConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            kubernetes=KubernetesConfig.from_env(),
            controller=ControllerConfig.from_env(),
            api=APIConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            kubernetes=KubernetesConfig(),
            controller=ControllerConfig(),
            api=APIConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
