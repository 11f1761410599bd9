from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Project config file (relative to the working directory)
    config_path: str = ".devspace/config.yaml"

    # Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"

    # File log written alongside console output (empty string disables it)
    log_file: str = ".devspace/logs/up.log"

    # ==========================================================================
    # Chart Deployment
    # ==========================================================================
    chart_path: str = "chart/"
    helm_binary: str = "helm"
    helm_timeout_seconds: int = 300

    # Pod metadata used to find the pods of a release
    release_label: str = "release"
    revision_annotation: str = "revision"

    # ==========================================================================
    # Release Pod Resolution
    # ==========================================================================
    release_poll_interval_seconds: float = 2.0
    pod_ready_timeout_seconds: float = 120.0  # Max wait for the selected pod to become ready
    pod_ready_interval_seconds: float = 5.0

    # ==========================================================================
    # Port Forwarding
    # ==========================================================================
    port_forward_ready_timeout_seconds: float = 5.0
    port_forward_bind_address: str = "127.0.0.1"

    # ==========================================================================
    # Terminal
    # ==========================================================================
    # Prefer bash, fall back to sh when the image does not ship bash
    default_shell_command: str = "command -v bash >/dev/null 2>&1 && exec bash || exec sh"

    # ==========================================================================
    # Kaniko Build Engine
    # ==========================================================================
    # The debug variant ships busybox, which the build pod needs for sleep/tar
    kaniko_image: str = "gcr.io/kaniko-project/executor:debug"
    kaniko_pod_timeout_seconds: float = 120.0
    kaniko_build_timeout_seconds: int = 1800

    # ==========================================================================
    # Registries
    # ==========================================================================
    pull_secret_email: str = "noreply@devspace-cloud.com"

    class Config:
        env_prefix = "KUBEDEV_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields from .env file
        case_sensitive = False


@lru_cache()
def get_settings():
    return Settings()
