"""Fleet settings."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Settings loaded from environment variables."""

    # Persistence
    database_url: str = "sqlite:///./botfleet.db"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json | text
    service_name: str = "botfleet"

    # HTTP surface
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    # VM provider
    hetzner_api_token: str = ""
    hetzner_api_url: str = "https://api.hetzner.cloud/v1"
    hetzner_server_type: str = "cx23"
    hetzner_image: str = "ubuntu-22.04"
    hetzner_location: str = "nbg1"
    provider_http_timeout: float = 30.0
    vm_running_timeout: float = 300.0
    vm_poll_interval: float = 5.0
    host_name_prefix: str = "botfleet"

    # Shared host capacity
    shared_host_purpose: str = "shared-bots"
    default_max_agents: int = 100
    default_base_port: int = 3001
    default_max_port: int = 3100

    # Readiness verification (seconds)
    readiness_initial_delay: float = 60.0
    readiness_poll_interval: float = 120.0
    readiness_max_attempts: int = 15
    readiness_check_timeout: float = 600.0  # cloud-init status --wait can block

    # Deploy requests landing on an initializing host
    host_wait_timeout: float = 1200.0
    host_wait_interval: float = 30.0

    # SSH
    ssh_username: str = "root"
    ssh_port: int = 22
    ssh_connect_timeout: float = 15.0
    ssh_connect_attempts: int = 18
    ssh_retry_delay: float = 10.0
    deploy_connect_attempts: int = 10
    upload_backend: str = "auto"  # auto | sftp | base64

    # Pipeline
    bot_source_root: str = "./bots"
    package_lock_timeout: int = 300
    package_lock_poll: int = 5
    start_settle_delay: float = 3.0
    start_confirm_attempts: int = 10
    start_confirm_interval: float = 2.0
    command_timeout: float = 30.0

    # Host health probe
    health_check_script: str = "/opt/health_check.sh"
    health_check_ready_text: str = "SERVIDOR LISTO PARA DESPLEGAR BOTS"
    status_marker_path: str = "/var/log/botfleet/status"
    health_check_timeout: float = 30.0
    health_check_attempts: int = 10
    health_check_interval: float = 30.0
    remediation_after_attempts: int = 3
    firewall_ports: list[str] = ["22", "80", "443", "3001:3020/tcp"]

    # Log reads
    log_tail_default: int = 100
    log_tail_max: int = 1000
    state_tail_lines: int = 300

    class Config:
        env_prefix = "BOTFLEET_"


settings = Settings()
