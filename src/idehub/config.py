"""Control plane configuration using pydantic-settings.

Configuration hierarchy:
- DockerConfig: Swarm API connection and network
- RoutingConfig: Reverse-proxy (Traefik) label settings
- InstanceConfig: Image, resource limits and in-instance environment
- AssignmentConfig: Storage assignment readiness polling
- PoolConfig: Warm instance pool size
- HealthCheckConfig: Instance endpoint health monitoring
- AdmissionConfig: Host resource thresholds
- StateConfig: Embedded state database
- MaintenanceConfig: Periodic sweep timing
- LoggingConfig: Logging behavior
- ServerConfig: HTTP server settings
- ControlPlaneConfig: Main config aggregating all sub-configs

Environment variable prefix: IDEHUB_
Example: IDEHUB_DOCKER_NETWORK=ide-network
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DockerConfig(BaseSettings):
    """Docker Swarm API configuration."""

    model_config = SettingsConfigDict(env_prefix="IDEHUB_DOCKER_")

    host: str = Field(
        default="unix:///var/run/docker.sock",
        description="Docker daemon socket or TCP address",
    )
    network: str = Field(default="ide-network", description="Overlay network for instances")
    api_timeout: float = Field(default=30.0, description="Docker API call timeout (seconds)")


class RoutingConfig(BaseSettings):
    """Reverse-proxy routing configuration."""

    model_config = SettingsConfigDict(env_prefix="IDEHUB_ROUTING_")

    domain: str = Field(default="localhost", description="Base domain for instance subdomains")
    cert_resolver: str = Field(default="letsencrypt", description="Traefik certificate resolver")
    security_middleware: str = Field(
        default="security-headers@file",
        description="Shared security-headers middleware attached to TLS routers",
    )
    plain_entrypoint: str = Field(default="web")
    secure_entrypoint: str = Field(default="websecure")


class InstanceConfig(BaseSettings):
    """IDE instance service configuration.

    Scale guide (per instance):
      light  -> cpu_limit=1, memory_limit=2GiB
      normal -> cpu_limit=2, memory_limit=4GiB
    """

    model_config = SettingsConfigDict(env_prefix="IDEHUB_INSTANCE_")

    image: str = Field(default="classla-ide-container:latest", description="Instance image")
    service_prefix: str = Field(default="ide-", description="Prefix for Swarm service names")
    cpu_limit: float = Field(default=2.0, description="CPU limit in cores")
    memory_limit: int = Field(default=4 * 1024**3, description="Memory limit in bytes")
    restart_max_attempts: int = Field(default=3)

    # Environment handed to the instance
    inactivity_timeout_seconds: int = Field(default=600)
    callback_url: str = Field(
        default="http://idehub:3001",
        description="Control plane URL the instance reports activity/shutdown to",
    )
    backend_api_url: str = Field(default="http://localhost:8000/api")
    service_token: str = Field(default="", description="Internal token for instance callbacks")
    default_region: str = Field(default="us-east-1")

    # Network attachment correction
    network_check_delay: float = Field(default=0.1, description="Delay before re-inspecting (seconds)")
    network_check_attempts: int = Field(default=3)

    # Log rotation for instance containers
    log_max_size: str = Field(default="10m")
    log_max_file: str = Field(default="5")


class AssignmentConfig(BaseSettings):
    """Storage assignment readiness polling."""

    model_config = SettingsConfigDict(env_prefix="IDEHUB_ASSIGNMENT_")

    web_port: int = Field(default=3000, description="In-instance web server port")
    initial_delay: float = Field(default=2.0, description="Grace period before first probe (seconds)")
    probe_attempts: int = Field(default=15)
    probe_delay: float = Field(default=1.0, description="Delay between probes (seconds)")
    probe_timeout: float = Field(default=2.0, description="Single probe timeout (seconds)")
    request_timeout: float = Field(default=30.0, description="Assignment call timeout (seconds)")


class PoolConfig(BaseSettings):
    """Warm instance pool configuration."""

    model_config = SettingsConfigDict(env_prefix="IDEHUB_POOL_")

    target_size: int = Field(default=0, ge=0, description="Warm instances kept ready (0 disables)")


class HealthCheckConfig(BaseSettings):
    """Instance endpoint health monitoring."""

    model_config = SettingsConfigDict(env_prefix="IDEHUB_HEALTH_")

    enabled: bool = True
    interval: float = Field(default=5.0, description="Seconds between check rounds")
    request_timeout: float = Field(default=3.0, description="Single endpoint check timeout (seconds)")
    max_consecutive_failures: int = Field(
        default=3,
        ge=1,
        description="Failed rounds before a running instance counts as unhealthy",
    )
    max_unhealthy_seconds: float = Field(
        default=300.0,
        description="Time an instance may stay unhealthy before it is stopped",
    )


class AdmissionConfig(BaseSettings):
    """Admission control thresholds."""

    model_config = SettingsConfigDict(env_prefix="IDEHUB_ADMISSION_")

    max_memory_percent: float = Field(default=90.0)
    max_cpu_percent: float = Field(default=90.0)
    cpu_sample_interval: float = Field(default=0.1, description="psutil CPU sampling window (seconds)")


class StateConfig(BaseSettings):
    """Embedded state store configuration."""

    model_config = SettingsConfigDict(env_prefix="IDEHUB_STATE_")

    url: str = Field(default="sqlite+aiosqlite:///data/instances.db")
    echo: bool = False
    retention_hours: float = Field(default=24.0, description="Stopped records kept before archiving")


class MaintenanceConfig(BaseSettings):
    """Periodic maintenance sweep configuration."""

    model_config = SettingsConfigDict(env_prefix="IDEHUB_MAINTENANCE_")

    enabled: bool = True
    interval: float = Field(default=60.0, description="Seconds between sweeps")
    stuck_starting_seconds: float = Field(
        default=600.0,
        description="Age after which a starting instance is reported as stuck",
    )


class LoggingConfig(BaseSettings):
    """Logging configuration.

    Supports both text and JSON formats for different environments:
    - text: Human-readable for local development
    - json: Structured logging for production (log aggregation)
    """

    model_config = SettingsConfigDict(env_prefix="IDEHUB_LOGGING_")

    level: str = Field(default="INFO", description="Log level (DEBUG, INFO, WARNING, ERROR)")
    format: str = Field(default="text", description="Log format (text, json)")
    service_name: str = Field(default="idehub", description="Service identifier in logs")
    throttle_seconds: float = Field(
        default=30.0,
        description="Window in which a repeated event for the same instance is dropped (0 disables)",
    )


class ServerConfig(BaseSettings):
    """HTTP server configuration."""

    model_config = SettingsConfigDict(env_prefix="IDEHUB_SERVER_")

    host: str = Field(default="0.0.0.0", description="Server bind address")
    port: int = Field(default=3001, description="Server port")
    api_keys: str = Field(default="", description="Comma-separated API keys")
    cors_origins: list[str] = Field(default=["*"], description="Allowed CORS origins")
    sse_system_interval: float = Field(default=5.0, description="System SSE event interval (seconds)")

    @property
    def api_key_set(self) -> set[str]:
        return {key.strip() for key in self.api_keys.split(",") if key.strip()}


class ControlPlaneConfig(BaseSettings):
    """Main configuration aggregating all sub-configs.

    Environment variable prefix: IDEHUB_
    Sub-configs use their own prefixes (IDEHUB_DOCKER_, IDEHUB_STATE_, etc.)
    """

    model_config = SettingsConfigDict(
        env_prefix="IDEHUB_",
        env_nested_delimiter="__",
    )

    docker: DockerConfig = Field(default_factory=DockerConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    instance: InstanceConfig = Field(default_factory=InstanceConfig)
    assignment: AssignmentConfig = Field(default_factory=AssignmentConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    health: HealthCheckConfig = Field(default_factory=HealthCheckConfig)
    admission: AdmissionConfig = Field(default_factory=AdmissionConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)


@lru_cache
def get_config() -> ControlPlaneConfig:
    """Get cached control plane configuration."""
    return ControlPlaneConfig()
