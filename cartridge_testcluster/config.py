import os
from typing import Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Environment variables forwarded to the image build unless overridden
BUILD_ARG_ENV_VARIABLES: List[str] = [
    "TARANTOOL_VERSION",
    "TARANTOOL_SERVER_USER",
    "TARANTOOL_SERVER_UID",
    "TARANTOOL_SERVER_GROUP",
    "TARANTOOL_SERVER_GID",
    "TARANTOOL_WORKDIR",
    "TARANTOOL_RUNDIR",
    "TARANTOOL_DATADIR",
    "TARANTOOL_INSTANCES_FILE",
]

# Healthy timeout per bootstrap profile, in seconds
PROFILE_HEALTHY_TIMEOUTS: Dict[str, float] = {
    "default": 10.0,
    "extended": 60.0,
}


class RetryPolicy(BaseModel):
    """Retry policy for topology application"""
    max_attempts: int = Field(default=2, description="Total attempts including the first", ge=1)
    backoff_delay: float = Field(default=10.0, description="Seconds between attempts", ge=0)

    model_config = {"frozen": True}


class BootstrapTimeouts(BaseModel):
    """Timing parameters of a single bootstrap run"""
    router_timeout: float = Field(default=60.0, description="Seconds to wait for the router", ge=0)
    healthy_timeout: float = Field(default=10.0, description="Seconds to wait for convergence", ge=0)
    poll_interval: float = Field(default=1.0, description="Seconds between probes", gt=0)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)

    model_config = {"frozen": True}


class Settings(BaseSettings):
    """Cluster container configuration"""

    # Router connection
    router_host: str = "localhost"
    router_port: int = 3301
    api_port: int = 8081
    router_username: str = "admin"
    router_password: str = "testapp-cluster-cookie"
    use_fixed_ports: bool = False

    # Container layout
    instance_dir: str = "/app"
    remote_tmp_dir: str = "/tmp"
    run_dir: Optional[str] = None
    default_run_dir: str = "/tmp/run"

    # Remote execution
    command_timeout_seconds: float = 30.0

    # Bootstrap
    bootstrap_profile: Literal["default", "extended"] = "default"
    router_timeout_seconds: float = 60.0
    healthy_timeout_seconds: Optional[float] = None
    poll_interval_seconds: float = 1.0
    topology_max_attempts: int = 2
    topology_backoff_seconds: float = 10.0
    collision_marker: str = "collision with another server"

    # Lua expressions evaluated on the router
    router_up_probe: str = (
        "local cartridge = package.loaded['cartridge'] "
        "return assert(cartridge ~= nil)"
    )
    cluster_healthy_probe: str = (
        "local cartridge = package.loaded['cartridge'] "
        "return assert(cartridge) and assert(cartridge.is_healthy())"
    )
    shard_bootstrap_command: str = "return require('cartridge').admin_bootstrap_vshard()"

    # Topology tool inside the container
    topology_tool: str = "cartridge"

    model_config = SettingsConfigDict(
        env_prefix="CARTRIDGE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    def bootstrap_timeouts(self) -> BootstrapTimeouts:
        """Build the timeouts of one bootstrap run from these settings"""
        healthy_timeout = self.healthy_timeout_seconds
        if healthy_timeout is None:
            healthy_timeout = PROFILE_HEALTHY_TIMEOUTS[self.bootstrap_profile]
        return BootstrapTimeouts(
            router_timeout=self.router_timeout_seconds,
            healthy_timeout=healthy_timeout,
            poll_interval=self.poll_interval_seconds,
            retry_policy=RetryPolicy(
                max_attempts=self.topology_max_attempts,
                backoff_delay=self.topology_backoff_seconds,
            ),
        )

    def resolve_run_dir(self, build_args: Mapping[str, str]) -> str:
        """Explicit setting first, then the TARANTOOL_RUNDIR build arg"""
        if self.run_dir:
            return self.run_dir
        return build_args.get("TARANTOOL_RUNDIR", self.default_run_dir)


def merge_build_args(
    build_args: Optional[Mapping[str, str]] = None,
    environ: Optional[Mapping[str, str]] = None
) -> Dict[str, str]:
    """
    Merge caller build args with the well-known environment variables

    Values set by the caller win over the environment. The values are
    forwarded to the image build untouched.
    """
    if environ is None:
        environ = os.environ
    args = dict(build_args or {})
    for variable in BUILD_ARG_ENV_VARIABLES:
        value = environ.get(variable)
        if value is not None and variable not in args:
            args[variable] = value
    return args


# Global settings instance
settings = Settings()
