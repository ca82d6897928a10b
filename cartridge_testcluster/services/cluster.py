import logging
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional

from cartridge_testcluster.config import Settings, merge_build_args, settings as default_settings
from cartridge_testcluster.exceptions import ClusterStateError
from cartridge_testcluster.models.bootstrap import BootstrapState
from cartridge_testcluster.models.cluster import TopologySource, TopologySourceKind
from cartridge_testcluster.models.execution import Credentials, Endpoint, ExecResult, select_transport
from cartridge_testcluster.services import config_parser
from cartridge_testcluster.services.bootstrapper import ClusterBootstrapper, substring_predicate
from cartridge_testcluster.services.clock import Clock
from cartridge_testcluster.services.docker_runtime import DockerContainerRuntime
from cartridge_testcluster.services.remote_executor import RemoteExecutor
from cartridge_testcluster.services.runtime import ContainerRuntime

logger = logging.getLogger(__name__)

DEFAULT_DOCKERFILE = "Dockerfile"


class CartridgeCluster:
    """
    Sets up a Tarantool Cartridge cluster and provides API for interacting with it

    The instance file is a YAML mapping of instance id to workdir,
    advertise_uri and http_port; its advertised and HTTP ports are exposed.
    The topology file is either a YAML replica set mapping applied with the
    cartridge CLI or a Lua script returning the result of
    `cartridge.admin_edit_topology()`. After the topology converges the
    vshard bootstrap command is executed.

    Usage:
        with CartridgeCluster("instances.yml", "topology.lua", image="app:latest") as cluster:
            cluster.execute_command_decoded("return 1 + 2")
    """

    def __init__(
        self,
        instances_file: str,
        topology_file: str,
        runtime: Optional[ContainerRuntime] = None,
        image: Optional[str] = None,
        dockerfile: Optional[str] = None,
        build_args: Optional[Mapping[str, str]] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None
    ):
        if not instances_file:
            raise ValueError("Instance file name must not be null or empty")
        if not topology_file:
            raise ValueError("Topology configuration file must not be null or empty")

        self.settings = settings or default_settings
        self.instances_file = instances_file
        self.topology_file = topology_file
        self.clock = clock

        self.instances = config_parser.parse_instances(config_parser.load_document(instances_file))
        self.topology_kind = TopologySourceKind.from_file_name(topology_file)
        self.topology = {}
        if self.topology_kind is TopologySourceKind.STRUCTURED_FILE:
            self.topology = config_parser.parse_topology(config_parser.load_document(topology_file))
            config_parser.validate_topology(self.topology, self.instances)
        self.exposed_ports: FrozenSet[int] = config_parser.exposed_ports(self.instances)

        self.build_args: Dict[str, str] = merge_build_args(build_args)
        self.run_dir = self.settings.resolve_run_dir(self.build_args)

        self.router_host = self.settings.router_host
        self.router_internal_port = self.settings.router_port
        self.api_internal_port = self.settings.api_port
        self.router_username = self.settings.router_username
        self.router_password = self.settings.router_password
        self.use_fixed_ports = self.settings.use_fixed_ports
        self.ssl = False
        self.key_file = ""
        self.cert_file = ""
        self.collision_predicate: Callable[[str], bool] = substring_predicate(self.settings.collision_marker)

        self.runtime = runtime
        self._image = image
        self._dockerfile = dockerfile if dockerfile or image else DEFAULT_DOCKERFILE

        self.executor: Optional[RemoteExecutor] = None
        self.bootstrapper: Optional[ClusterBootstrapper] = None
        self.state = BootstrapState.NOT_STARTED
        self._stopped = False

    # Options

    def _check_not_running(self):
        """Options can only be changed before the container is started"""
        if self.state is not BootstrapState.NOT_STARTED:
            raise ClusterStateError("This option can be changed only before the container is running")

    def with_ssl(self) -> "CartridgeCluster":
        """Use SSL transport; it must be the default transport of the cluster"""
        self._check_not_running()
        self.ssl = True
        return self

    def with_key_and_cert_files(self, key_file: str, cert_file: str) -> "CartridgeCluster":
        """Use mutual TLS with key and certificate paths inside the container"""
        self._check_not_running()
        self.key_file = key_file
        self.cert_file = cert_file
        return self

    def with_router_host(self, router_host: str) -> "CartridgeCluster":
        self._check_not_running()
        self.router_host = router_host
        return self

    def with_router_port(self, router_port: int) -> "CartridgeCluster":
        self._check_not_running()
        self.router_internal_port = router_port
        return self

    def with_api_port(self, api_port: int) -> "CartridgeCluster":
        self._check_not_running()
        self.api_internal_port = api_port
        return self

    def with_router_username(self, router_username: str) -> "CartridgeCluster":
        self._check_not_running()
        self.router_username = router_username
        return self

    def with_router_password(self, router_password: str) -> "CartridgeCluster":
        """The password is usually the cluster_cookie option of cartridge.cfg()"""
        self._check_not_running()
        self.router_password = router_password
        return self

    def with_use_fixed_ports(self, use_fixed_ports: bool) -> "CartridgeCluster":
        self._check_not_running()
        self.use_fixed_ports = use_fixed_ports
        return self

    def with_collision_predicate(self, predicate: Callable[[str], bool]) -> "CartridgeCluster":
        """Override how an 'already applied' topology error is recognized"""
        self._check_not_running()
        self.collision_predicate = predicate
        return self

    # Lifecycle

    def _ensure_runtime(self) -> ContainerRuntime:
        if self.runtime is None:
            self.runtime = DockerContainerRuntime(
                image=self._image,
                dockerfile=self._dockerfile,
                exposed_ports=self.exposed_ports,
                use_fixed_ports=self.use_fixed_ports,
                build_args=self.build_args
            )
        return self.runtime

    def _create_executor(self) -> RemoteExecutor:
        return RemoteExecutor(
            self.runtime,
            endpoint=Endpoint(host=self.router_host, port=self.router_internal_port),
            credentials=Credentials(username=self.router_username, password=self.router_password),
            transport=select_transport(self.ssl, self.cert_file, self.key_file),
            timeout=self.settings.command_timeout_seconds,
            remote_tmp_dir=self.settings.remote_tmp_dir
        )

    def _create_bootstrapper(self) -> ClusterBootstrapper:
        topology_source = TopologySource.from_path(
            self.topology_file,
            instances_path=self.instances_file,
            remote_dir=self.settings.instance_dir,
            run_dir=self.run_dir,
            tool=self.settings.topology_tool
        )
        return ClusterBootstrapper(
            executor=self.executor,
            runtime=self.runtime,
            topology_source=topology_source,
            router_up_probe=self.settings.router_up_probe,
            cluster_healthy_probe=self.settings.cluster_healthy_probe,
            shard_bootstrap_command=self.settings.shard_bootstrap_command,
            instances=self.instances,
            topology=self.topology,
            timeouts=self.settings.bootstrap_timeouts(),
            clock=self.clock,
            collision_predicate=self.collision_predicate
        )

    def start(self) -> "CartridgeCluster":
        """
        Start the node processes and bootstrap the cluster

        Raises:
            BootstrapFailure: The cluster did not converge; the container is stopped
            ClusterStateError: The handle was already started
        """
        if self.state is not BootstrapState.NOT_STARTED:
            raise ClusterStateError(f"Cluster was already started (state '{self.state.value}')")

        runtime = self._ensure_runtime()
        self.state = BootstrapState.WAITING_FOR_ROUTER
        try:
            runtime.start()
            self._container_is_started()
        except Exception:
            self.state = BootstrapState.FAILED
            runtime.stop()
            self._stopped = True
            raise
        return self

    def _container_is_started(self):
        self.executor = self._create_executor()
        self.bootstrapper = self._create_bootstrapper()
        self.state = self.bootstrapper.run()

        logger.info(f"Tarantool Cartridge router is listening at {self.router_host}:{self.router_port}")
        logger.info(f"Tarantool Cartridge HTTP API is available at {self.router_host}:{self.api_port}")

    def stop(self):
        if self.runtime is not None and not self._stopped:
            self.runtime.stop()
        self._stopped = True

    def __enter__(self) -> "CartridgeCluster":
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

    # Connection details

    @property
    def router_port(self) -> int:
        """Router port on the host"""
        if self.use_fixed_ports:
            return self.router_internal_port
        return self._require_runtime().mapped_port(self.router_internal_port)

    @property
    def api_port(self) -> int:
        """HTTP API port on the host"""
        if self.use_fixed_ports:
            return self.api_internal_port
        return self._require_runtime().mapped_port(self.api_internal_port)

    def instance_roles(self) -> Dict[str, List[str]]:
        """Roles of every instance declared in the topology file"""
        return config_parser.instance_roles(self.topology)

    def _require_runtime(self) -> ContainerRuntime:
        if self.runtime is None:
            raise ClusterStateError("Container is not started")
        return self.runtime

    # Commands

    def _require_ready(self) -> RemoteExecutor:
        if self.state is not BootstrapState.READY or self._stopped:
            raise ClusterStateError(f"Cluster is not ready (state '{self.state.value}')")
        if not self.runtime.is_running():
            raise ClusterStateError("Cannot execute commands in stopped container")
        return self.executor

    def execute_command(self, command: str) -> ExecResult:
        """Execute a Lua command on the router, e.g. `return 1 + 2, 'foo'`"""
        executor = self._require_ready()
        return executor.check(executor.evaluate(command), f'command "{command}"')

    def execute_command_decoded(self, command: str) -> Any:
        return self._require_ready().evaluate_decoded(command)

    def execute_script(self, script_path: str) -> ExecResult:
        """Copy a local Lua script into the container and execute it with dofile()"""
        executor = self._require_ready()
        return executor.check(executor.run_script(script_path), f"script {script_path}")

    def execute_script_decoded(self, script_path: str) -> Any:
        return self._require_ready().run_script_decoded(script_path)
