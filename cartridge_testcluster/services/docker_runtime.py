import io
import logging
import posixpath
import tarfile
import threading
import uuid
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Sequence

import docker
from docker.models.containers import Container

from cartridge_testcluster.exceptions import ClusterStateError
from cartridge_testcluster.models.execution import ExecResult

logger = logging.getLogger(__name__)


class DockerContainerRuntime:
    """Runs the cluster node processes in one Docker container"""

    def __init__(
        self,
        image: Optional[str] = None,
        exposed_ports: Iterable[int] = (),
        use_fixed_ports: bool = False,
        dockerfile: Optional[str] = None,
        build_args: Optional[Mapping[str, str]] = None,
        environment: Optional[Mapping[str, str]] = None,
        name: Optional[str] = None,
        client: Optional[docker.DockerClient] = None,
        stop_timeout: int = 10
    ):
        """
        Args:
            image: Image to run, or the tag of the image built from the Dockerfile
            exposed_ports: Container ports published on the host
            use_fixed_ports: Publish every port on the same host port
            dockerfile: Path to a Dockerfile to build the image from
            build_args: Build arguments, forwarded untouched
            environment: Container environment
            name: Container name, generated when omitted
            client: Docker client, created from the environment when omitted
            stop_timeout: Seconds to wait for a graceful stop
        """
        if image is None and dockerfile is None:
            raise ValueError("Either an image or a Dockerfile is required")
        self.image = image
        self.exposed_ports = sorted(set(exposed_ports))
        self.use_fixed_ports = use_fixed_ports
        self.dockerfile = dockerfile
        self.build_args: Dict[str, str] = dict(build_args or {})
        self.environment: Dict[str, str] = dict(environment or {})
        self.name = name or f"cartridge-testcluster-{uuid.uuid4().hex[:8]}"
        self.stop_timeout = stop_timeout

        self._client = client
        self._client_lock = threading.Lock()
        self.container: Optional[Container] = None

    @property
    def client(self) -> docker.DockerClient:
        """Docker client, created once on first use"""
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    try:
                        client = docker.from_env()
                        client.ping()
                        logger.info("Docker client initialized successfully")
                    except Exception as e:
                        logger.error(f"Failed to initialize Docker client: {e}")
                        raise
                    self._client = client
        return self._client

    def _require_container(self) -> Container:
        if self.container is None:
            raise ClusterStateError("Container is not started")
        return self.container

    def build_image(self) -> str:
        """Build the image from the Dockerfile and return its tag"""
        dockerfile = Path(self.dockerfile)
        tag = self.image or f"cartridge-testcluster:{uuid.uuid4().hex[:12]}"
        logger.info(f"Building image {tag} from {dockerfile}")
        self.client.images.build(
            path=str(dockerfile.parent),
            dockerfile=dockerfile.name,
            buildargs=self.build_args,
            tag=tag,
            rm=True
        )
        self.image = tag
        return tag

    def start(self):
        if self.container is not None:
            logger.warning(f"Container {self.name} already exists")
            return

        if self.dockerfile:
            self.build_image()

        ports = {
            f"{port}/tcp": port if self.use_fixed_ports else None
            for port in self.exposed_ports
        }
        try:
            self.container = self.client.containers.run(
                image=self.image,
                name=self.name,
                ports=ports,
                environment=self.environment,
                detach=True,
                remove=False
            )
            logger.info(f"Started container {self.name} exposing {self.exposed_ports}")
        except Exception as e:
            logger.error(f"Failed to start container {self.name}: {e}")
            raise

    def stop(self):
        if self.container is None:
            return
        container = self.container
        self.container = None
        try:
            container.stop(timeout=self.stop_timeout)
            container.remove(force=True)
            logger.info(f"Removed container {self.name}")
        except docker.errors.NotFound:
            logger.warning(f"Container {self.name} not found")
        except docker.errors.APIError as e:
            logger.error(f"Failed to remove container {self.name}: {e}")

    def is_running(self) -> bool:
        if self.container is None:
            return False
        try:
            self.container.reload()
        except docker.errors.NotFound:
            return False
        return self.container.status == "running"

    def exec(self, argv: Sequence[str]) -> ExecResult:
        container = self._require_container()
        exec_result = container.exec_run(list(argv), demux=True)
        stdout, stderr = exec_result.output or (None, None)
        return ExecResult(
            exit_code=exec_result.exit_code,
            stdout=(stdout or b"").decode("utf-8", errors="replace"),
            stderr=(stderr or b"").decode("utf-8", errors="replace")
        )

    def copy_file(self, local_path: str, remote_path: str):
        """Copy a local file into the container via a tar archive"""
        container = self._require_container()
        remote_dir, remote_name = posixpath.split(remote_path)

        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as archive:
            archive.add(local_path, arcname=remote_name)
        buffer.seek(0)

        container.exec_run(["mkdir", "-p", remote_dir])
        if not container.put_archive(remote_dir, buffer.getvalue()):
            raise ClusterStateError(f"Failed to copy {local_path} to {self.name}:{remote_path}")
        logger.debug(f"Copied {local_path} to {self.name}:{remote_path}")

    def mapped_port(self, internal_port: int) -> int:
        if self.use_fixed_ports:
            return internal_port
        container = self._require_container()
        container.reload()
        bindings = container.attrs["NetworkSettings"]["Ports"].get(f"{internal_port}/tcp")
        if not bindings:
            raise ClusterStateError(f"Port {internal_port} is not exposed by {self.name}")
        return int(bindings[0]["HostPort"])
