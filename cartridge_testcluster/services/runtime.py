"""
Capabilities a container runtime provides to the cluster handle.

The remote executor only depends on the capabilities it
uses, so tests can pass small fakes instead of a Docker-backed runtime.
"""
from typing import Protocol, Sequence, runtime_checkable

from cartridge_testcluster.models.execution import ExecResult


@runtime_checkable
class Startable(Protocol):
    def start(self) -> None: ...

    def stop(self) -> None: ...

    def is_running(self) -> bool: ...


@runtime_checkable
class CommandExecutable(Protocol):
    def exec(self, argv: Sequence[str]) -> ExecResult: ...


@runtime_checkable
class FileTransferable(Protocol):
    def copy_file(self, local_path: str, remote_path: str) -> None: ...


@runtime_checkable
class PortMappable(Protocol):
    def mapped_port(self, internal_port: int) -> int: ...


@runtime_checkable
class ContainerRuntime(Startable, CommandExecutable, FileTransferable, PortMappable, Protocol):
    """Everything the cluster handle needs from a running container"""
