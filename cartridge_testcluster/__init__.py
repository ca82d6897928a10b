"""
Ephemeral Tarantool Cartridge clusters for automated tests.

The cluster handle starts the node processes through a container runtime,
bootstraps the topology and exposes a command execution surface.
"""
from cartridge_testcluster.exceptions import (
    BootstrapFailure,
    ClusterContainerError,
    ClusterStateError,
    ConfigError,
    DecodeError,
    ExecutionError,
)
from cartridge_testcluster.services.cluster import CartridgeCluster

__all__ = [
    "BootstrapFailure",
    "CartridgeCluster",
    "ClusterContainerError",
    "ClusterStateError",
    "ConfigError",
    "DecodeError",
    "ExecutionError",
]
