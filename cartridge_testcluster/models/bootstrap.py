from enum import Enum


class BootstrapState(str, Enum):
    """States of the cluster bootstrap state machine"""
    NOT_STARTED = "not_started"
    WAITING_FOR_ROUTER = "waiting_for_router"
    APPLYING_TOPOLOGY = "applying_topology"
    WAITING_FOR_HEALTHY = "waiting_for_healthy"
    BOOTSTRAPPING_SHARDS = "bootstrapping_shards"
    READY = "ready"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BootstrapState.READY, BootstrapState.FAILED)


class FailureReason(str, Enum):
    """Why a bootstrap run ended in the failed state"""
    ROUTER_TIMEOUT = "router_timeout"
    TOPOLOGY_ERROR = "topology_error"
    HEALTH_TIMEOUT = "health_timeout"
    SHARD_BOOTSTRAP_ERROR = "shard_bootstrap_error"


class TopologyOutcome(str, Enum):
    """Result of a single topology application attempt"""
    APPLIED = "applied"
    # a previous run already applied the same topology
    ALREADY_APPLIED = "already_applied"
    # the request timed out while the cluster reconfigured itself
    TENTATIVE = "tentative"
    FAILED = "failed"

    @property
    def is_success(self) -> bool:
        return self is not TopologyOutcome.FAILED
