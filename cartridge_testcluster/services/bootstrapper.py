import logging
import posixpath
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from cartridge_testcluster.config import BootstrapTimeouts, settings
from cartridge_testcluster.exceptions import (
    BootstrapFailure,
    ClusterStateError,
    DecodeError,
    ExecutionError,
)
from cartridge_testcluster.models.bootstrap import BootstrapState, FailureReason, TopologyOutcome
from cartridge_testcluster.models.cluster import (
    InstanceSpec,
    TopologyNode,
    TopologySource,
    TopologySourceKind,
)
from cartridge_testcluster.services.clock import Clock, SystemClock
from cartridge_testcluster.services.remote_executor import RemoteExecutor
from cartridge_testcluster.services.runtime import ContainerRuntime

logger = logging.getLogger(__name__)

# Failure reported when a state handler raises unexpectedly
STATE_FAILURE_REASONS: Dict[BootstrapState, FailureReason] = {
    BootstrapState.WAITING_FOR_ROUTER: FailureReason.ROUTER_TIMEOUT,
    BootstrapState.APPLYING_TOPOLOGY: FailureReason.TOPOLOGY_ERROR,
    BootstrapState.WAITING_FOR_HEALTHY: FailureReason.HEALTH_TIMEOUT,
    BootstrapState.BOOTSTRAPPING_SHARDS: FailureReason.SHARD_BOOTSTRAP_ERROR,
}


def substring_predicate(marker: str) -> Callable[[str], bool]:
    """Collision predicate matching a fixed substring of the error message"""
    def matches(message: str) -> bool:
        return marker in message
    return matches


def is_truthy_reply(reply: Any) -> bool:
    """A probe reply is truthy when its first returned value is"""
    if isinstance(reply, (list, tuple)):
        return len(reply) > 0 and bool(reply[0])
    return bool(reply)


def reply_error(reply: Any) -> Any:
    """Return the error of a `nil, err` style reply, or None"""
    if not isinstance(reply, (list, tuple)) or len(reply) < 2:
        return None
    value, error = reply[0], reply[1]
    if isinstance(error, Mapping) or (not value and error is not None):
        return error
    return None


def error_message(error: Any) -> str:
    if isinstance(error, Mapping):
        for key in ("str", "err"):
            if error.get(key) is not None:
                return str(error[key])
    return str(error)


class ClusterBootstrapper:
    """
    Brings freshly started node processes into a converged cluster

    The bootstrapper is created for a single cluster start and driven
    synchronously by the caller: wait for the router, apply the topology
    (retrying per the retry policy), wait until every node reports healthy
    and bootstrap the shards. It ends either in READY or raises a
    BootstrapFailure carrying the underlying cause.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        runtime: ContainerRuntime,
        topology_source: TopologySource,
        router_up_probe: str,
        cluster_healthy_probe: str,
        shard_bootstrap_command: str,
        instances: Optional[Mapping[str, InstanceSpec]] = None,
        topology: Optional[Mapping[str, TopologyNode]] = None,
        timeouts: Optional[BootstrapTimeouts] = None,
        clock: Optional[Clock] = None,
        collision_predicate: Optional[Callable[[str], bool]] = None
    ):
        self.executor = executor
        self.runtime = runtime
        self.topology_source = topology_source
        self.router_up_probe = router_up_probe
        self.cluster_healthy_probe = cluster_healthy_probe
        self.shard_bootstrap_command = shard_bootstrap_command
        self.instances: Dict[str, InstanceSpec] = dict(instances or {})
        self.topology: Dict[str, TopologyNode] = dict(topology or {})
        self.timeouts = timeouts or BootstrapTimeouts()
        self.clock = clock or SystemClock()
        self.collision_predicate = collision_predicate or substring_predicate(settings.collision_marker)

        self.state = BootstrapState.NOT_STARTED
        self.history: List[BootstrapState] = [self.state]
        self.failure: Optional[BootstrapFailure] = None
        self.topology_outcome: Optional[TopologyOutcome] = None
        self.topology_attempts = 0
        self.topology_confirmed = False

    def run(self) -> BootstrapState:
        """
        Drive the state machine to a terminal state

        Returns:
            BootstrapState: READY

        Raises:
            BootstrapFailure: The run ended in the FAILED state
            ClusterStateError: The bootstrapper was already run
        """
        if self.state is not BootstrapState.NOT_STARTED:
            raise ClusterStateError(f"Bootstrap already ran and ended in state '{self.state.value}'")

        handlers = {
            BootstrapState.WAITING_FOR_ROUTER: self._wait_for_router,
            BootstrapState.APPLYING_TOPOLOGY: self._apply_topology,
            BootstrapState.WAITING_FOR_HEALTHY: self._wait_for_healthy,
            BootstrapState.BOOTSTRAPPING_SHARDS: self._bootstrap_shards,
        }

        logger.info("Tarantool Cartridge cluster is starting")
        routers = [node.replicaset_id for node in self.topology.values() if node.is_router]
        if routers:
            logger.info(
                f"Bootstrapping {len(self.instances)} instances in {len(self.topology)} replica sets, "
                f"router replica set: {routers[0]}"
            )
        self._transition(BootstrapState.WAITING_FOR_ROUTER)
        while not self.state.is_terminal:
            try:
                next_state = handlers[self.state]()
            except Exception as e:
                next_state = self._fail(
                    STATE_FAILURE_REASONS[self.state],
                    f"Unexpected error in state '{self.state.value}': {e}",
                    e
                )
            self._transition(next_state)

        if self.failure is not None:
            raise self.failure
        logger.info("Tarantool Cartridge cluster is started")
        return self.state

    def _transition(self, state: BootstrapState):
        logger.debug(f"Bootstrap state {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def _fail(self, reason: FailureReason, message: str, cause: Any) -> BootstrapState:
        logger.error(f"Cluster bootstrap failed ({reason.value}): {message}")
        self.failure = BootstrapFailure(reason, message, cause, self.history + [BootstrapState.FAILED])
        if isinstance(cause, BaseException):
            self.failure.__cause__ = cause
        return BootstrapState.FAILED

    def _probe(self, expression: str, description: str) -> Tuple[bool, Any]:
        try:
            reply = self.executor.evaluate_decoded(expression)
        except (ExecutionError, DecodeError) as e:
            logger.warning(f"Error while waiting for {description}: {e}")
            return False, e
        return is_truthy_reply(reply), reply

    def _wait_until(self, expression: str, timeout: float, description: str) -> Tuple[bool, Any]:
        """Poll an expression until it is truthy or the timeout elapses"""
        started = self.clock.monotonic()
        while True:
            satisfied, last = self._probe(expression, description)
            if satisfied:
                return True, last
            self.clock.sleep(self.timeouts.poll_interval)
            if self.clock.monotonic() - started >= timeout:
                return False, last

    def _wait_for_router(self) -> BootstrapState:
        ok, last = self._wait_until(
            self.router_up_probe,
            self.timeouts.router_timeout,
            "router instance to be up"
        )
        if not ok:
            return self._fail(
                FailureReason.ROUTER_TIMEOUT,
                f"Router is not up after {self.timeouts.router_timeout} seconds",
                last
            )
        logger.info("Router instance is up")
        return BootstrapState.APPLYING_TOPOLOGY

    def _apply_topology(self) -> BootstrapState:
        policy = self.timeouts.retry_policy
        cause: Any = None
        while self.topology_attempts < policy.max_attempts:
            self.topology_attempts += 1
            outcome, cause = self._apply_topology_once()
            if outcome.is_success:
                self.topology_outcome = outcome
                if outcome is TopologyOutcome.ALREADY_APPLIED:
                    logger.info("Topology is already applied")
                elif outcome is TopologyOutcome.TENTATIVE:
                    logger.info("Topology request timed out, the cluster is reloading")
                return BootstrapState.WAITING_FOR_HEALTHY
            if self.topology_attempts < policy.max_attempts:
                logger.info(f"Retrying setup topology in {policy.backoff_delay} seconds")
                self.clock.sleep(policy.backoff_delay)

        return self._fail(
            FailureReason.TOPOLOGY_ERROR,
            f"Failed to change the app topology after {self.topology_attempts} attempts",
            cause
        )

    def _apply_topology_once(self) -> Tuple[TopologyOutcome, Any]:
        try:
            if self.topology_source.kind is TopologySourceKind.STRUCTURED_FILE:
                return self._apply_topology_file()
            return self._apply_topology_script()
        except Exception as e:
            logger.warning(f"Failed to change the app topology: {e}")
            return TopologyOutcome.FAILED, e

    def _apply_topology_script(self) -> Tuple[TopologyOutcome, Any]:
        try:
            reply = self.executor.run_script_decoded(self.topology_source.path)
        except ExecutionError as e:
            if e.timed_out or e.connection_lost:
                # the cluster reloads and drops the connection
                return TopologyOutcome.TENTATIVE, e
            logger.warning(f"Failed to change the app topology: {e}")
            return TopologyOutcome.FAILED, e
        except DecodeError as e:
            logger.warning(f"Failed to change the app topology: {e}")
            return TopologyOutcome.FAILED, e

        error = reply_error(reply)
        if error is None:
            return TopologyOutcome.APPLIED, reply
        message = error_message(error)
        if self.collision_predicate(message):
            return TopologyOutcome.ALREADY_APPLIED, reply
        logger.warning(f"Failed to change the app topology: {message}")
        return TopologyOutcome.FAILED, reply

    def _apply_topology_file(self) -> Tuple[TopologyOutcome, Any]:
        source = self.topology_source
        remote_topology = self._copy_to_container(source.path)
        argv = [
            source.tool,
            "replicasets",
            f"--run-dir={source.run_dir}",
            f"--file={remote_topology}",
        ]
        if source.instances_path:
            argv.append(f"--cfg={self._copy_to_container(source.instances_path)}")
        argv.append("setup")

        result = self.runtime.exec(argv)
        if result.exit_code != 0:
            error = ExecutionError.from_result(result, "topology setup via cartridge CLI")
            logger.warning(f"Failed to change the app topology via cartridge CLI: {error}")
            return TopologyOutcome.FAILED, error
        return TopologyOutcome.APPLIED, result

    def _copy_to_container(self, local_path: str) -> str:
        remote_path = posixpath.join(self.topology_source.remote_dir, Path(local_path).name)
        self.runtime.copy_file(local_path, remote_path)
        return remote_path

    def _wait_for_healthy(self) -> BootstrapState:
        ok, last = self._wait_until(
            self.cluster_healthy_probe,
            self.timeouts.healthy_timeout,
            "cartridge healthy state"
        )
        if not ok:
            return self._fail(
                FailureReason.HEALTH_TIMEOUT,
                f"Cluster is not healthy after {self.timeouts.healthy_timeout} seconds",
                last
            )
        self.topology_confirmed = True
        logger.info("Cluster roles are configured")
        return BootstrapState.BOOTSTRAPPING_SHARDS

    def _bootstrap_shards(self) -> BootstrapState:
        try:
            result = self.executor.evaluate(self.shard_bootstrap_command)
            self.executor.check(result, "vshard bootstrap")
        except ExecutionError as e:
            return self._fail(FailureReason.SHARD_BOOTSTRAP_ERROR, "Failed to bootstrap vshard cluster", e)
        logger.info("vshard cluster is bootstrapped")
        return BootstrapState.READY
