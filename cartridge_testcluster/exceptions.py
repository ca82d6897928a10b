from enum import Enum
from typing import List, Optional, Sequence

from cartridge_testcluster.models.bootstrap import BootstrapState, FailureReason
from cartridge_testcluster.models.execution import ExecResult


# Exit codes produced by the request templates and the timeout wrapper
SCRIPT_ERROR_EXIT_CODES = frozenset({2})
CONNECTION_ERROR_EXIT_CODE = 3
CONNECTION_LOST_EXIT_CODE = 4
TIMEOUT_EXIT_CODE = 124


class ClusterContainerError(Exception):
    """Base class for all cluster container errors"""


class ConfigErrorKind(str, Enum):
    MALFORMED_ENDPOINT = "malformed_endpoint"
    MISSING_FIELD = "missing_field"
    INVALID_TOPOLOGY = "invalid_topology"


class ConfigError(ClusterContainerError):
    """The instance or topology document cannot be used"""

    def __init__(self, kind: ConfigErrorKind, message: str, entry_id: Optional[str] = None):
        self.kind = kind
        self.entry_id = entry_id
        prefix = f"{entry_id}: " if entry_id else ""
        super().__init__(f"{prefix}{message}")


class ExecutionErrorKind(str, Enum):
    SCRIPT_ERROR = "script_error"
    TRANSPORT_ERROR = "transport_error"


class ExecutionError(ClusterContainerError):
    """A remote request finished with a nonzero exit code"""

    def __init__(self, kind: ExecutionErrorKind, result: ExecResult, request: str = ""):
        self.kind = kind
        self.result = result
        self.request = request
        super().__init__(
            f"Executed {request or 'request'} with exit code {result.exit_code}, "
            f"stderr: \"{result.stderr.strip()}\", stdout: \"{result.stdout.strip()}\""
        )

    @property
    def stdout(self) -> str:
        return self.result.stdout

    @property
    def stderr(self) -> str:
        return self.result.stderr

    @property
    def timed_out(self) -> bool:
        return (
            self.kind is ExecutionErrorKind.TRANSPORT_ERROR
            and self.result.exit_code == TIMEOUT_EXIT_CODE
        )

    @property
    def connection_lost(self) -> bool:
        """The router dropped the connection while evaluating the request"""
        return (
            self.kind is ExecutionErrorKind.TRANSPORT_ERROR
            and self.result.exit_code == CONNECTION_LOST_EXIT_CODE
        )

    @classmethod
    def from_result(cls, result: ExecResult, request: str = "") -> "ExecutionError":
        """Classify a failed result by its exit code"""
        if result.exit_code in SCRIPT_ERROR_EXIT_CODES:
            kind = ExecutionErrorKind.SCRIPT_ERROR
        else:
            kind = ExecutionErrorKind.TRANSPORT_ERROR
        return cls(kind, result, request)


class DecodeError(ClusterContainerError):
    """A successful reply could not be parsed"""

    def __init__(self, message: str, stdout: str = ""):
        self.stdout = stdout
        super().__init__(message)


class BootstrapFailure(ClusterContainerError):
    """The bootstrap state machine reached the failed state"""

    def __init__(
        self,
        reason: FailureReason,
        message: str,
        cause: object = None,
        history: Sequence[BootstrapState] = ()
    ):
        self.reason = reason
        self.cause = cause
        self.history: List[BootstrapState] = list(history)
        super().__init__(f"{reason.value}: {message}")


class ClusterStateError(ClusterContainerError):
    """The cluster handle is used in a state that does not allow it"""
