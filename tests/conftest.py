"""
Pytest configuration and shared fakes
"""
import logging
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from cartridge_testcluster.models.execution import Credentials, Endpoint, ExecResult
from cartridge_testcluster.services.remote_executor import RemoteExecutor

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

TRUE_REPLY = "---\n- true\n...\n\n"
FALSE_REPLY = "---\n- false\n...\n\n"
NULL_REPLY = "---\n- null\n...\n\n"


def ok(stdout: str = TRUE_REPLY) -> ExecResult:
    return ExecResult(exit_code=0, stdout=stdout, stderr="")


def failed(exit_code: int, stderr: str = "", stdout: str = "") -> ExecResult:
    return ExecResult(exit_code=exit_code, stdout=stdout, stderr=stderr)


class FakeClock:
    """Clock whose time only moves when someone sleeps"""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeRuntime:
    """In-memory container runtime answering exec calls with a handler"""

    def __init__(self, handler: Optional[Callable[[Sequence[str]], ExecResult]] = None):
        self.handler = handler or (lambda argv: ok())
        self.running = False
        self.started = 0
        self.stopped = 0
        self.exec_calls: List[List[str]] = []
        self.copied: List[Tuple[str, str]] = []
        self.ports: Dict[int, int] = {}

    def start(self) -> None:
        self.started += 1
        self.running = True

    def stop(self) -> None:
        self.stopped += 1
        self.running = False

    def is_running(self) -> bool:
        return self.running

    def exec(self, argv: Sequence[str]) -> ExecResult:
        self.exec_calls.append(list(argv))
        return self.handler(argv)

    def copy_file(self, local_path: str, remote_path: str) -> None:
        self.copied.append((local_path, remote_path))

    def mapped_port(self, internal_port: int) -> int:
        return self.ports.get(internal_port, internal_port + 10000)


class ScriptedExecutor(RemoteExecutor):
    """
    Remote executor answering from per-expression queues

    Each expression (or script path) maps to a list of results consumed in
    order; the last one repeats once the list is exhausted. A result may be
    an exception instance, which is raised instead.
    """

    def __init__(self, responses: Optional[Dict[str, list]] = None):
        super().__init__(
            FakeRuntime(),
            endpoint=Endpoint(),
            credentials=Credentials(username="admin", password="secret")
        )
        self.responses = {key: list(values) for key, values in (responses or {}).items()}
        self.calls: List[str] = []

    def _next(self, key: str) -> ExecResult:
        self.calls.append(key)
        queue = self.responses[key]
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, BaseException):
            raise response
        return response

    def evaluate(self, expression, transport=None, endpoint=None, credentials=None, timeout=None):
        return self._next(expression)

    def run_script(self, local_script_path, **overrides):
        return self._next(str(local_script_path))

    def count(self, key: str) -> int:
        return self.calls.count(key)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def instances_yaml(tmp_path):
    path = tmp_path / "instances.yml"
    path.write_text(
        "testapp.router:\n"
        "  workdir: ./tmp/db_dev/3301\n"
        "  advertise_uri: localhost:3301\n"
        "  http_port: 8081\n"
        "\n"
        "testapp.s1-master:\n"
        "  workdir: ./tmp/db_dev/3302\n"
        "  advertise_uri: localhost:3302\n"
        "  http_port: 8082\n"
        "\n"
        "testapp.s2-master:\n"
        "  workdir: ./tmp/db_dev/3303\n"
        "  advertise_uri: localhost:3303\n"
        "  http_port: 8083\n"
    )
    return path


@pytest.fixture
def replicasets_yaml(tmp_path):
    path = tmp_path / "replicasets.yml"
    path.write_text(
        "router:\n"
        "  instances:\n"
        "  - router\n"
        "  roles:\n"
        "  - vshard-router\n"
        "  - app.roles.custom\n"
        "  all_rw: false\n"
        "\n"
        "s-1:\n"
        "  instances:\n"
        "  - s1-master\n"
        "  roles:\n"
        "  - vshard-storage\n"
        "  weight: 1\n"
        "  vshard_group: default\n"
        "  all_rw: false\n"
        "\n"
        "s-2:\n"
        "  instances:\n"
        "  - s2-master\n"
        "  roles:\n"
        "  - vshard-storage\n"
        "  weight: 1\n"
        "  vshard_group: default\n"
        "  all_rw: false\n"
    )
    return path


@pytest.fixture
def topology_script(tmp_path):
    path = tmp_path / "cartridge-topology.lua"
    path.write_text(
        "cartridge = require('cartridge')\n"
        "replicasets = {{\n"
        "    alias = 'app-router',\n"
        "    roles = {'vshard-router', 'app.roles.custom'},\n"
        "    join_servers = {{uri = 'localhost:3301'}}\n"
        "}}\n"
        "return cartridge.admin_edit_topology({replicasets = replicasets})\n"
    )
    return path
