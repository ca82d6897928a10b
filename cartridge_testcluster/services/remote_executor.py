import logging
import math
import posixpath
from pathlib import Path
from string import Template
from typing import Any, Dict, Optional, Union

import yaml

from cartridge_testcluster.exceptions import DecodeError, ExecutionError
from cartridge_testcluster.models.execution import (
    Credentials,
    Endpoint,
    ExecResult,
    PlainTransport,
    TransportConfig,
)
from cartridge_testcluster.services.runtime import CommandExecutable, FileTransferable

logger = logging.getLogger(__name__)

# Shared parts of the Lua request program. Exit codes: 0 ok, 2 the expression
# raised, 3 the connection could not be established or authenticated, 4 the
# connection was lost while the expression was evaluated.
_PROGRAM_HEAD = (
    "local net_box = require('net.box') "
    "local yaml = require('yaml') "
    "local function pack(...) return {n = select('#', ...), ...} end "
)
_PROGRAM_TAIL = (
    "if not ok or conn == nil or not conn:is_connected() then "
    "io.stderr:write(tostring(ok and conn and conn.error or conn)) "
    "os.exit(3) "
    "end "
    "local res = pack(pcall(conn.eval, conn, '$expression')) "
    "if not res[1] then "
    "io.stderr:write(tostring(res[2])) "
    "if not conn:is_connected() then os.exit(4) end "
    "os.exit(2) "
    "end "
    "local out = setmetatable({}, {__serialize = 'seq'}) "
    "for i = 2, res.n do "
    "if res[i] == nil then out[i - 1] = yaml.NULL else out[i - 1] = res[i] end "
    "end "
    "print(yaml.encode(out)) "
    "os.exit(0)"
)

PLAIN_TEMPLATE = Template(
    _PROGRAM_HEAD
    + "local ok, conn = pcall(net_box.connect, '$host:$port', "
    "{user = '$username', password = '$password', connect_timeout = $timeout}) "
    + _PROGRAM_TAIL
)

SSL_TEMPLATE = Template(
    _PROGRAM_HEAD
    + "local ok, conn = pcall(net_box.connect, "
    "{uri = '$host:$port', params = {transport = 'ssl'}}, "
    "{user = '$username', password = '$password', connect_timeout = $timeout}) "
    + _PROGRAM_TAIL
)

MTLS_TEMPLATE = Template(
    _PROGRAM_HEAD
    + "local ok, conn = pcall(net_box.connect, "
    "{uri = '$host:$port', params = {transport = 'ssl', "
    "ssl_cert_file = '$cert_path', ssl_key_file = '$key_path'}}, "
    "{user = '$username', password = '$password', connect_timeout = $timeout}) "
    + _PROGRAM_TAIL
)

TEMPLATES: Dict[str, Template] = {
    "plain": PLAIN_TEMPLATE,
    "ssl": SSL_TEMPLATE,
    "mtls": MTLS_TEMPLATE,
}

COMMAND_TEMPLATE = Template('timeout $timeout tarantool -e "$program"')


def escape_lua_string(value: str) -> str:
    """Escape a value for a single-quoted Lua string literal"""
    return (
        value.replace("\\", "\\\\")
        .replace("'", "\\'")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
    )


def escape_shell_double_quoted(value: str) -> str:
    """Escape a value for a double-quoted POSIX shell word"""
    for char in ("\\", '"', "$", "`"):
        value = value.replace(char, "\\" + char)
    return value


class RemoteExecutor:
    """Evaluates Lua expressions on the router through the container runtime"""

    def __init__(
        self,
        runtime: Union[CommandExecutable, FileTransferable],
        endpoint: Endpoint,
        credentials: Credentials,
        transport: Optional[TransportConfig] = None,
        timeout: float = 30.0,
        remote_tmp_dir: str = "/tmp"
    ):
        self.runtime = runtime
        self.endpoint = endpoint
        self.credentials = credentials
        self.transport = transport or PlainTransport()
        self.timeout = timeout
        self.remote_tmp_dir = remote_tmp_dir

    def render(
        self,
        expression: str,
        transport: TransportConfig,
        endpoint: Endpoint,
        credentials: Credentials,
        timeout: float
    ) -> str:
        """
        Build the shell command for one request

        Args:
            expression: Lua code evaluated on the router
            transport: Connection transport variant
            endpoint: Router address inside the container
            credentials: Router user credentials
            timeout: Upper bound for the whole request in seconds

        Returns:
            str: Command for `sh -c`
        """
        seconds = max(1, math.ceil(timeout))
        values = {
            "expression": escape_lua_string(expression),
            "host": escape_lua_string(endpoint.host),
            "port": endpoint.port,
            "username": escape_lua_string(credentials.username),
            "password": escape_lua_string(credentials.password),
            "timeout": seconds,
        }
        if transport.kind == "mtls":
            values["cert_path"] = escape_lua_string(transport.cert_path)
            values["key_path"] = escape_lua_string(transport.key_path)

        program = TEMPLATES[transport.kind].substitute(values)
        return COMMAND_TEMPLATE.substitute(
            timeout=seconds,
            program=escape_shell_double_quoted(program)
        )

    def evaluate(
        self,
        expression: str,
        transport: Optional[TransportConfig] = None,
        endpoint: Optional[Endpoint] = None,
        credentials: Optional[Credentials] = None,
        timeout: Optional[float] = None
    ) -> ExecResult:
        """Evaluate an expression on the router and return the raw result"""
        command = self.render(
            expression,
            transport or self.transport,
            endpoint or self.endpoint,
            credentials or self.credentials,
            self.timeout if timeout is None else timeout
        )
        logger.debug(f"Evaluating on router: {expression}")
        result = self.runtime.exec(["sh", "-c", command])
        if result.exit_code != 0:
            logger.debug(f"Request exited with {result.exit_code}: {result.stderr.strip()}")
        return result

    def remote_script_path(self, local_script_path: Union[str, Path]) -> str:
        """Fixed location of a script inside the container"""
        return posixpath.join(self.remote_tmp_dir, Path(local_script_path).name)

    def run_script(self, local_script_path: Union[str, Path], **overrides) -> ExecResult:
        """Copy a local Lua script into the container and execute it with dofile()"""
        remote_path = self.remote_script_path(local_script_path)
        self.runtime.copy_file(str(local_script_path), remote_path)
        logger.info(f"Executing script {remote_path}")
        return self.evaluate(f"return dofile('{escape_lua_string(remote_path)}')", **overrides)

    def check(self, result: ExecResult, request: str = "") -> ExecResult:
        """Raise the classified ExecutionError for a nonzero exit code"""
        if result.exit_code != 0:
            raise ExecutionError.from_result(result, request)
        return result

    def decode(self, result: ExecResult, request: str = "") -> Any:
        """
        Decode the YAML reply of a successful request

        Raises:
            ExecutionError: The request exited with a nonzero code
            DecodeError: The reply is not a YAML document
        """
        self.check(result, request)
        if not result.stdout.strip():
            raise DecodeError(f"Empty reply to {request or 'request'}", result.stdout)
        try:
            return yaml.safe_load(result.stdout)
        except yaml.YAMLError as e:
            raise DecodeError(f"Malformed reply to {request or 'request'}: {e}", result.stdout) from e

    def evaluate_decoded(self, expression: str, **overrides) -> Any:
        return self.decode(self.evaluate(expression, **overrides), f'command "{expression}"')

    def run_script_decoded(self, local_script_path: Union[str, Path], **overrides) -> Any:
        return self.decode(self.run_script(local_script_path, **overrides), f"script {local_script_path}")
