"""Drive a locally installed docker-compose binary."""

from __future__ import annotations

import enum
import logging
import os
import shutil
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from functools import partial
from typing import IO, Any, Callable, Mapping, NamedTuple, Optional, Sequence

import yaml

from composekit.container import ContainerRef

ENV_PROJECT_NAME = "COMPOSE_PROJECT_NAME"
ENV_COMPOSE_FILE = "COMPOSE_FILE"
DEFAULT_COMPOSE_FILE = "docker-compose.yml"

_LOGGER = logging.getLogger("composekit")


class ComposeError(RuntimeError):
    """Raised when running docker-compose, or waiting on its services, fails."""

    def __init__(
        self,
        message: str,
        command: Optional[Sequence[str]] = None,
        result: Optional["ExecResult"] = None,
    ) -> None:
        super().__init__(message)
        self.command = list(command or [])
        self.result = result


class ComposeVersion(enum.Enum):
    """Major docker-compose versions; they join container name parts differently."""

    V1 = "_"
    V2 = "-"

    def format(self, *args: str) -> str:
        """Join name parts with the separator this version uses."""
        return self.value.join(args)


@dataclass(frozen=True)
class ExecResult:
    """What a finished program wrote and how it exited."""

    command: list[str]
    stdout_output: bytes
    stderr_output: bytes
    returncode: int = 0


class CapturingPassThroughWriter:
    """A writer that remembers everything written to it and passes it on."""

    def __init__(self, target: IO[Any]) -> None:
        self._target = target
        self._buffer = bytearray()

    def write(self, data: bytes) -> int:
        self._buffer.extend(data)
        try:
            self._target.write(data)
        except TypeError:
            self._target.write(data.decode(errors="replace"))
        return len(data)

    def getvalue(self) -> bytes:
        """Return every byte written so far."""
        return bytes(self._buffer)


class _WaitService(NamedTuple):
    service: str
    published_port: int = 0


def which(binary: str) -> Optional[str]:
    """Return the full path of binary if it can be found on PATH, else None."""
    return shutil.which(binary)


def _pump(source: IO[bytes], sink: CapturingPassThroughWriter) -> None:
    for chunk in iter(partial(source.read1, 65536), b""):  # type: ignore[attr-defined]
        sink.write(chunk)


def execute(
    dir_context: str,
    environment: Mapping[str, str],
    binary: str,
    args: Sequence[str],
) -> ExecResult:
    """Run binary with args in dir_context, echoing and capturing its output.

    Raises ComposeError if the program cannot be started or exits non-zero.
    """
    env = dict(os.environ)
    env.update(environment)

    stdout = CapturingPassThroughWriter(getattr(sys.stdout, "buffer", sys.stdout))
    stderr = CapturingPassThroughWriter(getattr(sys.stderr, "buffer", sys.stderr))

    try:
        process = subprocess.Popen(
            [binary, *args],
            cwd=dir_context,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as err:
        raise ComposeError(
            str(err), command=["Starting command", dir_context, binary, *args]
        ) from err

    with process:
        reader = threading.Thread(target=_pump, args=(process.stdout, stdout), daemon=True)
        reader.start()
        _pump(process.stderr, stderr)
        reader.join()
        returncode = process.wait()

    result = ExecResult(
        command=["Reading std", dir_context, binary, *args],
        stdout_output=stdout.getvalue(),
        stderr_output=stderr.getvalue(),
        returncode=returncode,
    )
    if returncode != 0:
        raise ComposeError(
            f"exit status {returncode}", command=result.command, result=result
        )
    return result


def _docker_container_ids(names: Sequence[str]) -> list[str]:
    """List ids of all containers whose name matches any of names."""
    command = ["docker", "ps", "--all", "--no-trunc", "--format", "{{.ID}}"]
    for name in names:
        command += ["--filter", f"name={name}"]
    completed = subprocess.run(command, capture_output=True, text=True, check=True)
    return [line.strip() for line in completed.stdout.splitlines() if line.strip()]


def _default_executable() -> str:
    return "docker-compose.exe" if sys.platform.startswith("win") else "docker-compose"


@dataclass
class LocalDockerCompose:
    """A docker-compose execution using the local docker-compose binary."""

    compose_file_paths: list[str] = field(default_factory=list)
    identifier: str = ""
    executable: str = field(default_factory=_default_executable)
    cmd: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    services: dict[str, Any] = field(default_factory=dict)
    logger: logging.Logger = _LOGGER
    compose_version: Optional[ComposeVersion] = None
    provider: Any = None
    container_lister: Callable[[Sequence[str]], list[str]] = _docker_container_ids
    wait_strategies: dict[_WaitService, Any] = field(default_factory=dict)
    _abs_compose_file_paths: list[str] = field(default_factory=list, init=False, repr=False)
    _wait_strategy_supplied: bool = field(default=False, init=False, repr=False)

    def format(self, *args: str) -> str:
        """Join name parts the way the detected docker-compose version does."""
        if self.compose_version is None:
            raise ComposeError("docker-compose version is unknown")
        return self.compose_version.format(*args)

    def down(self) -> ExecResult:
        """Run docker-compose down, removing orphans and volumes."""
        return self._execute_compose(["down", "--remove-orphans", "--volumes"])

    def invoke(self) -> ExecResult:
        """Run docker-compose with the configured command."""
        return self._execute_compose(self.cmd)

    def wait_for_service(self, service: str, strategy: Any) -> "LocalDockerCompose":
        self._wait_strategy_supplied = True
        self.wait_strategies[_WaitService(service)] = strategy
        return self

    def with_command(self, cmd: Sequence[str]) -> "LocalDockerCompose":
        self.cmd = list(cmd)
        return self

    def with_env(self, env: Mapping[str, str]) -> "LocalDockerCompose":
        self.env = dict(env)
        return self

    def with_exposed_service(self, service: str, port: int, strategy: Any) -> "LocalDockerCompose":
        """Wait on a service; strategies for several ports all apply to its one container."""
        self._wait_strategy_supplied = True
        self.wait_strategies[_WaitService(service, port)] = strategy
        return self

    def _compose_environment(self) -> dict[str, str]:
        return {
            ENV_PROJECT_NAME: self.identifier,
            ENV_COMPOSE_FILE: "".join(p + os.pathsep for p in self._abs_compose_file_paths),
        }

    def _container_name(self, service: str, separator: str) -> str:
        return self.identifier + separator + service

    def _apply_strategies_to_running_containers(self) -> None:
        for key, strategy in self.wait_strategies.items():
            names = [
                self._container_name(key.service, "_"),
                self._container_name(key.service, "-"),
                key.service,
            ]
            try:
                container_ids = self.container_lister(names)
            except Exception as err:
                raise ComposeError(
                    f"error {err} occurred while filtering the service "
                    f"{key.service}: {key.published_port} by name and published port"
                ) from err

            if not container_ids:
                raise ComposeError(
                    f"service with name {key.service} not found in list of running containers"
                )
            if len(container_ids) > 1:
                raise ComposeError(
                    f"expecting only one running container for {key.service} "
                    f"but got {len(container_ids)}"
                )

            container = ContainerRef(
                id=container_ids[0],
                waiting_for=strategy,
                provider=self.provider,
                logger=self.logger,
            )
            try:
                strategy.wait_until_ready(container)
            except Exception as err:
                raise ComposeError(
                    f"Unable to apply wait strategy {strategy!r} to service "
                    f"{key.service} due to {err}"
                ) from err

    def _execute_compose(self, args: Sequence[str]) -> ExecResult:
        if which(self.executable) is None:
            raise ComposeError(
                f"Local Docker Compose not found. Is {self.executable} on the PATH?",
                command=[self.executable],
            )

        environment = self._compose_environment()
        environment.update(self.env)

        if self._abs_compose_file_paths:
            working_dir = os.path.dirname(self._abs_compose_file_paths[0]) or os.curdir
            cmds = [part for p in self._abs_compose_file_paths for part in ("-f", p)]
        else:
            working_dir = os.curdir
            cmds = ["-f", DEFAULT_COMPOSE_FILE]
        cmds.extend(args)

        try:
            result = execute(working_dir, environment, self.executable, cmds)
        except ComposeError as err:
            raise ComposeError(
                f"Local Docker compose exited abnormally whilst running "
                f"{self.executable}: [{' '.join(self.cmd)}]. {err}",
                command=[self.executable],
                result=err.result,
            ) from err

        if self._wait_strategy_supplied:
            # Strategies run once, after start-up; never again on tear-down.
            self._wait_strategy_supplied = False
            try:
                self._apply_strategies_to_running_containers()
            except ComposeError as err:
                raise ComposeError(
                    "one or more wait strategies could not be applied to the "
                    f"running containers: {err}"
                ) from err

        return result

    def _determine_version(self) -> None:
        result = self._execute_compose(["version", "--short"])
        components = result.stdout_output.split(b".")
        if len(components) != 3:
            raise ComposeError(
                f"expected 3 version components in {result.stdout_output.decode(errors='replace')}"
            )
        try:
            major = int(components[0])
        except ValueError as err:
            raise ComposeError(f"invalid compose major version: {err}") from err
        if major == 1:
            self.compose_version = ComposeVersion.V1
        elif major == 2:
            self.compose_version = ComposeVersion.V2
        else:
            raise ComposeError(f"unexpected compose version {major}")

    def _validate(self) -> None:
        """Read every compose file as YAML and collect the services it declares."""
        for path in self._abs_compose_file_paths:
            with open(path, "rb") as fh:
                try:
                    document = yaml.safe_load(fh)
                except yaml.YAMLError as err:
                    raise ComposeError(f"invalid compose file {path}: {err}") from err
            if document is None:
                continue
            if not isinstance(document, Mapping):
                raise ComposeError(f"invalid compose file {path}: not a mapping")
            services = document.get("services") or {}
            if not isinstance(services, Mapping):
                raise ComposeError(f"invalid compose file {path}: services is not a mapping")
            self.services.update(services)


def new_local_docker_compose(
    file_paths: Sequence[str],
    identifier: str,
    logger: Optional[logging.Logger] = None,
) -> LocalDockerCompose:
    """Create a LocalDockerCompose for the given compose files and project name.

    The installed docker-compose version and the services in the files are
    detected on a best-effort basis; failures there leave them unset.
    """
    compose = LocalDockerCompose(
        compose_file_paths=list(file_paths),
        logger=logger if logger is not None else _LOGGER,
    )
    compose._abs_compose_file_paths = [os.path.abspath(p) for p in file_paths]

    try:
        compose._determine_version()
    except (ComposeError, OSError):
        pass
    try:
        compose._validate()
    except (ComposeError, OSError):
        pass

    compose.identifier = identifier.lower()
    compose._wait_strategy_supplied = False
    compose.wait_strategies = {}
    return compose