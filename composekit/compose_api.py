"""Control a compose stack through the ``docker compose`` command line."""

from __future__ import annotations

import enum
import os
import re
import subprocess
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

import yaml

from composekit.compose_local import ComposeError, ExecResult, execute
from composekit.container import ContainerRef

PROJECT_LABEL = "com.docker.compose.project"
SERVICE_LABEL = "com.docker.compose.service"
VERSION_LABEL = "com.docker.compose.version"
WORKING_DIR_LABEL = "com.docker.compose.project.working_dir"
CONFIG_FILES_LABEL = "com.docker.compose.project.config_files"
ONEOFF_LABEL = "com.docker.compose.oneoff"
COMPOSE_VERSION = "2.12.2"

Runner = Callable[[str, Mapping[str, str], Sequence[str]], ExecResult]
ContainerLister = Callable[[str, str], list]
_ProjectOption = Callable[[dict], None]


class NoStackConfiguredError(ValueError):
    """Raised when a compose stack is created without any stack files."""

    def __init__(self) -> None:
        super().__init__("no stack files configured")


class ServiceNotFoundError(LookupError):
    """Raised when no container exists for a service of the stack."""

    def __init__(self, service: str) -> None:
        super().__init__(f"no container found for service name {service}")
        self.service = service

    def __str__(self) -> str:
        return self.args[0]


class RemoveImages(enum.IntEnum):
    """Which images used by the stack to remove when taking it down."""

    ALL = 0
    LOCAL = 1

    @property
    def flag_value(self) -> str:
        return "all" if self is RemoveImages.ALL else "local"


@dataclass
class Project:
    """A compiled compose project: its services with their labels."""

    name: str
    working_dir: str
    compose_files: list[str]
    services: list[dict[str, Any]] = field(default_factory=list)
    environment: dict[str, str] = field(default_factory=dict)

    def service_names(self) -> list[str]:
        return [service["name"] for service in self.services]


_INTERPOLATION = re.compile(
    r"\$(?:(?P<escaped>\$)|\{(?P<braced>[^}]*)\}|(?P<named>[_a-zA-Z][_a-zA-Z0-9]*))"
)
_BRACED = re.compile(r"^(?P<name>[_a-zA-Z][_a-zA-Z0-9]*)(?:(?P<op>:-|-|:\?|\?|:\+|\+)(?P<arg>.*))?$", re.S)


def _substitute(text: str, environment: Mapping[str, str]) -> str:
    def replace(match: re.Match) -> str:
        if match.group("escaped") is not None:
            return "$"
        named = match.group("named")
        if named is not None:
            return environment.get(named, "")
        parsed = _BRACED.match(match.group("braced"))
        if parsed is None:
            raise ComposeError(f"invalid interpolation format for {match.group(0)}")
        name, op, arg = parsed.group("name"), parsed.group("op"), parsed.group("arg")
        value = environment.get(name)
        if op is None:
            return value or ""
        arg = _substitute(arg, environment)
        is_set = value is not None
        is_nonempty = bool(value)
        if op == ":-":
            return value if is_nonempty else arg
        if op == "-":
            return value if is_set else arg
        if op in (":?", "?"):
            if (op == ":?" and not is_nonempty) or (op == "?" and not is_set):
                raise ComposeError(f"required variable {name} is missing a value: {arg}")
            return value or ""
        if op == ":+":
            return arg if is_nonempty else ""
        return arg if is_set else ""

    return _INTERPOLATION.sub(replace, text)


def _interpolate(node: Any, environment: Mapping[str, str]) -> Any:
    if isinstance(node, str):
        return _substitute(node, environment)
    if isinstance(node, Mapping):
        return {key: _interpolate(value, environment) for key, value in node.items()}
    if isinstance(node, list):
        return [_interpolate(item, environment) for item in node]
    return node


def _deep_merge(base: dict, override: Mapping) -> dict:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _deep_merge(dict(merged[key]), value)
        else:
            merged[key] = value
    return merged


def _with_env(env: Mapping[str, str]) -> _ProjectOption:
    values = dict(env)

    def apply(environment: dict) -> None:
        for key, value in values.items():
            if key in environment:
                raise ComposeError(f"environment with key {key} already set")
            environment[key] = value

    return apply


def _with_os_env(environment: dict) -> None:
    for key, value in os.environ.items():
        environment.setdefault(key, value)


def _run_docker_compose(
    working_dir: str, environment: Mapping[str, str], args: Sequence[str]
) -> ExecResult:
    return execute(working_dir, environment, "docker", ["compose", *args])


def _list_service_containers(project_name: str, service_name: str) -> list:
    command = [
        "docker", "ps", "--all", "--no-trunc", "--format", "{{.ID}}",
        "--filter", f"label={PROJECT_LABEL}={project_name}",
        "--filter", f"label={SERVICE_LABEL}={service_name}",
    ]
    completed = subprocess.run(command, capture_output=True, text=True, check=True)
    return [line.strip() for line in completed.stdout.splitlines() if line.strip()]


class DockerCompose:
    """A compose stack, compiled from its stack files and run by ``docker compose``."""

    def __init__(
        self,
        name: str,
        configs: Iterable[str],
        runner: Runner = _run_docker_compose,
        container_lister: ContainerLister = _list_service_containers,
        provider: Any = None,
    ) -> None:
        self.name = name
        self.configs = list(configs)
        self.runner = runner
        self.container_lister = container_lister
        self.provider = provider
        self._lock = threading.RLock()
        self._cache_lock = threading.Lock()
        self._wait_strategies: dict[str, Any] = {}
        self._containers: dict[str, ContainerRef] = {}
        self._project_options: list[_ProjectOption] = []
        self._project: Optional[Project] = None

    def service_container(self, service_name: str) -> ContainerRef:
        """Return the container running a service of the stack."""
        with self._lock:
            return self._lookup_container(service_name)

    def services(self) -> list[str]:
        """Return the names of the services of the compiled project."""
        with self._lock:
            return self._project.service_names() if self._project is not None else []

    def down(
        self, remove_orphans: bool = False, remove_images: Optional[RemoveImages] = None
    ) -> ExecResult:
        """Stop and remove the stack's containers and networks."""
        with self._lock:
            args = ["-p", self.name, "down"]
            if remove_orphans:
                args.append("--remove-orphans")
            if remove_images is not None:
                args += ["--rmi", RemoveImages(remove_images).flag_value]
            if self._project is not None:
                working_dir, environment = self._project.working_dir, self._project.environment
            else:
                working_dir = os.path.dirname(os.path.abspath(self.configs[0])) or "."
                environment = {}
            return self.runner(working_dir, environment, args)

    def up(
        self,
        services: Optional[Sequence[str]] = None,
        remove_orphans: bool = False,
        wait: bool = False,
    ) -> None:
        """Start the stack, or only the given services, then apply wait strategies."""
        with self._lock:
            project = self.compile_project()
            self._project = project

            selected = list(services) if services is not None else project.service_names()
            if len(selected) != len(project.services):
                selected.sort()
                wanted = set(selected)
                project.services = [s for s in project.services if s["name"] in wanted]

            args = ["-p", project.name, "--project-directory", project.working_dir]
            for path in project.compose_files:
                args += ["-f", path]
            args += ["up", "-d"]
            if remove_orphans:
                args.append("--remove-orphans")
            if wait:
                args.append("--wait")
            args += selected
            self.runner(project.working_dir, project.environment, args)

            if not self._wait_strategies:
                return

            def await_service(service: str, strategy: Any) -> None:
                target = self._lookup_container(service)
                strategy.wait_until_ready(target)

            with ThreadPoolExecutor(max_workers=len(self._wait_strategies)) as pool:
                futures = [
                    pool.submit(await_service, service, strategy)
                    for service, strategy in self._wait_strategies.items()
                ]
                for future in as_completed(futures):
                    error = future.exception()
                    if error is not None:
                        raise error

    def wait_for_service(self, service: str, strategy: Any) -> "DockerCompose":
        """Set the one wait strategy applied to a service after start-up."""
        with self._lock:
            self._wait_strategies[service] = strategy
            return self

    def with_env(self, env: Mapping[str, str]) -> "DockerCompose":
        """Add variables to the project environment; a key set twice is an error."""
        with self._lock:
            self._project_options.append(_with_env(env))
            return self

    def with_os_env(self) -> "DockerCompose":
        """Add the process environment to the project environment."""
        with self._lock:
            self._project_options.append(_with_os_env)
            return self

    def compile_project(self) -> Project:
        """Load, interpolate and merge the stack files into a project."""
        environment: dict[str, str] = {}
        for option in self._project_options:
            option(environment)

        compose_files = [os.path.abspath(path) for path in self.configs]
        working_dir = os.path.dirname(compose_files[0]) or "."

        merged: dict[str, Any] = {}
        for path in compose_files:
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
            for service_name, definition in _interpolate(dict(services), environment).items():
                merged[service_name] = _deep_merge(
                    merged.get(service_name, {}), definition or {}
                )

        project = Project(
            name=self.name,
            working_dir=working_dir,
            compose_files=compose_files,
            environment=environment,
        )
        for service_name in sorted(merged):
            service = dict(merged[service_name])
            service["name"] = service_name
            service["custom_labels"] = {
                PROJECT_LABEL: project.name,
                SERVICE_LABEL: service_name,
                VERSION_LABEL: COMPOSE_VERSION,
                WORKING_DIR_LABEL: project.working_dir,
                CONFIG_FILES_LABEL: ",".join(project.compose_files),
                ONEOFF_LABEL: "False",
            }
            project.services.append(service)
        return project

    def _lookup_container(self, service_name: str) -> ContainerRef:
        with self._cache_lock:
            cached = self._containers.get(service_name)
        if cached is not None:
            return cached

        container_ids = self.container_lister(self.name, service_name)
        if not container_ids:
            raise ServiceNotFoundError(service_name)

        container = ContainerRef(id=container_ids[0], provider=self.provider)
        with self._cache_lock:
            return self._containers.setdefault(service_name, container)


def new_docker_compose(*args: str, identifier: Optional[str] = None) -> DockerCompose:
    """Create a compose stack from stack files; the identifier defaults to a UUID."""
    if not args:
        raise NoStackConfiguredError()
    name = str(identifier) if identifier is not None else str(uuid.uuid4())
    return DockerCompose(name=name, configs=args)