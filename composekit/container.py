"""Container requests: what is needed to build or run a single container."""

from __future__ import annotations

import enum
import io
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Iterable, Mapping, Optional

DEFAULT_DOCKERFILE = "Dockerfile"


class ContainerRequestError(ValueError):
    """Raised when a container request is configured inconsistently."""


class DuplicateMountTargetError(ContainerRequestError):
    """Raised when two mounts of one request share the same target path."""

    def __init__(self, target: str) -> None:
        super().__init__(f"duplicate mount target detected: {target}")
        self.target = target


class ProviderType(enum.IntEnum):
    """The container runtimes a provider can talk to."""

    DOCKER = 0
    PODMAN = 1


@dataclass
class ContainerFile:
    """A host file copied into the container when it starts."""

    host_file_path: str
    container_file_path: str
    file_mode: int = 0o644


@dataclass
class FromDockerfile:
    """Parameters for building an image from a Dockerfile instead of pulling one."""

    context: str = ""
    context_archive: Optional[BinaryIO] = None
    dockerfile: str = ""
    build_args: Optional[dict[str, Optional[str]]] = None
    print_build_log: bool = False
    auth_configs: Optional[dict[str, Any]] = None


@dataclass
class ContainerRef:
    """A handle on an existing container, known by its id."""

    id: str
    waiting_for: Any = None
    provider: Any = None
    logger: Any = None


def _tar_directory(root: Path) -> io.BytesIO:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        for child in sorted(root.iterdir()):
            archive.add(str(child), arcname=child.name, recursive=True)
    buffer.seek(0)
    return buffer


@dataclass
class ContainerRequest:
    """The parameters used to get a running container."""

    from_dockerfile: FromDockerfile = field(default_factory=FromDockerfile)
    image: str = ""
    entrypoint: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    exposed_ports: list[str] = field(default_factory=list)
    cmd: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    mounts: list[Any] = field(default_factory=list)
    tmpfs: dict[str, str] = field(default_factory=dict)
    registry_cred: str = ""
    waiting_for: Any = None
    name: str = ""
    hostname: str = ""
    extra_hosts: list[str] = field(default_factory=list)
    privileged: bool = False
    networks: list[str] = field(default_factory=list)
    network_aliases: dict[str, list[str]] = field(default_factory=dict)
    network_mode: str = ""
    resources: dict[str, Any] = field(default_factory=dict)
    files: list[ContainerFile] = field(default_factory=list)
    user: str = ""
    skip_reaper: bool = False
    reaper_image: str = ""
    auto_remove: bool = False
    always_pull_image: bool = False
    image_platform: str = ""
    binds: list[str] = field(default_factory=list)
    shm_size: int = 0
    cap_add: list[str] = field(default_factory=list)
    cap_drop: list[str] = field(default_factory=list)

    def validate(self) -> None:
        """Raise ContainerRequestError if the request is inconsistent."""
        self._validate_context_and_image()
        self._validate_context_or_image_is_specified()
        self._validate_mounts()

    def get_context(self) -> BinaryIO:
        """Return the build context as a tar stream."""
        if self.from_dockerfile.context_archive is not None:
            return self.from_dockerfile.context_archive
        if not self.from_dockerfile.context:
            raise ContainerRequestError("no build context configured")
        root = Path(self.from_dockerfile.context)
        if not root.is_dir():
            raise ContainerRequestError(
                f"build context {self.from_dockerfile.context} is not a directory"
            )
        return _tar_directory(root)

    def get_build_args(self) -> Optional[dict[str, Optional[str]]]:
        """Return the build arguments passed to the image build."""
        return self.from_dockerfile.build_args

    def get_dockerfile(self) -> str:
        """Return the Dockerfile path relative to the context, defaulting to 'Dockerfile'."""
        return self.from_dockerfile.dockerfile or DEFAULT_DOCKERFILE

    def get_auth_configs(self) -> Optional[dict[str, Any]]:
        """Return the registry auth configs used when building."""
        return self.from_dockerfile.auth_configs

    def should_build_image(self) -> bool:
        return bool(self.from_dockerfile.context) or self.from_dockerfile.context_archive is not None

    def should_print_build_log(self) -> bool:
        return self.from_dockerfile.print_build_log

    def _validate_context_and_image(self) -> None:
        if self.from_dockerfile.context and self.image:
            raise ContainerRequestError(
                "you cannot specify both an Image and Context in a ContainerRequest"
            )

    def _validate_context_or_image_is_specified(self) -> None:
        fd = self.from_dockerfile
        if not fd.context and fd.context_archive is None and not self.image:
            raise ContainerRequestError("you must specify either a build context or an image")

    def _validate_mounts(self) -> None:
        seen: set[str] = set()
        for target in _mount_targets(self.mounts):
            if target in seen:
                raise DuplicateMountTargetError(target)
            seen.add(target)


def _mount_targets(mounts: Iterable[Any]) -> Iterable[str]:
    for mount in mounts:
        if isinstance(mount, Mapping):
            yield str(mount["target"])
        else:
            yield str(mount.target)