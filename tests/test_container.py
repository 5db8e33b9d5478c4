import io
import tarfile
from dataclasses import dataclass

import pytest

from composekit.container import (
    ContainerFile,
    ContainerRef,
    ContainerRequest,
    ContainerRequestError,
    DuplicateMountTargetError,
    FromDockerfile,
    ProviderType,
)


@dataclass
class _Mount:
    source: str
    target: str


def _bind(source, target):
    return _Mount(source=source, target=target)


@pytest.mark.parametrize(
    "request_, expected",
    [
        (
            ContainerRequest(from_dockerfile=FromDockerfile(context="."), image="redis:latest"),
            "you cannot specify both an Image and Context in a ContainerRequest",
        ),
        (
            ContainerRequest(image="redis:latest", mounts=[_bind("/srv", "/data"), _bind("/data", "/data")]),
            "duplicate mount target detected: /data",
        ),
        (
            ContainerRequest(),
            "you must specify either a build context or an image",
        ),
    ],
)
def test_validation_errors(request_, expected):
    with pytest.raises(ContainerRequestError) as info:
        request_.validate()
    assert str(info.value) == expected


@pytest.mark.parametrize(
    "request_",
    [
        ContainerRequest(image="redis:latest"),
        ContainerRequest(from_dockerfile=FromDockerfile(context=".")),
        ContainerRequest(image="redis:latest", mounts=[_bind("/data", "/srv"), _bind("/data", "/data")]),
        ContainerRequest(from_dockerfile=FromDockerfile(context_archive=io.BytesIO(b""))),
    ],
)
def test_validation_accepts(request_):
    assert request_.validate() is None
    assert request_.image or request_.should_build_image()


def test_duplicate_mount_error_carries_target():
    req = ContainerRequest(image="redis", mounts=[{"target": "/x"}, {"target": "/x"}])
    with pytest.raises(DuplicateMountTargetError) as info:
        req.validate()
    assert info.value.target == "/x"


@pytest.mark.parametrize(
    "request_, expected",
    [
        (ContainerRequest(), "Dockerfile"),
        (ContainerRequest(from_dockerfile=FromDockerfile()), "Dockerfile"),
        (ContainerRequest(from_dockerfile=FromDockerfile(dockerfile="CustomDockerfile")), "CustomDockerfile"),
    ],
)
def test_get_dockerfile(request_, expected):
    assert request_.get_dockerfile() == expected


def test_get_auth_configs_default_none():
    assert ContainerRequest(from_dockerfile=FromDockerfile()).get_auth_configs() is None


def test_get_auth_configs_specified():
    password = "password"
    configs = {"https://registry.example.com/": {"username": "username", "password": password}}
    req = ContainerRequest(from_dockerfile=FromDockerfile(auth_configs=configs))
    assert req.get_auth_configs() == {
        "https://registry.example.com/": {"username": "username", "password": "password"}
    }


def test_build_args_and_log_flag():
    req = ContainerRequest(from_dockerfile=FromDockerfile(build_args={"A": "1", "B": None}, print_build_log=True))
    assert req.get_build_args() == {"A": "1", "B": None}
    assert req.should_print_build_log() is True
    assert ContainerRequest().should_print_build_log() is False


def test_should_build_image():
    assert ContainerRequest(from_dockerfile=FromDockerfile(context=".")).should_build_image() is True
    assert ContainerRequest(from_dockerfile=FromDockerfile(context_archive=io.BytesIO())).should_build_image() is True
    assert ContainerRequest(image="alpine").should_build_image() is False


def test_get_context_returns_archive():
    archive = io.BytesIO(b"data")
    req = ContainerRequest(from_dockerfile=FromDockerfile(context_archive=archive))
    assert req.get_context() is archive


def test_get_context_tars_directory(tmp_path):
    (tmp_path / "Dockerfile").write_text("FROM alpine\n")
    sub = tmp_path / "app"
    sub.mkdir()
    (sub / "say_hi.sh").write_text("echo hi\n")
    stream = ContainerRequest(from_dockerfile=FromDockerfile(context=str(tmp_path))).get_context()
    with tarfile.open(fileobj=stream) as archive:
        names = set(archive.getnames())
        content = archive.extractfile("Dockerfile").read()
    assert {"Dockerfile", "app", "app/say_hi.sh"} <= names
    assert content == b"FROM alpine\n"


def test_get_context_without_context_raises():
    with pytest.raises(ContainerRequestError):
        ContainerRequest(image="alpine").get_context()


def test_get_context_missing_directory_raises(tmp_path):
    req = ContainerRequest(from_dockerfile=FromDockerfile(context=str(tmp_path / "missing")))
    with pytest.raises(ContainerRequestError):
        req.get_context()


def test_provider_type_values():
    assert ProviderType.DOCKER == 0
    assert ProviderType.PODMAN == 1
    assert ProviderType(1) is ProviderType.PODMAN


def test_container_file_and_ref():
    f = ContainerFile("/host/a", "/cont/a", 0o700)
    assert (f.host_file_path, f.container_file_path, f.file_mode) == ("/host/a", "/cont/a", 0o700)
    ref = ContainerRef(id="abc")
    assert ref.id == "abc"
    assert ref.waiting_for is None


def test_request_defaults_are_independent():
    a = ContainerRequest()
    b = ContainerRequest()
    a.env["X"] = "1"
    assert b.env == {}