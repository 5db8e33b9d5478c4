# composekit

Helpers for integration tests that need containers. You can describe a
container request and check it for consistency. You can also bring a Docker
Compose stack up and down around your tests, either through a local
`docker-compose` executable or through `docker compose`.

## Install

```
pip install composekit
```

`composekit.compose_local` runs `docker-compose` (`docker-compose.exe` on
Windows). `composekit.compose_api` runs `docker compose`. Both use
`docker ps` to find the containers of a service, so both need the `docker`
executable on `PATH`.

## Describing a container

```python
from composekit.container import ContainerRequest, FromDockerfile, ContainerRequestError

request = ContainerRequest(image="redis:latest")
request.validate()

build = ContainerRequest(from_dockerfile=FromDockerfile(context="."))
build.should_build_image()   # True
build.get_dockerfile()       # "Dockerfile" unless from_dockerfile.dockerfile is set
build.get_context()          # the context directory as an in-memory tar stream
```

`validate()` raises `ContainerRequestError` in these cases:

- both an image and a build context are set;
- none of an image, a context and a context archive is set.

It raises `DuplicateMountTargetError`, a subclass of `ContainerRequestError`,
when two mounts share a target. A mount is either a mapping with a `"target"`
key or an object with a `target` attribute.

`get_build_args()`, `get_auth_configs()` and `should_print_build_log()`
return the matching fields of `from_dockerfile`.

`ProviderType` lists the supported runtimes, `DOCKER` and `PODMAN`.
`ContainerRef` is a handle on an existing container, identified by its id.

## Running a stack with the local executable

```python
from composekit.compose_local import new_local_docker_compose, ComposeError

compose = new_local_docker_compose(["docker-compose.yml"], "my_project")
result = compose.with_command(["up", "-d"]).with_env({"FOO": "foo"}).invoke()
print(result.stdout_output, result.returncode)
compose.down()   # docker-compose down --remove-orphans --volumes
```

`new_local_docker_compose()` does the following:

- lower-cases the identifier;
- makes the file paths absolute;
- asks the executable for its version;
- reads the services declared in the files into `compose.services`.

The version check and reading the files are best effort. If either fails, the
version or the services are simply left unset.

### Results and errors

`invoke()` and `down()` run the executable in the directory of the first
compose file. They set `COMPOSE_PROJECT_NAME` and `COMPOSE_FILE` in its
environment. Its output is echoed and captured, and the call returns an
`ExecResult` holding `command`, `stdout_output`, `stderr_output` and
`returncode`.

If the executable is missing, fails to start or exits non-zero, the call
raises `ComposeError` instead.

### Container names

`compose.format("nginx", "1")` joins name parts the way the detected version
does: `nginx_1` for v1 and `nginx-1` for v2. It raises `ComposeError` if the
version is unknown.

### Waiting for services

Register readiness checks with `wait_for_service(service, strategy)` or
`with_exposed_service(service, port, strategy)`. A strategy is any object
with a `wait_until_ready(container)` method; it receives a `ContainerRef`.

The checks run once, after the next command that succeeds. If no container
or more than one container matches a service, a `ComposeError` is raised.
A failing strategy also raises `ComposeError`.

The standalone helpers `execute(dir_context, environment, binary, args)` and
`which(binary)` are available as well. `CapturingPassThroughWriter` echoes
bytes to a stream and keeps a copy.

## Stack API

```python
from composekit.compose_api import new_docker_compose, RemoveImages

stack = new_docker_compose("docker-compose.yml", identifier="my_stack")
stack.with_env({"bar": "BAR"}).up(wait=True)
print(stack.services())
container = stack.service_container("nginx")
stack.down(remove_orphans=True, remove_images=RemoveImages.LOCAL)
```

### Creating a stack

`new_docker_compose()` with no files raises `NoStackConfiguredError`. Without
an identifier, the stack is named by a random UUID.

### Compiling the project

`compile_project()` builds a `Project` from the stack files:

1. It reads each file.
2. It substitutes `$VAR` / `${VAR}` forms, including `:-`, `-`, `:?`, `?`, `:+` and `+`, from the environment given with `with_env()` and `with_os_env()`.
3. It merges the services of later files into earlier ones.
4. It labels each service with the project name, service name, working directory and config files.

A key given twice through `with_env()` raises `ComposeError` when the project
is compiled.

### Starting, inspecting and stopping

`up(services=None, remove_orphans=False, wait=False)` compiles the project and
starts all services, or only the named ones. It then runs the registered wait
strategies in parallel; the first failure is raised.

`services()` lists the services of the last compiled project. It returns an
empty list before `up()`.

`service_container(name)` returns a cached `ContainerRef`. It raises
`ServiceNotFoundError` when no container carries the stack's project and
service labels.

## What it does not do

The package has no container runtime client of its own. It does not:

- create, start or build containers from a `ContainerRequest`;
- create providers from a `ProviderType`;
- ship any wait strategies: you supply objects with `wait_until_ready`.

All work against Docker goes through the `docker` and `docker-compose`
command lines.

## Running the tests

```
pip install -e ".[test]"
pytest
```