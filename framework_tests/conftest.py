import copy
import typing as tp

import pytest

from ephemeral_services.instance_management import common
from ephemeral_services.instance_management import instance
from ephemeral_services.instance_management import readiness
from ephemeral_services.instance_management import runtime as runtime_mod
from ephemeral_services.instance_management import service_type


class FakeContainer:
    def __init__(self, spec: runtime_mod.LaunchSpec) -> None:
        self.spec = spec
        self.name = spec.name
        self.id = f"id-{spec.name}"


class FakeRuntime:
    """In-process stand-in for `DockerRuntime`."""

    def __init__(
        self,
        *,
        fail_ping: bool = False,
        fail_launch: bool = False,
        fail_endpoint: bool = False,
        terminate_failures: int = 0,
        endpoint: str = "localhost:15432",
    ) -> None:
        self.fail_ping = fail_ping
        self.fail_launch = fail_launch
        self.fail_endpoint = fail_endpoint
        self.terminate_failures = terminate_failures
        self.endpoint = endpoint
        self.launched: list[FakeContainer] = []
        self.expiries: dict[str, float] = {}
        self.terminated: list[str] = []
        self.closed = False

    @property
    def running(self) -> list[str]:
        return [c.name for c in self.launched if c.name not in self.terminated]

    def ping(self) -> None:
        if self.fail_ping:
            msg = "daemon is down"
            raise common.RuntimeUnavailableError(msg)

    def launch(self, spec: runtime_mod.LaunchSpec) -> FakeContainer:
        if self.fail_launch:
            msg = f"image '{spec.image}' not found"
            raise RuntimeError(msg)
        container = FakeContainer(spec)
        self.launched.append(container)
        return container

    def schedule_expiry(self, container: FakeContainer, seconds: float) -> None:
        self.expiries[container.name] = seconds

    def get_endpoint(self, container: FakeContainer, port: str) -> str:
        if self.fail_endpoint:
            msg = f"Port '{port}' is not published."
            raise common.SetupError(step=common.STEP_ENDPOINT, message=msg)
        return self.endpoint

    def terminate(self, container: FakeContainer) -> None:
        if self.terminate_failures:
            self.terminate_failures -= 1
            msg = "daemon is busy"
            raise RuntimeError(msg)
        self.expiries.pop(container.name, None)
        self.terminated.append(container.name)

    def close(self) -> None:
        self.closed = True


class FakeClient:
    def __init__(self, service: "FakeService", database: str) -> None:
        self.service = service
        self.database = database
        self.closed = False

    @property
    def store(self) -> dict:
        return self.service.stores[self.database]

    def close(self) -> None:
        self.closed = True


class FakeService(service_type.ServiceType):
    """Service type keeping its "databases" in memory.

    Args:
        not_ready_probes: Number of probes that fail with `NotReadyError` before the instance
            becomes ready; -1 means never ready.
        probe_error: Permanent error raised by every probe.
        set_template_error: Error raised when changing the template flag.
    """

    name = "fake"
    container_port = "1234/tcp"
    default_logical_name = "fakedb"
    supports_templates = True

    def __init__(
        self,
        *,
        not_ready_probes: int = 0,
        probe_error: Exception | None = None,
        set_template_error: Exception | None = None,
        fail_create_copy: bool = False,
    ) -> None:
        self.not_ready_probes = not_ready_probes
        self.probe_error = probe_error
        self.set_template_error = set_template_error
        self.fail_create_copy = fail_create_copy
        self.probes = 0
        self.clients: list[FakeClient] = []
        self.stores: dict[str, dict] = {}
        self.templates: set[str] = set()
        self.calls: list[str] = []

    def launch_spec(
        self, *, name: str, options: instance.StartOptions
    ) -> runtime_mod.LaunchSpec:
        return runtime_mod.LaunchSpec(name=name, image="fake:latest", ports=(self.container_port,))

    def connection_info(self, svc_instance: instance.ServiceInstance) -> instance.ConnectionInfo:
        return instance.ConnectionInfo(
            host=svc_instance.host, port=svc_instance.port, database=svc_instance.logical_name
        )

    def connect_to(self, conn_info: instance.ConnectionInfo) -> FakeClient:
        self.stores.setdefault(conn_info.database, {})
        client = FakeClient(service=self, database=conn_info.database)
        self.clients.append(client)
        return client

    def probe(self, client: FakeClient) -> None:
        self.probes += 1
        if client is None or client.closed:
            msg = "connection already closed"
            raise ConnectionError(msg)
        if self.probe_error is not None:
            raise self.probe_error
        if self.not_ready_probes < 0 or self.probes <= self.not_ready_probes:
            msg = "still starting"
            raise readiness.NotReadyError(msg)

    def is_transient(self, exc: Exception) -> bool:
        return not isinstance(exc, PermissionError)

    def set_template(self, svc_instance: instance.ServiceInstance, is_template: bool) -> None:
        self.calls.append(f"set_template:{is_template}")
        if self.set_template_error is not None:
            raise self.set_template_error
        if is_template:
            self.templates.add(svc_instance.logical_name)
        else:
            self.templates.discard(svc_instance.logical_name)

    def create_copy(self, svc_instance: instance.ServiceInstance, copy_name: str) -> None:
        if self.fail_create_copy:
            msg = "source database is being accessed by other users"
            raise RuntimeError(msg)
        self.stores[copy_name] = copy.deepcopy(self.stores[svc_instance.logical_name])

    def drop_copy(self, conn_info: instance.ConnectionInfo) -> None:
        self.stores.pop(conn_info.database, None)


@pytest.fixture
def make_runtime() -> tp.Callable[..., FakeRuntime]:
    return FakeRuntime


@pytest.fixture
def make_service() -> tp.Callable[..., FakeService]:
    return FakeService


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def fake_service() -> FakeService:
    return FakeService()


@pytest.fixture
def finalizers() -> tp.Generator[list, None, None]:
    """Collect cleanup callbacks registered by the code under test and run them at the end."""
    registered: list = []
    yield registered
    for finalizer in reversed(registered):
        finalizer()
