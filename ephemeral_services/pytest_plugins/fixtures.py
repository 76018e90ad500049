"""Pytest fixtures for starting service instances.

The plugin is registered through the `pytest11` entry point, so the fixtures are available
in every test suite where the package is installed.
"""

import logging
import typing as tp

import pytest
from _pytest.fixtures import FixtureRequest
from _pytest.tmpdir import TempPathFactory

from ephemeral_services.instance_management import cache
from ephemeral_services.instance_management import common
from ephemeral_services.instance_management import instance
from ephemeral_services.instance_management import provisioner
from ephemeral_services.instance_management import runtime as runtime_mod
from ephemeral_services.instance_management import service_type
from ephemeral_services.utils import configuration
from ephemeral_services.utils import framework_log
from ephemeral_services.utils import temptools

LOGGER = logging.getLogger(__name__)


class StartInstance(tp.Protocol):
    def __call__(
        self,
        service: service_type.ServiceType,
        options: instance.StartOptions | None = None,
        **kwargs: tp.Any,
    ) -> instance.ServiceInstance: ...


@pytest.fixture(scope="session")
def init_pytest_temp_dirs(tmp_path_factory: TempPathFactory) -> None:
    """Init `PytestTempDirs`."""
    temptools.PytestTempDirs.init(tmp_path_factory=tmp_path_factory)


@pytest.fixture(scope="session")
def docker_runtime(
    init_pytest_temp_dirs: None,
) -> tp.Generator[runtime_mod.DockerRuntime, None, None]:
    """Return Docker runtime shared by the whole session.

    Tests using the fixture are skipped when Docker is not available. Containers left behind
    by previous (killed) test runs are removed, unless `KEEP_INSTANCES_RUNNING` is set.
    Instances that failed to start during the session are listed at the end.
    """
    try:
        runtime = runtime_mod.DockerRuntime()
        runtime.ping()
    except common.RuntimeUnavailableError as exc:
        pytest.skip(f"Docker is not available: {exc}")

    if not configuration.KEEP_INSTANCES_RUNNING:
        reaped = runtime.reap_expired()
        if reaped:
            framework_log.framework_logger().info(
                f"Reaped {len(reaped)} expired container(s): {', '.join(reaped)}"
            )

    yield runtime

    setup_failures = framework_log.read_setup_failures()
    if setup_failures:
        failed_tests = "\n".join(
            f"  {f.test_id}: {f.service_name} failed in step '{f.step}': {f.message}"
            for f in setup_failures
        )
        LOGGER.warning(f"Service instances failed to start in these tests:\n{failed_tests}")
    runtime.close()


@pytest.fixture(scope="session")
def instance_cache(
    docker_runtime: runtime_mod.DockerRuntime,
) -> tp.Generator[cache.InstanceCache, None, None]:
    """Return cache of instances shared by the whole session; instances are closed at the end."""
    instance_cache_obj = cache.InstanceCache()
    yield instance_cache_obj
    LOGGER.info(f"Closing {len(instance_cache_obj)} cached instance(s).")
    instance_cache_obj.close()


@pytest.fixture
def start_instance(
    request: FixtureRequest, docker_runtime: runtime_mod.DockerRuntime
) -> StartInstance:
    """Return a function that starts a new instance that is closed at the end of the test.

    Failures to start an instance are recorded in `framework.log`, so they can be told apart
    from failures of the tests themselves.
    """

    def _start(
        service: service_type.ServiceType,
        options: instance.StartOptions | None = None,
        **kwargs: tp.Any,
    ) -> instance.ServiceInstance:
        options = instance.make_start_options(options, **kwargs)
        try:
            return provisioner.start(
                service,
                options,
                runtime=docker_runtime,
                register_cleanup=request.addfinalizer,
            )
        except common.SetupError as exc:
            framework_log.record_setup_failure(
                test_id=request.node.nodeid, service_name=service.name, step=exc.step, err=exc
            )
            raise

    return _start
