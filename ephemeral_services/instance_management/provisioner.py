"""Starting of service instances.

`start` launches a new isolated container, waits until the service inside it is ready,
runs the caller's post-start hooks and returns an open `ServiceInstance`. When any step
fails, the container is destroyed and `SetupError` naming the failed step is raised.
"""

import dataclasses
import logging
import time
import typing as tp

from ephemeral_services.instance_management import common
from ephemeral_services.instance_management import instance
from ephemeral_services.instance_management import readiness
from ephemeral_services.instance_management import runtime as runtime_mod
from ephemeral_services.instance_management import service_type
from ephemeral_services.instance_management import templates
from ephemeral_services.utils import helpers

LOGGER = logging.getLogger(__name__)

# Callback that takes a finalizer, e.g. pytest's `request.addfinalizer`
RegisterCleanup = tp.Callable[[tp.Callable[[], tp.Any]], tp.Any]


def _launch(
    *,
    service: service_type.ServiceType,
    runtime: runtime_mod.DockerRuntime,
    options: instance.StartOptions,
    logical_name: str,
) -> tp.Any:
    spec = service.launch_spec(name=helpers.unique_name(logical_name), options=options)
    spec = dataclasses.replace(
        spec,
        labels={
            **spec.labels,
            runtime_mod.LOGICAL_NAME_LABEL: logical_name,
            runtime_mod.EXPIRES_AT_LABEL: str(time.time() + options.timeout),
        },
    )
    try:
        return runtime.launch(spec)
    except Exception as exc:
        msg = f"Unable to start {service.name} container '{spec.name}': {exc}"
        raise common.LaunchError(step=common.STEP_LAUNCH, message=msg) from exc


def _wait_ready(
    svc_instance: instance.ServiceInstance, service: service_type.ServiceType, timeout: float
) -> None:
    """Connect the client of the instance and wait until the instance answers the probe."""

    def _probe(endpoint: str) -> None:
        if svc_instance.client is None:
            svc_instance.client = service.connect(svc_instance)
        try:
            service.probe(svc_instance.client)
        except Exception:
            # The connection may be broken, e.g. the service restarts after initialization
            client, svc_instance.client = svc_instance.client, None
            try:
                service.close_client(client)
            except Exception as exc:
                LOGGER.debug(f"Unable to close client of '{endpoint}': {exc}")
            raise

    try:
        readiness.await_ready(
            svc_instance.endpoint, _probe, timeout=timeout, is_transient=service.is_transient
        )
    except common.ReadinessTimeoutError:
        raise
    except Exception as exc:
        msg = f"Could not connect to {service.name} at '{svc_instance.endpoint}': {exc}"
        raise common.SetupError(step=common.STEP_READINESS, message=msg) from exc


def _discard(svc_instance: instance.ServiceInstance) -> None:
    """Destroy a partially started instance."""
    try:
        svc_instance.close()
    except common.TeardownError as exc:
        # The expiry safeguard will destroy the container later
        LOGGER.warning(f"Unable to destroy partially started instance: {exc}")


def start(
    service: service_type.ServiceType,
    options: instance.StartOptions | None = None,
    *,
    runtime: runtime_mod.DockerRuntime | None = None,
    register_cleanup: RegisterCleanup | None = None,
) -> instance.ServiceInstance:
    """Start a new instance of `service`.

    Args:
        service: A kind of service to start.
        options: Start options, defaults are used when not given.
        runtime: A container runtime. When not given, a new Docker runtime is created and
            it is closed together with the instance.
        register_cleanup: A callback that gets the `close` method of the new instance right
            after the instance was started, e.g. pytest's `request.addfinalizer`.

    Returns:
        ServiceInstance: An open instance that is ready to be used.

    Raises:
        SetupError: Any step of the startup failed; `step` attribute names the step.
    """
    options = options or instance.StartOptions()
    if options.is_template and not service.supports_templates:
        msg = f"Service type `{service.name}` doesn't support templates."
        raise common.CloneContractError(msg)

    logical_name = options.logical_name or service.default_logical_name
    deadline = time.monotonic() + options.timeout

    owns_runtime = runtime is None
    runtime = runtime or runtime_mod.DockerRuntime()
    try:
        runtime.ping()
        container = _launch(
            service=service, runtime=runtime, options=options, logical_name=logical_name
        )
    except BaseException:
        if owns_runtime:
            runtime.close()
        raise

    svc_instance = instance.ServiceInstance(
        service=service,
        runtime=runtime,
        runtime_ref=container,
        endpoint="",
        logical_name=logical_name,
        owns_runtime=owns_runtime,
    )

    try:
        try:
            runtime.schedule_expiry(container, options.timeout)
        except Exception as exc:
            msg = f"Unable to schedule expiry of '{logical_name}': {exc}"
            raise common.LaunchError(step=common.STEP_EXPIRY, message=msg) from exc

        svc_instance.endpoint = runtime.get_endpoint(container, service.container_port)
        _wait_ready(
            svc_instance=svc_instance,
            service=service,
            timeout=helpers.remaining_time(deadline),
        )

        for hook in options.post_start_hooks:
            try:
                hook(svc_instance)
            except Exception as exc:
                msg = f"Could not run post-start operation {hook!r}: {exc}"
                raise common.PostStartError(msg) from exc

        if options.is_template:
            templates.promote(svc_instance)
    except BaseException:
        _discard(svc_instance)
        raise

    LOGGER.info(f"Started {svc_instance!r}")
    if register_cleanup is not None:
        register_cleanup(svc_instance.close)
    return svc_instance
