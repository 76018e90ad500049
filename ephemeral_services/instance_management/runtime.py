"""Docker runtime used for launching and destroying service instances.

The runtime is the only place that talks to the Docker daemon. Instances are plain Docker
containers, started with auto-removal and labeled with the time after which they are
considered leaked and can be removed by `DockerRuntime.reap_expired`.
"""

import dataclasses
import logging
import threading
import time
import typing as tp

import docker
from docker import errors as docker_errors
from docker import types as docker_types
from docker.models.containers import Container

from ephemeral_services.instance_management import common
from ephemeral_services.utils import configuration

LOGGER = logging.getLogger(__name__)

EXPIRES_AT_LABEL = f"{configuration.CONTAINER_LABEL}.expires-at"
LOGICAL_NAME_LABEL = f"{configuration.CONTAINER_LABEL}.logical-name"


@dataclasses.dataclass(frozen=True)
class LaunchSpec:
    """Everything needed for launching one container."""

    name: str
    image: str
    ports: tuple[str, ...]
    env: dict[str, str] = dataclasses.field(default_factory=dict)
    tmpfs: dict[str, str] = dataclasses.field(default_factory=dict)
    mem_limit: str | None = None
    ulimits: tuple[docker_types.Ulimit, ...] = ()
    labels: dict[str, str] = dataclasses.field(default_factory=dict)


def _is_removal_in_progress(exc: docker_errors.APIError) -> bool:
    # Auto-removal of a killed container may already be in progress
    return exc.status_code == 409 and "in progress" in str(exc)


class DockerRuntime:
    """Launch, expire and terminate containers."""

    def __init__(
        self,
        *,
        api_timeout: int = configuration.DOCKER_API_TIMEOUT,
        hostname: str = configuration.DOCKER_HOSTNAME,
    ) -> None:
        self.hostname = hostname
        self._expiry_timers: dict[str, threading.Timer] = {}
        self._timers_lock = threading.Lock()
        try:
            self.client = docker.from_env(timeout=api_timeout)
        except docker_errors.DockerException as exc:
            msg = f"Failed to connect to Docker daemon: {exc}"
            raise common.RuntimeUnavailableError(msg) from exc

    def ping(self) -> None:
        """Check that the Docker daemon is accessible and working."""
        try:
            self.client.ping()
        except docker_errors.DockerException as exc:
            msg = f"Docker daemon is not responding: {exc}"
            raise common.RuntimeUnavailableError(msg) from exc

    def launch(self, spec: LaunchSpec) -> Container:
        """Start a new container; the image is pulled when it is not available locally."""
        labels = {
            configuration.CONTAINER_LABEL: "1",
            **spec.labels,
        }
        LOGGER.info(f"Launching container '{spec.name}' from image '{spec.image}'.")
        launch_start = time.monotonic()
        container = self.client.containers.run(
            spec.image,
            name=spec.name,
            detach=True,
            auto_remove=True,
            restart_policy={"Name": "no"},
            environment=spec.env,
            ports={p: None for p in spec.ports},
            tmpfs=spec.tmpfs or None,
            mem_limit=spec.mem_limit,
            ulimits=list(spec.ulimits) or None,
            labels=labels,
        )
        LOGGER.debug(
            f"Container '{spec.name}' (ID: {container.id[:12]}) launched in "
            f"{time.monotonic() - launch_start:.2f}s"
        )
        return container

    def get_endpoint(self, container: Container, port: str, retries: int = 10) -> str:
        """Return `host:port` where the container `port` is published.

        Docker may assign the host port only shortly after the container was started.
        """
        for __ in range(retries):
            try:
                container.reload()
            except docker_errors.DockerException as exc:
                msg = f"Unable to inspect container '{container.name}': {exc}"
                raise common.SetupError(step=common.STEP_ENDPOINT, message=msg) from exc
            bindings = (container.attrs.get("NetworkSettings") or {}).get("Ports") or {}
            host_ports = [
                b["HostPort"] for b in bindings.get(port) or () if b.get("HostPort")
            ]
            if host_ports:
                return f"{self.hostname}:{host_ports[0]}"
            time.sleep(0.2)

        msg = f"Port '{port}' of container '{container.name}' is not published."
        raise common.SetupError(step=common.STEP_ENDPOINT, message=msg)

    def schedule_expiry(self, container: Container, seconds: float) -> None:
        """Force-terminate the container after `seconds` unless it was terminated before.

        This bounds leaked containers of tests that never got to close their instances.
        Containers outliving the test process are removed by `reap_expired`.
        """
        timer = threading.Timer(seconds, self._expire, args=(container,))
        timer.daemon = True
        timer.name = f"expire-{container.name}"
        with self._timers_lock:
            old_timer = self._expiry_timers.pop(container.id, None)
            self._expiry_timers[container.id] = timer
        if old_timer is not None:
            old_timer.cancel()
        timer.start()
        LOGGER.debug(f"Container '{container.name}' expires in {seconds}s.")

    def cancel_expiry(self, container: Container) -> None:
        with self._timers_lock:
            timer = self._expiry_timers.pop(container.id, None)
        if timer is not None:
            timer.cancel()

    def _expire(self, container: Container) -> None:
        with self._timers_lock:
            self._expiry_timers.pop(container.id, None)
        LOGGER.warning(f"Container '{container.name}' expired, force-terminating it.")
        try:
            container.remove(force=True, v=True)
        except docker_errors.NotFound:
            pass
        except docker_errors.DockerException as exc:
            LOGGER.warning(f"Failed to remove expired container '{container.name}': {exc}")

    def terminate(self, container: Container) -> None:
        """Stop and remove the container together with its anonymous volumes.

        A container that is already gone is considered terminated.
        """
        self.cancel_expiry(container)
        try:
            container.remove(force=True, v=True)
        except docker_errors.NotFound:
            LOGGER.debug(f"Container '{container.name}' already removed")
            return
        except docker_errors.APIError as exc:
            if not _is_removal_in_progress(exc):
                raise
            LOGGER.debug(f"Removal of container '{container.name}' already in progress")
            return
        LOGGER.info(f"Removed container '{container.name}'")

    def reap_expired(self, now: float | None = None) -> list[str]:
        """Remove labeled containers whose expiry time has passed.

        Return names of the removed containers. Containers with a malformed expiry label are
        left alone.
        """
        now = time.time() if now is None else now
        reaped = []
        containers: tp.Iterable[Container] = self.client.containers.list(
            all=True, filters={"label": configuration.CONTAINER_LABEL}
        )
        for container in containers:
            expires_at = container.labels.get(EXPIRES_AT_LABEL)
            if not expires_at:
                continue
            try:
                expired = float(expires_at) <= now
            except ValueError:
                LOGGER.warning(
                    f"Container '{container.name}' has invalid expiry label '{expires_at}'"
                )
                continue
            if not expired:
                continue
            try:
                container.remove(force=True, v=True)
            except docker_errors.NotFound:
                continue
            except docker_errors.APIError as exc:
                if not _is_removal_in_progress(exc):
                    raise
                LOGGER.debug(f"Removal of container '{container.name}' already in progress")
                continue
            reaped.append(container.name)
            LOGGER.info(f"Reaped expired container '{container.name}'")
        return reaped

    def close(self) -> None:
        """Close the Docker client connection."""
        self.client.close()
