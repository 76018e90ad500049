"""Handles of running service instances."""

import dataclasses
import logging
import threading
import typing as tp
import urllib.parse

from ephemeral_services.instance_management import common
from ephemeral_services.instance_management import errors
from ephemeral_services.utils import configuration

if tp.TYPE_CHECKING:
    from ephemeral_services.instance_management import runtime as runtime_mod
    from ephemeral_services.instance_management import service_type

LOGGER = logging.getLogger(__name__)

PostStartHook = tp.Callable[["ServiceInstance"], tp.Any]


@dataclasses.dataclass(frozen=True)
class StartOptions:
    """Options for starting an instance.

    Empty `logical_name` means the default name of the service type.
    """

    timeout: float = configuration.DEFAULT_START_TIMEOUT
    logical_name: str = ""
    in_memory: bool = False
    is_template: bool = False
    post_start_hooks: tuple[PostStartHook, ...] = ()

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            msg = f"Timeout must be positive, got {self.timeout}."
            raise ValueError(msg)
        # Allow passing a list of hooks, but keep the options immutable
        object.__setattr__(self, "post_start_hooks", tuple(self.post_start_hooks))


def make_start_options(options: StartOptions | None, **kwargs: tp.Any) -> StartOptions:
    """Return `options`, or new options built from keyword arguments of `StartOptions`."""
    if options is not None and kwargs:
        msg = f"Pass either `options` or keyword arguments, not both (got {sorted(kwargs)})."
        raise TypeError(msg)
    return options or StartOptions(**kwargs)


@dataclasses.dataclass(frozen=True)
class ConnectionInfo:
    """Connection details of a running instance or of a clone."""

    host: str
    port: int
    database: str = ""
    user: str = ""
    password: str = ""
    scheme: str = "postgres"
    ssl_mode: str = "disable"

    @property
    def dsn(self) -> str:
        """Connection string in the URL form.

        >>> ConnectionInfo(host="localhost", port=5432, database="db", user="u", password="p").dsn
        'postgres://u:p@localhost:5432/db?sslmode=disable'
        """
        userinfo = ""
        if self.user:
            userinfo = urllib.parse.quote(self.user, safe="")
            if self.password:
                userinfo = f"{userinfo}:{urllib.parse.quote(self.password, safe='')}"
            userinfo = f"{userinfo}@"
        query = urllib.parse.urlencode({"sslmode": self.ssl_mode}) if self.ssl_mode else ""
        return urllib.parse.urlunsplit(
            (self.scheme, f"{userinfo}{self.host}:{self.port}", f"/{self.database}", query, "")
        )


class ServiceInstance:
    """Ownership of one running service instance.

    The instance is created by `provisioner.start`. It owns the container (the runtime
    reference) and the connected client. Closing the instance is the only way the container
    gets destroyed (apart from the expiry safeguard).
    """

    def __init__(
        self,
        *,
        service: "service_type.ServiceType",
        runtime: "runtime_mod.DockerRuntime",
        runtime_ref: tp.Any,
        endpoint: str,
        logical_name: str,
        owns_runtime: bool = False,
    ) -> None:
        self.service = service
        self.runtime = runtime
        # The runtime was created just for this instance and is closed together with it
        self.owns_runtime = owns_runtime
        self.runtime_ref = runtime_ref
        self.endpoint = endpoint
        self.logical_name = logical_name
        self.client: tp.Any = None
        self.is_template = False
        self.closed = False
        # Open clones whose stores live in the container of this instance
        self.live_clones: set[tp.Any] = set()
        # The instance was closed, but its container is kept for the live clones
        self.terminate_pending = False
        # Guards `closed`, `is_template` and the clones
        self.lock = threading.Lock()

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} {self.service.name} '{self.logical_name}' "
            f"at {self.endpoint}{' (closed)' if self.closed else ''}>"
        )

    @property
    def host(self) -> str:
        return self.endpoint.rsplit(":", 1)[0]

    @property
    def port(self) -> int:
        return int(self.endpoint.rsplit(":", 1)[1])

    @property
    def connection_info(self) -> ConnectionInfo:
        return self.service.connection_info(self)

    def probe(self) -> None:
        """Check that the instance is alive, raise an exception if it is not."""
        self.service.probe(self.client)

    def _terminate(self) -> None:
        try:
            self.runtime.terminate(self.runtime_ref)
        except Exception as exc:
            msg = f"Could not terminate instance '{self.logical_name}': {exc}"
            raise common.TeardownError(msg) from exc
        self.terminate_pending = False
        if self.owns_runtime:
            self.runtime.close()

    def _close_client(self) -> None:
        if self.client is None:
            return
        try:
            self.service.close_client(self.client)
        except Exception as exc:
            LOGGER.warning(f"Unable to close client of '{self.logical_name}': {exc}")

    def close(self) -> None:
        """Destroy the instance.

        Closing an already closed instance does nothing. When the destruction fails,
        `TeardownError` is raised and the instance stays open, so `close` can be retried.

        The container of a template is kept running while any of its clones is open. The
        template itself is closed right away and it can't be cloned anymore. The container
        is terminated when the last clone is closed.
        """
        with self.lock:
            if self.closed:
                # Retry termination that failed when the last clone was closed
                if self.terminate_pending and not self.live_clones:
                    self._terminate()
                return

            # Revert the template flag first, so nothing can be cloned from a database that
            # is being destroyed.
            if self.is_template:
                try:
                    self.service.set_template(self, False)
                except Exception as exc:
                    if not errors.is_transport_error(exc):
                        msg = f"Could not unmark template '{self.logical_name}': {exc}"
                        raise common.TeardownError(msg) from exc
                    # E.g. the container was already removed by the expiry safeguard
                    LOGGER.warning(
                        f"Template '{self.logical_name}' is not reachable, terminating it: {exc}"
                    )
                self.is_template = False

            if self.live_clones:
                LOGGER.info(
                    f"Keeping container of {self!r} until its {len(self.live_clones)} "
                    "clone(s) are closed"
                )
                self.terminate_pending = True
            else:
                self._terminate()

            self.closed = True
            self._close_client()

        LOGGER.debug(f"Closed {self!r}")

    def release_clone(self, cloned: tp.Any) -> None:
        """Forget a closed clone and terminate the container when it is no longer needed."""
        with self.lock:
            self.live_clones.discard(cloned)
            if self.terminate_pending and not self.live_clones:
                LOGGER.debug(f"Last clone of {self!r} closed, terminating the container")
                self._terminate()

    def __enter__(self) -> "ServiceInstance":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
