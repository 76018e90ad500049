"""Templates and their clones.

A fully seeded instance can be promoted to a template. Every clone is then a new store
(e.g. a new PostgreSQL database) created as a point-in-time copy of the template's store.
Clones are independent of each other and of the template, so every test can get its own
copy of the seed data without paying for starting a new instance. When the template is
closed while some of its clones are still open, its container is kept running until the
last clone is closed.
"""

import dataclasses
import logging
import threading
import typing as tp

from ephemeral_services.instance_management import common
from ephemeral_services.instance_management import instance
from ephemeral_services.utils import helpers

if tp.TYPE_CHECKING:
    from ephemeral_services.instance_management import service_type

LOGGER = logging.getLogger(__name__)


class CloneInstance:
    """Handle of a store cloned from a template.

    The clone owns its client and its store. Once the store is removed, `on_close` is
    called with the clone, so the instance hosting the store can release it.
    """

    def __init__(
        self,
        *,
        service: "service_type.ServiceType",
        conn_info: instance.ConnectionInfo,
        client: tp.Any,
        on_close: tp.Callable[["CloneInstance"], tp.Any] | None = None,
    ) -> None:
        self.service = service
        self.connection_info = conn_info
        self.client = client
        self.on_close = on_close
        self.closed = False
        self.lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.name}'{' (closed)' if self.closed else ''}>"

    @property
    def name(self) -> str:
        return self.connection_info.database

    def close(self) -> None:
        """Close the client and remove the cloned store; the template is left untouched.

        When the template was already closed and this is its last open clone, the template's
        container is terminated too. If that fails, `TeardownError` is raised and the
        termination can be retried by closing the template again.
        """
        with self.lock:
            if self.closed:
                return
            try:
                self.service.close_client(self.client)
                self.service.drop_copy(self.connection_info)
            except Exception as exc:
                msg = f"Could not remove clone '{self.name}': {exc}"
                raise common.TeardownError(msg) from exc
            self.closed = True
        LOGGER.debug(f"Closed {self!r}")

        if self.on_close is not None:
            self.on_close(self)

    def __enter__(self) -> "CloneInstance":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def _check_open(svc_instance: instance.ServiceInstance) -> None:
    if svc_instance.closed:
        msg = f"Instance '{svc_instance.logical_name}' is already closed."
        raise common.InstanceClosedError(msg)


def promote(svc_instance: instance.ServiceInstance) -> None:
    """Mark the instance as a template, so it can be cloned."""
    if not svc_instance.service.supports_templates:
        msg = f"Service type `{svc_instance.service.name}` doesn't support templates."
        raise common.CloneContractError(msg)

    with svc_instance.lock:
        _check_open(svc_instance)
        if svc_instance.is_template:
            return
        try:
            svc_instance.service.set_template(svc_instance, True)
        except Exception as exc:
            msg = f"Could not make '{svc_instance.logical_name}' a template: {exc}"
            raise common.TemplateError(msg) from exc
        svc_instance.is_template = True

    LOGGER.debug(f"Promoted {svc_instance!r} to template")


def clone(
    template: instance.ServiceInstance,
    *,
    register_cleanup: tp.Callable[[tp.Callable[[], tp.Any]], tp.Any] | None = None,
) -> CloneInstance:
    """Create a new store as a copy of the template's store and connect to it.

    Args:
        template: An open instance that was promoted to a template.
        register_cleanup: A callback that gets the `close` method of the clone, e.g.
            pytest's `request.addfinalizer`.

    Raises:
        CloneContractError: The instance is not a template.
        InstanceClosedError: The template is already closed.
    """
    service = template.service

    # Holding the template lock makes sure the template can't be closed while cloning
    with template.lock:
        _check_open(template)
        if not template.is_template:
            msg = (
                f"Cannot clone '{template.logical_name}', it is not a template: "
                "use `StartOptions(is_template=True)` or `promote` to create a template."
            )
            raise common.CloneContractError(msg)

        copy_name = helpers.unique_name(template.logical_name)
        try:
            service.create_copy(template, copy_name)
        except Exception as exc:
            msg = f"Could not clone '{template.logical_name}' to '{copy_name}': {exc}"
            raise common.TemplateError(msg) from exc

        conn_info = dataclasses.replace(service.connection_info(template), database=copy_name)
        try:
            client = service.connect_to(conn_info)
        except Exception as exc:
            try:
                service.drop_copy(conn_info)
            except Exception as drop_exc:
                LOGGER.warning(f"Unable to remove clone '{copy_name}': {drop_exc}")
            msg = f"Could not connect to clone '{copy_name}': {exc}"
            raise common.TemplateError(msg) from exc

        cloned = CloneInstance(
            service=service, conn_info=conn_info, client=client, on_close=template.release_clone
        )
        # The template's container hosts the clone, it must outlive it
        template.live_clones.add(cloned)

    LOGGER.debug(f"Cloned {template!r} to {cloned!r}")
    if register_cleanup is not None:
        register_cleanup(cloned.close)
    return cloned
