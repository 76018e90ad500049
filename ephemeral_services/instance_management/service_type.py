"""Base class describing a kind of backing service that can be provisioned."""

import typing as tp

from ephemeral_services.instance_management import common
from ephemeral_services.instance_management import instance
from ephemeral_services.instance_management import runtime


class ServiceType:
    """Service-specific parts of provisioning.

    The generic provisioner, instance handle and template manager drive an implementation of
    this class. Subclasses must implement the launching, connecting and probing methods. The
    administrative methods are needed only for services that support templates.
    """

    name: tp.ClassVar[str] = ""
    # Port inside the container, e.g. "5432/tcp"
    container_port: tp.ClassVar[str] = ""
    default_logical_name: tp.ClassVar[str] = ""
    supports_templates: tp.ClassVar[bool] = False

    def launch_spec(self, *, name: str, options: instance.StartOptions) -> runtime.LaunchSpec:
        """Return spec for launching the container."""
        msg = f"Not implemented for service type `{self.name}`."
        raise NotImplementedError(msg)

    def connect_to(self, conn_info: instance.ConnectionInfo) -> tp.Any:
        """Return a new client connected to the instance or clone described by `conn_info`."""
        msg = f"Not implemented for service type `{self.name}`."
        raise NotImplementedError(msg)

    def connect(self, svc_instance: instance.ServiceInstance) -> tp.Any:
        return self.connect_to(self.connection_info(svc_instance))

    def probe(self, client: tp.Any) -> None:
        """Raise an exception if the instance behind `client` is not ready."""
        msg = f"Not implemented for service type `{self.name}`."
        raise NotImplementedError(msg)

    def close_client(self, client: tp.Any) -> None:
        client.close()

    def is_transient(self, exc: Exception) -> bool:
        """Tell if a probe failure can go away by waiting."""
        return True

    def connection_info(self, svc_instance: instance.ServiceInstance) -> instance.ConnectionInfo:
        return instance.ConnectionInfo(host=svc_instance.host, port=svc_instance.port)

    def set_template(self, svc_instance: instance.ServiceInstance, is_template: bool) -> None:
        """Mark or unmark the instance's store as a template."""
        msg = f"Service type `{self.name}` doesn't support templates."
        raise common.CloneContractError(msg)

    def create_copy(self, svc_instance: instance.ServiceInstance, copy_name: str) -> None:
        """Create a new store named `copy_name` as a copy of the template store."""
        msg = f"Service type `{self.name}` doesn't support templates."
        raise common.CloneContractError(msg)

    def drop_copy(self, conn_info: instance.ConnectionInfo) -> None:
        """Remove the store of a clone."""
        msg = f"Service type `{self.name}` doesn't support templates."
        raise common.CloneContractError(msg)
