"""PostgreSQL instances.

Instances support templates: a seeded database can be promoted to a PostgreSQL template
database, and every clone is a new database created with `CREATE DATABASE ... TEMPLATE`.
"""

import logging
import typing as tp

import psycopg2
import psycopg2.extensions
from psycopg2 import sql

from ephemeral_services.instance_management import errors
from ephemeral_services.instance_management import instance
from ephemeral_services.instance_management import provisioner
from ephemeral_services.instance_management import runtime as runtime_mod
from ephemeral_services.instance_management import service_type
from ephemeral_services.services import postgres_db
from ephemeral_services.utils import configuration

LOGGER = logging.getLogger(__name__)

USER = "postgres"
PASSWORD = "postgres"
# Data directory on tmpfs when the instance is started with `in_memory`
IN_MEMORY_PGDATA = "/data"


class PostgresService(service_type.ServiceType):
    name = "postgres"
    container_port = "5432/tcp"
    default_logical_name = "integrationtest"
    supports_templates = True

    def __init__(self, image: str = configuration.POSTGRES_IMAGE) -> None:
        self.image = image

    def launch_spec(self, *, name: str, options: instance.StartOptions) -> runtime_mod.LaunchSpec:
        env = {
            "POSTGRES_DB": options.logical_name or self.default_logical_name,
            "POSTGRES_USER": USER,
            "POSTGRES_PASSWORD": PASSWORD,
        }
        tmpfs = {}
        if options.in_memory:
            env["PGDATA"] = IN_MEMORY_PGDATA
            tmpfs[IN_MEMORY_PGDATA] = ""
        return runtime_mod.LaunchSpec(
            name=name,
            image=self.image,
            ports=(self.container_port,),
            env=env,
            tmpfs=tmpfs,
        )

    def connection_info(self, svc_instance: instance.ServiceInstance) -> instance.ConnectionInfo:
        return instance.ConnectionInfo(
            host=svc_instance.host,
            port=svc_instance.port,
            database=svc_instance.logical_name,
            user=USER,
            password=PASSWORD,
        )

    def connect_to(self, conn_info: instance.ConnectionInfo) -> psycopg2.extensions.connection:
        return postgres_db.connect(conn_info.dsn)

    def probe(self, client: psycopg2.extensions.connection) -> None:
        postgres_db.ping(client)

    def is_transient(self, exc: Exception) -> bool:
        # E.g. "the database system is starting up" or a refused connection, but not
        # a failed authentication
        return errors.is_transport_error(exc)

    def set_template(self, svc_instance: instance.ServiceInstance, is_template: bool) -> None:
        with svc_instance.client.cursor() as cur:
            cur.execute(
                "UPDATE pg_database SET datistemplate = %s WHERE datname = %s;",
                (is_template, svc_instance.logical_name),
            )

    def create_copy(self, svc_instance: instance.ServiceInstance, copy_name: str) -> None:
        with svc_instance.client.cursor() as cur:
            cur.execute(
                sql.SQL("CREATE DATABASE {} TEMPLATE {};").format(
                    sql.Identifier(copy_name), sql.Identifier(svc_instance.logical_name)
                )
            )

    def drop_copy(self, conn_info: instance.ConnectionInfo) -> None:
        try:
            postgres_db.drop_database_if_exists(conn_info.dsn)
        except psycopg2.OperationalError as exc:
            if not errors.is_transport_error(exc):
                raise
            # The server is gone together with the clone
            LOGGER.debug(f"Server of clone '{conn_info.database}' not reachable: {exc}")


def start(
    options: instance.StartOptions | None = None,
    *,
    runtime: runtime_mod.DockerRuntime | None = None,
    register_cleanup: provisioner.RegisterCleanup | None = None,
    **kwargs: tp.Any,
) -> instance.ServiceInstance:
    """Start a PostgreSQL instance.

    Start options can be passed either as `options`, or as keyword arguments of
    `StartOptions`.
    """
    options = instance.make_start_options(options, **kwargs)
    return provisioner.start(
        PostgresService(), options, runtime=runtime, register_cleanup=register_cleanup
    )
