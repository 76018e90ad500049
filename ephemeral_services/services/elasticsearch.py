"""Elasticsearch instances and a minimal REST client for them."""

import logging
import typing as tp

import requests
from docker import types as docker_types
from requests import auth as rauth

from ephemeral_services.instance_management import errors
from ephemeral_services.instance_management import instance
from ephemeral_services.instance_management import provisioner
from ephemeral_services.instance_management import readiness
from ephemeral_services.instance_management import runtime as runtime_mod
from ephemeral_services.instance_management import service_type
from ephemeral_services.utils import configuration
from ephemeral_services.utils import http_client

LOGGER = logging.getLogger(__name__)

NODE_ENV = {
    "node.name": "elasticsearch-test",
    "cluster.name": "elasticsearch-test",
    "discovery.type": "single-node",
    "logger.org.elasticsearch": "warn",
    "bootstrap.memory_lock": "true",
    "xpack.security.enabled": "false",
    "xpack.license.self_generated.type": "basic",
    "ingest.geoip.downloader.enabled": "false",
}


class ElasticsearchClient:
    """Utility class for interacting with Elasticsearch via REST API."""

    def __init__(
        self,
        base_url: str,
        *,
        username: str = "",
        password: str = "",
        debug: bool = False,
        timeout: float = configuration.CONNECT_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.debug = debug
        self.session = http_client.new_session()
        if username and password:
            self.session.auth = rauth.HTTPBasicAuth(username, password)

    def request(self, method: str, path: str, **kwargs: tp.Any) -> requests.Response:
        """Send a request, return the response regardless of its status."""
        url = f"{self.base_url}/{path.lstrip('/')}"
        kwargs.setdefault("timeout", self.timeout)
        response = self.session.request(method, url, **kwargs)
        if self.debug:
            LOGGER.debug(
                f"{method} {url} {kwargs.get('json')!r} -> {response.status_code} {response.text}"
            )
        return response

    def perform(self, method: str, path: str, **kwargs: tp.Any) -> tp.Any:
        """Send a request and return decoded response body.

        Raises:
            ElasticsearchError: Elasticsearch returned an error.
        """
        response = self.request(method, path, **kwargs)
        err = errors.parse_error(response)
        if err is not None:
            raise err
        if not response.content:
            return None
        return response.json()

    def ping(self) -> None:
        """Check that the node answers with HTTP status 200."""
        response = self.request("HEAD", "/")
        if response.status_code != 200:
            msg = f"Checking state failed [StatusCode={response.status_code}]"
            raise readiness.NotReadyError(msg)

    def close(self) -> None:
        self.session.close()


class ElasticsearchService(service_type.ServiceType):
    name = "elasticsearch"
    container_port = "9200/tcp"
    default_logical_name = "elasticsearch"

    def __init__(
        self,
        image: str = configuration.ELASTICSEARCH_IMAGE,
        *,
        mem_limit: str = "1g",
        debug: bool = False,
    ) -> None:
        self.image = image
        self.mem_limit = mem_limit
        self.debug = debug

    def launch_spec(self, *, name: str, options: instance.StartOptions) -> runtime_mod.LaunchSpec:
        return runtime_mod.LaunchSpec(
            name=name,
            image=self.image,
            ports=(self.container_port,),
            env=dict(NODE_ENV),
            mem_limit=self.mem_limit,
            ulimits=(docker_types.Ulimit(name="memlock", soft=-1, hard=-1),),
        )

    def connection_info(self, svc_instance: instance.ServiceInstance) -> instance.ConnectionInfo:
        return instance.ConnectionInfo(
            host=svc_instance.host, port=svc_instance.port, scheme="http", ssl_mode=""
        )

    def connect_to(self, conn_info: instance.ConnectionInfo) -> ElasticsearchClient:
        return ElasticsearchClient(
            f"{conn_info.scheme}://{conn_info.host}:{conn_info.port}",
            username=conn_info.user,
            password=conn_info.password,
            debug=self.debug,
        )

    def probe(self, client: ElasticsearchClient) -> None:
        client.ping()


def start(
    options: instance.StartOptions | None = None,
    *,
    runtime: runtime_mod.DockerRuntime | None = None,
    register_cleanup: provisioner.RegisterCleanup | None = None,
    **kwargs: tp.Any,
) -> instance.ServiceInstance:
    """Start an Elasticsearch node.

    Start options can be passed either as `options`, or as keyword arguments of
    `StartOptions`.
    """
    options = instance.make_start_options(options, **kwargs)
    return provisioner.start(
        ElasticsearchService(), options, runtime=runtime, register_cleanup=register_cleanup
    )
