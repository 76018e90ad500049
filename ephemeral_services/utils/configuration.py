"""Provisioning and test environment configuration."""

import os
import urllib.parse

# Overall deadline for starting an instance, and also the time after which the runtime
# force-terminates an instance that was never closed.
DEFAULT_START_TIMEOUT = float(os.environ.get("EPHEMERAL_START_TIMEOUT") or 60)
if DEFAULT_START_TIMEOUT <= 0:
    msg = f"Invalid EPHEMERAL_START_TIMEOUT: {DEFAULT_START_TIMEOUT}"
    raise RuntimeError(msg)

# Per-request timeout for Docker SDK calls
DOCKER_API_TIMEOUT = int(os.environ.get("EPHEMERAL_DOCKER_API_TIMEOUT") or 20)

# First sleep between readiness probes; every next sleep is longer by the same amount
READINESS_POLL_INTERVAL = float(os.environ.get("EPHEMERAL_POLL_INTERVAL") or 0.5)
READINESS_MAX_BACKOFF = float(os.environ.get("EPHEMERAL_MAX_BACKOFF") or 5)
if READINESS_POLL_INTERVAL <= 0 or READINESS_MAX_BACKOFF < READINESS_POLL_INTERVAL:
    msg = (
        f"Invalid readiness polling: interval {READINESS_POLL_INTERVAL}, "
        f"max backoff {READINESS_MAX_BACKOFF}"
    )
    raise RuntimeError(msg)

# Timeout of a single client connection attempt made while waiting for readiness
CONNECT_TIMEOUT = int(os.environ.get("EPHEMERAL_CONNECT_TIMEOUT") or 8)


def _get_docker_hostname() -> str:
    """Return the host where ports published by Docker are reachable."""
    hostname = os.environ.get("EPHEMERAL_DOCKER_HOSTNAME")
    if hostname:
        return hostname

    docker_host = os.environ.get("DOCKER_HOST") or ""
    if docker_host.startswith(("tcp://", "http://", "https://")):
        return urllib.parse.urlparse(docker_host).hostname or "localhost"

    return "localhost"


DOCKER_HOSTNAME = _get_docker_hostname()

POSTGRES_IMAGE = os.environ.get("EPHEMERAL_POSTGRES_IMAGE") or "postgres:16-alpine"
ELASTICSEARCH_IMAGE = (
    os.environ.get("EPHEMERAL_ELASTICSEARCH_IMAGE")
    or "docker.elastic.co/elasticsearch/elasticsearch:8.12.2"
)

# Containers are labeled so that leftovers of killed test runs can be found
CONTAINER_LABEL = "ephemeral-services"

# Don't reap expired containers at the start of pytest session
KEEP_INSTANCES_RUNNING = bool(os.environ.get("KEEP_INSTANCES_RUNNING"))
