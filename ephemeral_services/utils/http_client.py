"""HTTP sessions for talking to provisioned services."""

import requests
from requests import adapters
from urllib3.util import retry

# Statuses on which a request is retried, the node is e.g. still recovering shards
RETRY_ON_STATUS = (429, 502, 503, 504)


def new_session(
    *, max_retries: int = 5, backoff_factor: float = 0.1, verify: bool = False
) -> requests.Session:
    """Get a new session object retrying requests on transient server-side statuses.

    Every provisioned instance owns its own session, so closing the instance closes only its
    connections.
    """
    retries = retry.Retry(
        total=max_retries,
        connect=0,
        read=0,
        status_forcelist=RETRY_ON_STATUS,
        backoff_factor=backoff_factor,
        raise_on_status=False,
    )
    session = requests.Session()
    session.verify = verify
    adapter = adapters.HTTPAdapter(max_retries=retries)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session
