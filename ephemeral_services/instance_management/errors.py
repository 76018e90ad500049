"""Classification of errors reported by the provisioned services.

All predicates accept `None`, exceptions (including exceptions raised from other
exceptions), `requests` responses, `ElasticsearchError` payloads and plain HTTP status codes.
The predicates never raise, an error that is not recognized is simply not matched.

PostgreSQL error codes are described in
https://www.postgresql.org/docs/current/errcodes-appendix.html
"""

import dataclasses
import http
import typing as tp

import psycopg2
import pydantic
import requests

from ephemeral_services.instance_management import common

# Maximal number of exceptions followed through `__cause__`
MAX_UNWRAP_DEPTH = 16

PG_FOREIGN_KEY_VIOLATION = "23503"
PG_UNIQUE_VIOLATION = "23505"
PG_INSUFFICIENT_PRIVILEGE = "42501"
PG_DUPLICATE_DATABASE = "42P04"
PG_INVALID_CATALOG_NAME = "3D000"
PG_DUPLICATE_OBJECT = "42710"
PG_CONNECTION_EXCEPTION_CLASS = "08"
# admin_shutdown, crash_shutdown, cannot_connect_now
PG_SERVER_UNAVAILABLE = frozenset(("57P01", "57P02", "57P03"))

# Messages of libpq errors caused by a server that is not (yet) reachable
PG_TRANSPORT_MESSAGES = (
    "connection refused",
    "could not connect to server",
    "the database system is starting up",
    "the database system is shutting down",
    "the database system is in recovery mode",
    "server closed the connection",
    "terminating connection due to administrator command",
    "connection reset by peer",
    "could not receive data from server",
    "no connection to the server",
    "timeout expired",
    "connection timed out",
    "eof detected",
)


@pydantic.dataclasses.dataclass(frozen=True)
class ScriptErrorPosition:
    offset: int = 0
    start: int = 0
    end: int = 0


@pydantic.dataclasses.dataclass(frozen=True)
class ErrorDetails:
    """Error details as returned by Elasticsearch in the `error` field."""

    type: str = ""
    reason: str = ""
    resource_type: str = ""
    resource_id: str | list[str] = ""
    index: str = ""
    phase: str = ""
    grouped: bool = False
    caused_by: dict | None = None
    root_cause: list[dict] = pydantic.Field(default_factory=list)
    failed_shards: list[dict] = pydantic.Field(default_factory=list)
    # Following fields are set for script exceptions
    script_stack: list[str] = pydantic.Field(default_factory=list)
    script: str = ""
    lang: str = ""
    position: ScriptErrorPosition | None = None


_DETAILS_FIELDS = frozenset(f.name for f in dataclasses.fields(ErrorDetails))


class ElasticsearchError(Exception):
    """Error returned by Elasticsearch."""

    def __init__(self, status: int, details: ErrorDetails | None = None) -> None:
        self.status = status
        self.details = details
        super().__init__(str(self))

    def __str__(self) -> str:
        try:
            status_text = http.HTTPStatus(self.status).phrase
        except ValueError:
            status_text = "Unknown"
        if self.details and self.details.reason:
            return (
                f"elasticsearch: Error {self.status} ({status_text}): "
                f"{self.details.reason} [type={self.details.type}]"
            )
        return f"elasticsearch: Error {self.status} ({status_text})"


def _parse_details(error: tp.Any) -> ErrorDetails | None:
    if isinstance(error, str):
        return ErrorDetails(reason=error)
    if not isinstance(error, dict):
        return None
    # Keys like "resource.type" can't be used as field names
    error = {k.replace(".", "_"): v for k, v in error.items()}
    try:
        return ErrorDetails(**{k: v for k, v in error.items() if k in _DETAILS_FIELDS})
    except pydantic.ValidationError:
        return ErrorDetails(
            type=str(error.get("type") or ""), reason=str(error.get("reason") or "")
        )


def parse_error(response: requests.Response | None) -> ElasticsearchError | None:
    """Decode the error returned by Elasticsearch.

    Return `None` when there is no response or the response is not an error.
    When the body can't be decoded, return an error with the status code only.
    """
    if response is None or response.status_code < 300:
        return None
    try:
        payload = response.json()
    except ValueError:
        return ElasticsearchError(status=response.status_code)
    if not isinstance(payload, dict):
        return ElasticsearchError(status=response.status_code)
    status = payload.get("status")
    return ElasticsearchError(
        status=status if isinstance(status, int) else response.status_code,
        details=_parse_details(payload.get("error")),
    )


def error_reason(err: tp.Any) -> str:
    """Return reason of an error reported by Elasticsearch, or empty string."""
    for e in _iter_errors(err):
        if isinstance(e, ElasticsearchError) and e.details:
            return e.details.reason
    return ""


def _iter_errors(err: tp.Any) -> tp.Iterator[tp.Any]:
    """Yield the error and all the errors it was explicitly raised from (`raise ... from`).

    The implicit `__context__` is not followed, an error raised while handling another
    error is not caused by it.
    """
    seen: set[int] = set()
    depth = 0
    while err is not None and depth < MAX_UNWRAP_DEPTH and id(err) not in seen:
        seen.add(id(err))
        depth += 1
        yield err
        err = err.__cause__ if isinstance(err, BaseException) else None


def _get_status_code(err: tp.Any) -> int | None:
    # `bool` is a subclass of `int`, but it is not a status code
    if isinstance(err, bool):
        return None
    if isinstance(err, int):
        return err
    if isinstance(err, ElasticsearchError):
        return err.status
    if isinstance(err, requests.Response):
        return err.status_code
    if isinstance(err, requests.RequestException) and err.response is not None:
        return err.response.status_code
    return None


def is_status_code(err: tp.Any, code: int) -> bool:
    """Check if the error indicates the given HTTP status code."""
    return any(_get_status_code(e) == code for e in _iter_errors(err))


def is_pg_error(err: tp.Any, code: str) -> bool:
    """Check if the error is from PostgreSQL and has the given error code."""
    return any(isinstance(e, psycopg2.Error) and e.pgcode == code for e in _iter_errors(err))


def is_not_found(err: tp.Any) -> bool:
    """Check if a record or a document could not be found (HTTP status 404)."""
    return is_status_code(err, http.HTTPStatus.NOT_FOUND) or any(
        isinstance(e, common.RecordNotFoundError) for e in _iter_errors(err)
    )


def is_timeout(err: tp.Any) -> bool:
    """Check if the service returned HTTP status 408."""
    return is_status_code(err, http.HTTPStatus.REQUEST_TIMEOUT)


def is_conflict(err: tp.Any) -> bool:
    """Check if the operation resulted in a conflict (HTTP status 409).

    This happens e.g. on version conflict when creating an already existing document.
    """
    return is_status_code(err, http.HTTPStatus.CONFLICT)


def is_unauthorized(err: tp.Any) -> bool:
    """Check if the service returned HTTP status 401, e.g. when credentials are missing."""
    return is_status_code(err, http.HTTPStatus.UNAUTHORIZED)


def is_forbidden(err: tp.Any) -> bool:
    """Check if the service returned HTTP status 403, e.g. due to a missing license."""
    return is_status_code(err, http.HTTPStatus.FORBIDDEN)


def is_foreign_key_violation(err: tp.Any) -> bool:
    return is_pg_error(err, PG_FOREIGN_KEY_VIOLATION)


def is_duplicate(err: tp.Any) -> bool:
    """Check if a duplicate record was found (unique constraint violation)."""
    return is_pg_error(err, PG_UNIQUE_VIOLATION)


def is_permission_denied(err: tp.Any) -> bool:
    return is_pg_error(err, PG_INSUFFICIENT_PRIVILEGE)


def is_duplicate_database(err: tp.Any) -> bool:
    """Check if `CREATE DATABASE` failed because the database already exists."""
    return is_pg_error(err, PG_DUPLICATE_DATABASE)


def is_database_not_exists(err: tp.Any) -> bool:
    return is_pg_error(err, PG_INVALID_CATALOG_NAME)


def is_duplicate_user(err: tp.Any) -> bool:
    """Check if `CREATE ROLE` failed because the role already exists."""
    return is_pg_error(err, PG_DUPLICATE_OBJECT)


def _is_pg_transport_error(err: psycopg2.OperationalError) -> bool:
    # libpq reports every failed connection attempt (including wrong password or missing
    # database) as `OperationalError` without error code
    pgcode = err.pgcode or ""
    if pgcode.startswith(PG_CONNECTION_EXCEPTION_CLASS) or pgcode in PG_SERVER_UNAVAILABLE:
        return True
    message = str(err).lower()
    return any(m in message for m in PG_TRANSPORT_MESSAGES)


def is_transport_error(err: tp.Any) -> bool:
    """Check if the service could not be reached or the connection was lost.

    Such errors are expected while a service is starting, unlike e.g. failed authentication.
    """
    for e in _iter_errors(err):
        if isinstance(
            e, (requests.ConnectionError, requests.Timeout, psycopg2.InterfaceError)
        ):
            return True
        if isinstance(e, psycopg2.OperationalError) and _is_pg_transport_error(e):
            return True
    return False
