"""Log of the provisioning framework itself.

Every pytest worker writes its own `framework.log` into its temporary directory. The log
records events that are not failures of the tests themselves, like removal of leaked
containers or service instances that failed to start, so they can be reported separately.
"""

import dataclasses
import functools
import logging
import pathlib as pl
import time

from ephemeral_services.utils import temptools

SETUP_FAILURE_TAG = "SETUP FAILURE"
FIELD_SEP = " | "


@dataclasses.dataclass(frozen=True)
class SetupFailure:
    test_id: str
    service_name: str
    step: str
    message: str


def get_framework_log_path() -> pl.Path:
    return temptools.get_pytest_worker_tmp() / "framework.log"


@functools.cache
def framework_logger() -> logging.Logger:
    """Return logger writing to `framework.log` of the current worker, timestamps are in UTC."""
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    formatter.converter = time.gmtime

    handler = logging.FileHandler(get_framework_log_path(), encoding="utf-8")
    handler.setFormatter(formatter)

    logger = logging.getLogger("ephemeral_services.framework")
    logger.setLevel(logging.INFO)
    logger.addHandler(handler)
    return logger


def record_setup_failure(test_id: str, service_name: str, step: str, err: Exception) -> None:
    """Record that a test couldn't get its service instance.

    Such test didn't fail on its own, the failure belongs to the infrastructure. Every
    failure is a single line, so it can be read back by `read_setup_failures`.
    """
    message = " ".join(str(err).split())
    fields = (SETUP_FAILURE_TAG, test_id, service_name, step, message)
    framework_logger().error(FIELD_SEP.join(fields))


def read_setup_failures() -> list[SetupFailure]:
    """Return setup failures recorded in `framework.log` of the current worker."""
    # No locking needed, every worker reads only its own log file
    logfile = get_framework_log_path()
    if not logfile.exists():
        return []

    failures = []
    with open(logfile, encoding="utf-8") as infile:
        for line in infile:
            __, tag, record = line.rstrip("\n").partition(f"{SETUP_FAILURE_TAG}{FIELD_SEP}")
            if not tag:
                continue
            fields = record.split(FIELD_SEP, 3)
            if len(fields) != 4:
                continue
            failures.append(SetupFailure(*fields))
    return failures
