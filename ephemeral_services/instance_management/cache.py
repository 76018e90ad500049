import logging
import threading
import typing as tp

from ephemeral_services.instance_management import instance

LOGGER = logging.getLogger(__name__)


class InstanceCache:
    """Cache of running instances, so an expensive instance can be reused by many tests.

    The cache is meant to be created at the start of a test session and closed at the end of
    it. Every key maps to at most one instance. All instances are created while holding the
    cache lock, so a second caller asking for the same key waits until the first caller's
    instance is fully started and then gets the same instance.
    """

    def __init__(self) -> None:
        self._instances: dict[str, instance.ServiceInstance] = {}
        self._lock = threading.Lock()

    def get_or_create(
        self, key: str, create_func: tp.Callable[[], instance.ServiceInstance]
    ) -> instance.ServiceInstance:
        """Return instance cached under `key`, start it with `create_func` if there's none.

        When `create_func` fails, the exception is propagated and nothing is cached.
        """
        with self._lock:
            cached = self._instances.get(key)
            if cached is not None:
                return cached

            LOGGER.debug(f"No cached instance for '{key}', creating a new one.")
            new_instance = create_func()
            self._instances[key] = new_instance
            return new_instance

    def get(self, key: str) -> instance.ServiceInstance | None:
        with self._lock:
            return self._instances.get(key)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._instances

    def __len__(self) -> int:
        with self._lock:
            return len(self._instances)

    def close(self) -> None:
        """Close all cached instances.

        Stop on the first instance that fails to close and re-raise the error. The cache is
        emptied only when all instances were closed.
        """
        with self._lock:
            for key, cached in self._instances.items():
                LOGGER.debug(f"Closing cached instance '{key}'.")
                cached.close()
            self._instances = {}
