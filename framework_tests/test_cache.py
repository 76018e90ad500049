import threading

import psycopg2
import pytest

from ephemeral_services.instance_management import cache
from ephemeral_services.instance_management import common
from ephemeral_services.instance_management import instance
from ephemeral_services.instance_management import provisioner


def test_get_or_create_reuses(fake_runtime, fake_service):
    instance_cache = cache.InstanceCache()
    calls = []

    def _create():
        calls.append(1)
        return provisioner.start(fake_service, runtime=fake_runtime)

    first = instance_cache.get_or_create("pg", _create)
    second = instance_cache.get_or_create("pg", _create)

    assert first is second
    assert calls == [1]
    assert "pg" in instance_cache
    assert instance_cache.get("pg") is first
    assert instance_cache.get("es") is None
    assert len(instance_cache) == 1

    instance_cache.close()


def test_concurrent_get_or_create(fake_runtime, fake_service):
    instance_cache = cache.InstanceCache()
    calls = []
    results = []
    barrier = threading.Barrier(8)

    def _create():
        calls.append(1)
        return provisioner.start(fake_service, runtime=fake_runtime)

    def _worker():
        barrier.wait()
        results.append(instance_cache.get_or_create("pg", _create))

    threads = [threading.Thread(target=_worker) for __ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(calls) == 1
    assert len(results) == 8
    assert all(r is results[0] for r in results)

    instance_cache.close()


def test_create_failure_not_cached(fake_runtime, fake_service):
    instance_cache = cache.InstanceCache()

    def _failing_create():
        msg = "image not found"
        raise common.LaunchError(step=common.STEP_LAUNCH, message=msg)

    with pytest.raises(common.LaunchError):
        instance_cache.get_or_create("pg", _failing_create)
    assert "pg" not in instance_cache

    created = instance_cache.get_or_create(
        "pg", lambda: provisioner.start(fake_service, runtime=fake_runtime)
    )
    assert instance_cache.get("pg") is created
    instance_cache.close()


def test_close(fake_runtime, fake_service):
    instance_cache = cache.InstanceCache()
    pg = instance_cache.get_or_create(
        "pg", lambda: provisioner.start(fake_service, runtime=fake_runtime)
    )
    other = instance_cache.get_or_create(
        "other", lambda: provisioner.start(fake_service, runtime=fake_runtime)
    )

    instance_cache.close()

    assert pg.closed
    assert other.closed
    assert len(instance_cache) == 0
    assert fake_runtime.running == []

    # Closing an empty cache is a no-op
    instance_cache.close()


def test_close_failure_keeps_entries(make_runtime, fake_service):
    runtime = make_runtime()
    instance_cache = cache.InstanceCache()
    instance_cache.get_or_create("pg", lambda: provisioner.start(fake_service, runtime=runtime))
    runtime.terminate_failures = 1

    with pytest.raises(common.TeardownError):
        instance_cache.close()
    assert "pg" in instance_cache

    instance_cache.close()
    assert len(instance_cache) == 0
    assert runtime.running == []


def test_close_unreachable_template(fake_runtime, make_service):
    service = make_service()
    instance_cache = cache.InstanceCache()
    template = instance_cache.get_or_create(
        "template",
        lambda: provisioner.start(
            service, instance.StartOptions(is_template=True), runtime=fake_runtime
        ),
    )
    other = instance_cache.get_or_create(
        "other", lambda: provisioner.start(service, runtime=fake_runtime)
    )
    service.set_template_error = psycopg2.OperationalError(
        "server closed the connection unexpectedly"
    )

    instance_cache.close()

    assert template.closed
    assert other.closed
    assert len(instance_cache) == 0
    assert fake_runtime.running == []
