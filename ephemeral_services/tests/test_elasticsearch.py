"""Tests of Elasticsearch instances running in Docker.

The tests are skipped when Docker is not available.
"""

import pytest

from ephemeral_services.instance_management import common
from ephemeral_services.instance_management import errors
from ephemeral_services.instance_management import instance
from ephemeral_services.instance_management import templates
from ephemeral_services.services import elasticsearch


@pytest.fixture
def es_instance(start_instance) -> instance.ServiceInstance:
    return start_instance(elasticsearch.ElasticsearchService(), timeout=180)


def test_start(es_instance):
    es_instance.probe()

    info = es_instance.client.perform("GET", "/")
    assert info["cluster_name"] == "elasticsearch-test"


def test_index_errors(es_instance):
    client = es_instance.client
    client.perform("PUT", "/products")

    with pytest.raises(errors.ElasticsearchError) as excinfo:
        client.perform("PUT", "/products")
    assert excinfo.value.details.type == "resource_already_exists_exception"

    with pytest.raises(errors.ElasticsearchError) as excinfo:
        client.perform("GET", "/missing/_doc/1")
    assert errors.is_not_found(excinfo.value)

    client.perform("PUT", "/products/_create/1", json={"name": "shoe"})
    with pytest.raises(errors.ElasticsearchError) as excinfo:
        client.perform("PUT", "/products/_create/1", json={"name": "shoe"})
    assert errors.is_conflict(excinfo.value)


def test_no_templates(es_instance):
    with pytest.raises(common.CloneContractError):
        templates.promote(es_instance)
