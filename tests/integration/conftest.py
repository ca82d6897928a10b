"""
Pytest configuration for integration tests
"""
import logging
import os

import docker
import pytest

logger = logging.getLogger(__name__)

TEST_IMAGE = os.environ.get("CARTRIDGE_TEST_IMAGE")
TEST_INSTANCES_FILE = os.environ.get("CARTRIDGE_TEST_INSTANCES", "instances.yml")
TEST_TOPOLOGY_FILE = os.environ.get("CARTRIDGE_TEST_TOPOLOGY", "cartridge/replicasets.yml")
CONTAINER_NAME_PREFIX = "cartridge-testcluster"


def docker_available() -> bool:
    try:
        client = docker.from_env()
        client.ping()
        client.close()
        return True
    except Exception as e:
        logger.debug(f"Docker is not reachable: {e}")
        return False


def pytest_collection_modifyitems(config, items):
    if TEST_IMAGE and docker_available():
        return
    skip = pytest.mark.skip(reason="needs CARTRIDGE_TEST_IMAGE and a reachable Docker daemon")
    for item in items:
        if "integration" in item.nodeid:
            item.add_marker(skip)


def cleanup_test_containers(docker_client: docker.DockerClient):
    """Remove containers left behind by interrupted runs."""
    try:
        containers = docker_client.containers.list(all=True, filters={"name": CONTAINER_NAME_PREFIX})
        for container in containers:
            logger.info(f"Removing container: {container.name}")
            container.remove(force=True)
    except docker.errors.APIError as e:
        logger.warning(f"Error removing containers: {e}")


@pytest.fixture(scope="session")
def docker_client():
    """Get Docker client."""
    client = docker.from_env()
    yield client
    client.close()


@pytest.fixture(scope="session", autouse=True)
def setup_and_teardown(docker_client):
    """Cleanup before and after the test session."""
    cleanup_test_containers(docker_client)

    yield

    logger.info("Test session complete. Cleaning up...")
    cleanup_test_containers(docker_client)
