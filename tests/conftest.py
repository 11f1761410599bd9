"""
Test configuration and fixtures for pytest.

Fixtures include: pod factories built from real kubernetes client models,
a project directory with a persisted config, and a mocked cluster client.
"""

import sys
import os
from pathlib import Path
import pytest
from unittest.mock import AsyncMock, Mock

import yaml

# Add the project root to sys.path
project_dir = Path(__file__).parent.parent
sys.path.insert(0, str(project_dir))


def pytest_configure(config):
    """
    Pytest hook called before test collection.
    Sets up test environment variables and registers custom markers.
    """
    # Set test environment variables BEFORE any kubedev imports read settings
    os.environ["KUBEDEV_LOG_FILE"] = ""
    os.environ["KUBEDEV_RELEASE_POLL_INTERVAL_SECONDS"] = "2"

    from kubedev.config import get_settings
    get_settings.cache_clear()

    # Register custom markers
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "kubernetes: mark test as exercising the kubernetes client layer")


@pytest.fixture
def make_pod():
    """Factory for V1Pod objects with the fields pod discovery looks at."""
    from kubernetes import client

    def _make_pod(
        name="web-0",
        namespace="default",
        phase="Running",
        ready=True,
        annotations=None,
        labels=None,
        container_statuses=None,
        deletion_timestamp=None,
        reason=None,
    ):
        if container_statuses is None:
            container_statuses = [
                client.V1ContainerStatus(
                    name="app",
                    image="app:latest",
                    image_id="",
                    ready=ready,
                    restart_count=0,
                    state=client.V1ContainerState(
                        running=client.V1ContainerStateRunning() if ready else None
                    ),
                )
            ]

        return client.V1Pod(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=namespace,
                annotations=annotations,
                labels=labels,
                deletion_timestamp=deletion_timestamp,
            ),
            spec=client.V1PodSpec(containers=[client.V1Container(name="app", image="app:latest")]),
            status=client.V1PodStatus(
                phase=phase,
                reason=reason,
                container_statuses=container_statuses,
            ),
        )

    return _make_pod


@pytest.fixture
def mock_cluster():
    """Mock ClusterClient with async methods."""
    cluster = Mock()
    cluster.ensure_namespace = AsyncMock()
    cluster.list_pods = AsyncMock(return_value=[])
    cluster.get_pod = AsyncMock()
    cluster.first_running_pod = AsyncMock(return_value=None)
    cluster.wait_for_ready = AsyncMock(side_effect=lambda pod, **kwargs: pod)
    cluster.create_pod = AsyncMock(side_effect=lambda namespace, body: body)
    cluster.delete_pod = AsyncMock()
    cluster.create_or_replace_secret = AsyncMock()
    cluster.exec_buffered = AsyncMock(return_value=(b"", b""))
    cluster.exec_stream = AsyncMock(return_value=0)
    cluster.open_port_tunnel = AsyncMock()
    cluster.close = Mock()
    return cluster


@pytest.fixture
def project_data():
    """Raw project config as stored on disk."""
    return {
        "version": "v1",
        "dev_space": {
            "release": {"name": "my-app", "namespace": "dev"},
            "sync": [],
            "port_forwarding": [],
        },
        "images": {
            "default": {
                "name": "team/app",
                "registry": "default",
                "build": {"dockerfile_path": "./Dockerfile", "context_path": "./"},
            }
        },
        "registries": {
            "default": {
                "url": "registry.example.com",
                "auth": {"username": "dev", "password": "s3cret"},
            }
        },
        "cluster": {
            "api_server": "https://127.0.0.1:6443",
            "ca_cert": "CA",
            "user": {"username": "dev", "client_cert": "CERT", "client_key": "KEY"},
        },
    }


@pytest.fixture
def project_dir(tmp_path, project_data):
    """Project directory with a Dockerfile, a chart and a saved config."""
    (tmp_path / "Dockerfile").write_text("FROM alpine\n")
    chart = tmp_path / "chart"
    chart.mkdir()
    (chart / "values.yaml").write_text("pullSecrets:\n- existing-secret\n")

    config_dir = tmp_path / ".devspace"
    config_dir.mkdir()
    with open(config_dir / "config.yaml", "w") as f:
        yaml.safe_dump(project_data, f)

    return tmp_path
