"""Tests for the in-memory cluster."""

import pytest

from gitops_loop.cluster import InMemoryCluster, read_live_state
from gitops_loop.exceptions import ConflictError
from gitops_loop.manifest import Application, DesiredState, NamedResource, Resource

WEB_CONFIG = NamedResource("ConfigMap", "web", "web-config")


def configmap(name: str, namespace: str = "web", **data: str) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "namespace": namespace},
        "data": data,
    }


async def test_apply_and_list(cluster: InMemoryCluster) -> None:
    """Test applied resources are listed with server fields stripped."""
    resource = Resource.parse_doc(configmap("web-config", level="info"))

    applied = await cluster.apply(resource)

    assert applied == resource
    raw = cluster.raw(WEB_CONFIG)
    assert raw is not None
    assert raw["metadata"]["resourceVersion"] == "1"
    assert await cluster.list("ConfigMap", "web") == [resource]
    assert await cluster.list("ConfigMap", "other") == []
    assert await cluster.get(WEB_CONFIG) == resource
    assert cluster.writes == [("apply", WEB_CONFIG)]


async def test_apply_keeps_uid(cluster: InMemoryCluster) -> None:
    """Test replacing an object keeps its identity and bumps the version."""
    cluster.add(configmap("web-config", level="info"))
    uid = cluster.raw(WEB_CONFIG)["metadata"]["uid"]  # type: ignore[index]

    await cluster.apply(Resource.parse_doc(configmap("web-config", level="debug")))

    raw = cluster.raw(WEB_CONFIG)
    assert raw is not None
    assert raw["metadata"]["uid"] == uid
    assert raw["metadata"]["resourceVersion"] == "2"
    assert raw["data"] == {"level": "debug"}


async def test_delete(cluster: InMemoryCluster) -> None:
    """Test deleting resources, ignoring ones that are absent."""
    cluster.add(configmap("web-config"))
    await cluster.delete(WEB_CONFIG)
    await cluster.delete(WEB_CONFIG)
    assert await cluster.get(WEB_CONFIG) is None
    assert cluster.writes == [("delete", WEB_CONFIG)]


async def test_injected_failures(cluster: InMemoryCluster) -> None:
    """Test failures are raised the requested number of times."""
    resource = Resource.parse_doc(configmap("web-config"))
    cluster.fail("apply", WEB_CONFIG, ConflictError("modified"), times=2)

    for _ in range(2):
        with pytest.raises(ConflictError):
            await cluster.apply(resource)
    await cluster.apply(resource)
    assert cluster.writes == [("apply", WEB_CONFIG)]


async def test_read_live_state(cluster: InMemoryCluster) -> None:
    """Test live state covers declared and tracked kinds only."""
    cluster.add(configmap("web-config"))
    cluster.add(configmap("legacy"))
    cluster.add(configmap("elsewhere", namespace="other"))
    cluster.add(
        {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": "token", "namespace": "web"},
        }
    )
    cluster.add({"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "web"}})
    cluster.add({"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "other"}})
    app = Application(
        name="web",
        repo_url="https://example.com/deploy.git",
        path="apps/web",
        destination_namespace="web",
        tracked_kinds=["Secret"],
    )
    desired = DesiredState.from_resources(
        "rev1",
        [
            Resource.parse_doc(configmap("web-config")),
            Resource.parse_doc(
                {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "web"}}
            ),
        ],
    )

    live = await read_live_state(cluster, app, desired)

    assert [str(r.key) for r in live.resources] == [
        "ConfigMap/web/legacy",
        "ConfigMap/web/web-config",
        "Namespace/web",
        "Secret/web/token",
    ]
