import asyncio
import copy
from typing import Any

import pytest
from sanic import Sanic
from sanic_testing import TestManager
from sanic.log import logger

from pipeline_relay.config import Config
from pipeline_relay.exceptions import ConflictError, NotFoundError


class FakeCluster:
    """In-memory stand-in for pipeline_relay.cluster.Cluster."""

    def __init__(self):
        self.pipelines: dict[tuple[str, str], dict[str, Any]] = {}
        self.pipeline_resources: dict[tuple[str, str], dict[str, Any]] = {}
        self.pipeline_runs: dict[tuple[str, str], dict[str, Any]] = {}
        self.github_sources: dict[str, list[dict[str, Any]]] = {}
        self.config_maps: dict[tuple[str, str], dict[str, Any]] = {}
        self.failures: dict[str, list[Exception]] = {}
        self.calls: list[str] = []

    def fail(self, method: str, *errors: Exception):
        self.failures.setdefault(method, []).extend(errors)

    async def _call(self, method: str):
        self.calls.append(method)
        # yield to the loop so concurrent callers interleave
        await asyncio.sleep(0)
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def add_pipeline(self, namespace: str, name: str):
        self.pipelines[(namespace, name)] = {
            "apiVersion": "tekton.dev/v1alpha1",
            "kind": "Pipeline",
            "metadata": {"name": name, "namespace": namespace},
        }

    async def get_version(self):
        await self._call("get_version")
        return {"gitVersion": "v1.29.0"}

    async def get_pipeline(self, namespace, name):
        await self._call("get_pipeline")
        if name == "":
            # the real client refuses to address the collection
            raise NotFoundError("Empty name for pipelines")
        try:
            return copy.deepcopy(self.pipelines[(namespace, name)])
        except KeyError:
            raise NotFoundError(f"pipeline {name} not found")

    async def create_pipeline_resource(self, namespace, body):
        await self._call("create_pipeline_resource")
        key = (namespace, body["metadata"]["name"])
        if key in self.pipeline_resources:
            raise ConflictError(409, "already exists")
        self.pipeline_resources[key] = copy.deepcopy(body)
        return copy.deepcopy(body)

    async def delete_pipeline_resource(self, namespace, name):
        await self._call("delete_pipeline_resource")
        try:
            del self.pipeline_resources[(namespace, name)]
        except KeyError:
            raise NotFoundError(f"pipeline resource {name} not found")

    async def create_pipeline_run(self, namespace, body):
        await self._call("create_pipeline_run")
        key = (namespace, body["metadata"]["name"])
        if key in self.pipeline_runs:
            raise ConflictError(409, "already exists")
        self.pipeline_runs[key] = copy.deepcopy(body)
        return copy.deepcopy(body)

    async def list_github_sources(self, namespace):
        await self._call("list_github_sources")
        return copy.deepcopy(self.github_sources.get(namespace, []))

    async def create_github_source(self, namespace, body):
        await self._call("create_github_source")
        body = copy.deepcopy(body)
        body["metadata"]["namespace"] = namespace
        self.github_sources.setdefault(namespace, []).append(body)
        return copy.deepcopy(body)

    async def get_config_map(self, namespace, name):
        await self._call("get_config_map")
        try:
            return copy.deepcopy(self.config_maps[(namespace, name)])
        except KeyError:
            raise NotFoundError(f"configmap {name} not found")

    async def create_config_map(self, namespace, body):
        await self._call("create_config_map")
        key = (namespace, body["metadata"]["name"])
        if key in self.config_maps:
            raise ConflictError(409, "already exists")
        body = copy.deepcopy(body)
        body["metadata"]["resourceVersion"] = "1"
        self.config_maps[key] = body
        return copy.deepcopy(body)

    async def replace_config_map(self, namespace, name, body):
        await self._call("replace_config_map")
        current = self.config_maps.get((namespace, name))
        if current is None:
            raise NotFoundError(f"configmap {name} not found")
        if body["metadata"].get("resourceVersion") != current["metadata"]["resourceVersion"]:
            raise ConflictError(409, "the object has been modified")
        body = copy.deepcopy(body)
        body["metadata"]["resourceVersion"] = str(
            int(current["metadata"]["resourceVersion"]) + 1
        )
        self.config_maps[(namespace, name)] = body
        return copy.deepcopy(body)


@pytest.fixture
def config():
    config = Config(
        PIPELINE_RUN_NAMESPACE="builds",
        SERVICE_ACCOUNT="pipeline-runner",
        DOCKER_REGISTRY_LOCATION="registry.example.com",
        DEFAULT_PIPELINE="",
        KUBERNETES_API_URL="https://k8s.test",
        KUBERNETES_TOKEN="test-token",
        KUBERNETES_CA_PATH=None,
        OVERRIDE_LOGGING="DEBUG",
        STERILE=False,
    )

    logger.setLevel(config.OVERRIDE_LOGGING)

    return config


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture(scope="function")
def app(config, cluster) -> Sanic:
    """Create a Sanic app backed by the in-memory cluster."""
    from pipeline_relay.web import create_app

    Sanic.test_mode = True
    app = create_app(config=config, cluster=cluster)
    TestManager(app)
    return app
