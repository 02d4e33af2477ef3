import os
import ssl
from typing import Any

import aiohttp
from sanic.log import logger

from pipeline_relay.config import Config
from pipeline_relay.exceptions import (
    ConflictError,
    NotFoundError,
    RemoteCreateError,
    RemoteError,
)

TEKTON_API_VERSION = "tekton.dev/v1alpha1"
EVENT_SOURCES_API_VERSION = "sources.eventing.knative.dev/v1alpha1"


class Cluster:
    """Thin client for the parts of the Kubernetes REST API the relay uses."""

    def __init__(self, session: aiohttp.ClientSession, config: Config):
        self.session = session
        self.config = config
        self._headers = {"Accept": "application/json"}
        token = config.kubernetes_token()
        if token is not None:
            self._headers["Authorization"] = f"Bearer {token}"
        self._ssl: ssl.SSLContext | bool = True
        if config.KUBERNETES_CA_PATH is not None and os.path.exists(
            config.KUBERNETES_CA_PATH
        ):
            self._ssl = ssl.create_default_context(cafile=config.KUBERNETES_CA_PATH)

    def custom_objects_url(
        self, api_version: str, namespace: str, plural: str, name: str | None = None
    ) -> str:
        url = f"{self.config.KUBERNETES_API_URL}/apis/{api_version}/namespaces/{namespace}/{plural}"
        if name is not None:
            if name == "":
                # an empty name would address the whole collection
                raise NotFoundError(f"Empty name for {plural} in namespace {namespace}")
            url += f"/{name}"
        return url

    def config_maps_url(self, namespace: str, name: str | None = None) -> str:
        url = f"{self.config.KUBERNETES_API_URL}/api/v1/namespaces/{namespace}/configmaps"
        if name is not None:
            if name == "":
                raise NotFoundError(f"Empty name for configmaps in namespace {namespace}")
            url += f"/{name}"
        return url

    async def _raise_for_status(
        self,
        resp: aiohttp.ClientResponse,
        url: str,
        error_cls: type[RemoteError] = RemoteError,
    ):
        if resp.status < 400:
            return
        message = await resp.text()
        if resp.status == 404:
            raise NotFoundError(f"{url} not found: {message}")
        if resp.status == 409:
            raise ConflictError(resp.status, message)
        raise error_cls(resp.status, message)

    async def _get(self, url: str) -> dict[str, Any]:
        async with self.session.get(url, headers=self._headers, ssl=self._ssl) as resp:
            await self._raise_for_status(resp, url)
            return await resp.json()

    async def _create(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        if self.config.STERILE:
            logger.debug("Sterile mode: not creating %s at %s", body, url)
            return body
        async with self.session.post(
            url, json=body, headers=self._headers, ssl=self._ssl
        ) as resp:
            await self._raise_for_status(resp, url, RemoteCreateError)
            return await resp.json()

    async def _replace(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        if self.config.STERILE:
            logger.debug("Sterile mode: not replacing %s at %s", body, url)
            return body
        async with self.session.put(
            url, json=body, headers=self._headers, ssl=self._ssl
        ) as resp:
            await self._raise_for_status(resp, url)
            return await resp.json()

    async def _delete(self, url: str):
        if self.config.STERILE:
            logger.debug("Sterile mode: not deleting %s", url)
            return
        async with self.session.delete(
            url, headers=self._headers, ssl=self._ssl
        ) as resp:
            await self._raise_for_status(resp, url)

    async def get_version(self) -> dict[str, Any]:
        return await self._get(f"{self.config.KUBERNETES_API_URL}/version")

    async def get_pipeline(self, namespace: str, name: str) -> dict[str, Any]:
        return await self._get(
            self.custom_objects_url(TEKTON_API_VERSION, namespace, "pipelines", name)
        )

    async def create_pipeline_resource(
        self, namespace: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._create(
            self.custom_objects_url(TEKTON_API_VERSION, namespace, "pipelineresources"),
            body,
        )

    async def delete_pipeline_resource(self, namespace: str, name: str):
        await self._delete(
            self.custom_objects_url(
                TEKTON_API_VERSION, namespace, "pipelineresources", name
            )
        )

    async def create_pipeline_run(
        self, namespace: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._create(
            self.custom_objects_url(TEKTON_API_VERSION, namespace, "pipelineruns"),
            body,
        )

    async def list_github_sources(self, namespace: str) -> list[dict[str, Any]]:
        data = await self._get(
            self.custom_objects_url(EVENT_SOURCES_API_VERSION, namespace, "githubsources")
        )
        return data.get("items") or []

    async def create_github_source(
        self, namespace: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._create(
            self.custom_objects_url(EVENT_SOURCES_API_VERSION, namespace, "githubsources"),
            body,
        )

    async def get_config_map(self, namespace: str, name: str) -> dict[str, Any]:
        return await self._get(self.config_maps_url(namespace, name))

    async def create_config_map(
        self, namespace: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._create(self.config_maps_url(namespace), body)

    async def replace_config_map(
        self, namespace: str, name: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._replace(self.config_maps_url(namespace, name), body)
