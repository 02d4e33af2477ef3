"""
Registry binding a repository URL to its build configuration.

Two sources of truth are kept in a namespace:

- the ``GitHubSource`` custom resources, which are authoritative for which
  repositories are registered and carry only what the event source needs
- the ``githubsource`` ConfigMap, which holds the full registration records
  (pipeline, secrets, ...) as one JSON document keyed by registration name

Lookups reconcile the two before answering: custom resources that have no
record in the ConfigMap get a minimal one synthesized from their spec.
"""

import asyncio
import base64
import binascii
import collections
import json
from typing import Any, Callable

import pydantic
from pydantic import BaseModel, ConfigDict, Field, model_validator
from sanic.log import logger

from pipeline_relay.cluster import EVENT_SOURCES_API_VERSION, Cluster
from pipeline_relay.config import Config
from pipeline_relay.exceptions import (
    ConflictError,
    FormatError,
    NotFoundError,
    RelayError,
)
from pipeline_relay import metrics

CONFIG_MAP_NAME = "githubsource"
CONFIG_MAP_KEY = "GitHubSource"
EVENT_TYPES = ["push", "pull_request"]
API_PATH_SUFFIX = "api/v3/"

# Alternative spellings accepted in registration requests, after lowercasing
_KEY_ALIASES = {
    "accesstokenref": "accesstoken",
    "pipelinetemplatename": "pipeline",
}


class WebhookRegistration(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = ""
    namespace: str = ""
    service_account: str = Field("", alias="serviceaccount")
    git_repository_url: str = Field("", alias="gitrepositoryurl")
    access_token_ref: str = Field("", alias="accesstoken")
    pipeline: str = ""
    registry_secret: str = Field("", alias="registrysecret")
    helm_secret: str = Field("", alias="helmsecret")
    repository_secret_name: str = Field("", alias="repositorysecretname")

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls, data: Any) -> Any:
        # JSON keys are matched case-insensitively, null means unset
        if not isinstance(data, dict):
            return data
        normalized = {}
        for key, value in data.items():
            if value is None:
                continue
            if isinstance(key, str) and key not in cls.model_fields:
                key = key.lower()
                key = _KEY_ALIASES.get(key, key)
            normalized[key] = value
        return normalized

    def dump(self) -> dict[str, str]:
        """Serialize with the stored field names, leaving out empty optionals."""
        optional = {
            "service_account",
            "registry_secret",
            "helm_secret",
            "repository_secret_name",
        }
        return self.model_dump(
            by_alias=True,
            exclude={field for field in optional if not getattr(self, field)},
        )


def split_repository_url(url: str) -> tuple[str, str]:
    """
    Derive the event source coordinates from a repository URL.

    Args:
        url: A URL like https://github.com/acme/widget.git

    Returns:
        A tuple (api_url, owner_and_repository), e.g.
        ("https://github.com/api/v3/", "acme/widget")

    Raises:
        FormatError: If the URL has fewer than three path separators
    """
    pieces = url.split("/")
    if len(pieces) < 4:
        raise FormatError(f"GitRepositoryURL format error: {url!r}")
    owner, repo = pieces[-2], pieces[-1]
    owner_and_repository = f"{owner}/{repo.removesuffix('.git')}"
    api_url = url.removesuffix(f"{owner}/{repo}") + API_PATH_SUFFIX
    return api_url, owner_and_repository


def repository_url_from_source(source: dict[str, Any]) -> str:
    spec = source.get("spec") or {}
    api_url = spec.get("githubAPIURL", "")
    return api_url.removesuffix(API_PATH_SUFFIX) + spec.get("ownerAndRepository", "")


def access_token_ref_from_source(source: dict[str, Any]) -> str:
    spec = source.get("spec") or {}
    secret_key_ref = (spec.get("accessToken") or {}).get("secretKeyRef") or {}
    return secret_key_ref.get("name", "")


def github_source_body(
    registration: WebhookRegistration, sink_service_name: str
) -> dict[str, Any]:
    api_url, owner_and_repository = split_repository_url(
        registration.git_repository_url
    )
    return {
        "apiVersion": EVENT_SOURCES_API_VERSION,
        "kind": "GitHubSource",
        "metadata": {"name": registration.name},
        "spec": {
            "ownerAndRepository": owner_and_repository,
            "eventTypes": list(EVENT_TYPES),
            "githubAPIURL": api_url,
            "accessToken": {
                "secretKeyRef": {
                    "name": registration.access_token_ref,
                    "key": "accessToken",
                }
            },
            "secretToken": {
                "secretKeyRef": {
                    "name": registration.access_token_ref,
                    "key": "secretToken",
                }
            },
            "sink": {
                "apiVersion": "serving.knative.dev/v1alpha1",
                "kind": "Service",
                "name": sink_service_name,
            },
        },
    }


def reconcile(
    live_sources: list[dict[str, Any]],
    stored: dict[str, WebhookRegistration],
) -> tuple[dict[str, WebhookRegistration], bool]:
    """Merge the live custom resources into the stored registrations.

    Stored records are kept as they are, live resources without a record get a
    minimal one. Returns the merged mapping and whether anything was added.
    """
    reconciled = dict(stored)
    changed = False
    for source in live_sources:
        metadata = source.get("metadata") or {}
        name = metadata.get("name", "")
        if name in reconciled:
            continue
        logger.debug("Synthesizing registration for GitHubSource %s", name)
        reconciled[name] = WebhookRegistration(
            name=name,
            namespace=metadata.get("namespace", ""),
            git_repository_url=repository_url_from_source(source),
            access_token_ref=access_token_ref_from_source(source),
        )
        changed = True
    return reconciled, changed


def encode_store(registrations: dict[str, WebhookRegistration]) -> str:
    raw = json.dumps(
        {name: registration.dump() for name, registration in registrations.items()},
        sort_keys=True,
        separators=(",", ":"),
    )
    return base64.b64encode(raw.encode()).decode("ascii")


def stored_encoding(config_map: dict[str, Any] | None) -> str | None:
    if config_map is None:
        return None
    return (config_map.get("binaryData") or {}).get(CONFIG_MAP_KEY)


def decode_store(config_map: dict[str, Any]) -> dict[str, WebhookRegistration]:
    encoded = stored_encoding(config_map)
    if encoded is None:
        return {}
    try:
        raw = json.loads(base64.b64decode(encoded))
        return {
            name: WebhookRegistration.model_validate(entry)
            for name, entry in raw.items()
        }
    except (binascii.Error, ValueError, AttributeError) as e:
        # ValueError covers both JSONDecodeError and pydantic's ValidationError
        logger.error("Could not decode stored registrations: %s", e)
        return {}


class SourceRegistry:
    def __init__(self, cluster: Cluster, config: Config):
        self.cluster = cluster
        self.config = config
        self._locks: collections.defaultdict[str, asyncio.Lock] = (
            collections.defaultdict(asyncio.Lock)
        )

    async def _read(
        self, namespace: str
    ) -> tuple[dict[str, Any] | None, dict[str, WebhookRegistration]]:
        try:
            config_map = await self.cluster.get_config_map(namespace, CONFIG_MAP_NAME)
        except NotFoundError:
            logger.debug("No %s ConfigMap in namespace %s", CONFIG_MAP_NAME, namespace)
            return None, {}
        return config_map, decode_store(config_map)

    async def _write(
        self,
        namespace: str,
        config_map: dict[str, Any] | None,
        registrations: dict[str, WebhookRegistration],
    ):
        encoded = encode_store(registrations)
        if config_map is None:
            logger.debug("Creating ConfigMap %s in %s", CONFIG_MAP_NAME, namespace)
            await self.cluster.create_config_map(
                namespace,
                {
                    "apiVersion": "v1",
                    "kind": "ConfigMap",
                    "metadata": {"name": CONFIG_MAP_NAME, "namespace": namespace},
                    "binaryData": {CONFIG_MAP_KEY: encoded},
                },
            )
            return

        # metadata.resourceVersion travels along, so a concurrent writer makes
        # the API server answer 409
        body = dict(config_map)
        body["binaryData"] = {**(config_map.get("binaryData") or {}), CONFIG_MAP_KEY: encoded}
        logger.debug("Updating ConfigMap %s in %s", CONFIG_MAP_NAME, namespace)
        await self.cluster.replace_config_map(namespace, CONFIG_MAP_NAME, body)

    async def _update(
        self,
        namespace: str,
        mutate: Callable[
            [dict[str, WebhookRegistration]],
            tuple[dict[str, WebhookRegistration], bool],
        ],
    ) -> dict[str, WebhookRegistration]:
        attempts = max(1, self.config.REGISTRY_WRITE_ATTEMPTS)
        attempt = 0
        async with self._locks[namespace]:
            while True:
                attempt += 1
                config_map, registrations = await self._read(namespace)
                updated, changed = mutate(registrations)
                if not changed and stored_encoding(config_map) == encode_store(updated):
                    return updated
                try:
                    await self._write(namespace, config_map, updated)
                    return updated
                except ConflictError:
                    if attempt == attempts:
                        raise
                    logger.warning(
                        "ConfigMap %s in %s changed while updating, retrying (%d/%d)",
                        CONFIG_MAP_NAME,
                        namespace,
                        attempt,
                        attempts,
                    )

    async def register(self, registration: WebhookRegistration):
        """Create the event source for a repository and store its registration.

        Raises:
            FormatError: If the repository URL has too few segments
            RemoteError: If the Kubernetes API rejects one of the writes
        """
        namespace = registration.namespace
        logger.debug("Registering %s in namespace %s", registration.name, namespace)

        body = github_source_body(registration, self.config.SINK_SERVICE_NAME)
        logger.debug(
            "GitHubSource API url: %s, owner/repo: %s",
            body["spec"]["githubAPIURL"],
            body["spec"]["ownerAndRepository"],
        )
        await self.cluster.create_github_source(namespace, body)

        def upsert(stored: dict[str, WebhookRegistration]):
            return {**stored, registration.name: registration}, True

        await self._update(namespace, upsert)
        metrics.registrations_total.labels(namespace).inc()
        logger.info("Registered %s for %s", registration.name, registration.git_repository_url)

    async def reconciled(self, namespace: str) -> dict[str, WebhookRegistration]:
        """Reconcile the stored registrations with the live GitHubSources.

        The merged map is written back whenever its canonical encoding differs
        from what is stored, so a missing, undecodable or differently
        formatted store is rewritten, while an up to date one is left alone.
        """
        live_sources = await self.cluster.list_github_sources(namespace)
        with metrics.registry_reconciliation_duration_seconds.time():
            return await self._update(
                namespace, lambda stored: reconcile(live_sources, stored)
            )

    async def lookup_by_repository_url(
        self, namespace: str, url: str
    ) -> tuple[str, str, str]:
        """Find the build configuration registered for a repository URL.

        Returns:
            A tuple (registry_secret, helm_secret, pipeline). All three are
            empty strings when no registration matches.
        """
        logger.debug("Looking up registration for %s in %s", url, namespace)
        try:
            registrations = await self.reconciled(namespace)
        except RelayError as e:
            logger.error("Could not reconcile registrations in %s: %s", namespace, e)
            return "", "", ""

        for registration in registrations.values():
            if registration.git_repository_url == url:
                return (
                    registration.registry_secret,
                    registration.helm_secret,
                    registration.pipeline,
                )

        logger.debug("No registration for %s in %s", url, namespace)
        return "", "", ""

    async def get(self, name: str, namespace: str) -> WebhookRegistration:
        _, registrations = await self._read(namespace)
        try:
            return registrations[name]
        except KeyError:
            raise NotFoundError(f"Registration {name} not found in {namespace}")

    async def list_registrations(self, namespace: str) -> list[WebhookRegistration]:
        _, registrations = await self._read(namespace)
        return [registrations[name] for name in sorted(registrations)]


def parse_registration(body: Any) -> WebhookRegistration:
    """Validate a registration request body.

    Raises:
        FormatError: If the body is not a registration object, the namespace
            is missing or the repository URL has too few segments
    """
    try:
        registration = WebhookRegistration.model_validate(body)
    except pydantic.ValidationError as e:
        raise FormatError(f"Invalid registration: {e}") from e
    if registration.namespace == "":
        raise FormatError("namespace is required, but none was given")
    split_repository_url(registration.git_repository_url)
    return registration
