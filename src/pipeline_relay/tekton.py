import contextlib
import secrets
import time
from typing import Any

import aiohttp
from sanic.log import logger

from pipeline_relay import giturl, metrics
from pipeline_relay.cluster import TEKTON_API_VERSION, Cluster
from pipeline_relay.config import Config
from pipeline_relay.exceptions import NotFoundError, RelayError
from pipeline_relay.github.models import BuildInformation
from pipeline_relay.registry import SourceRegistry

GIT_SERVER_LABEL = "gitServer"
GIT_ORG_LABEL = "gitOrg"
GIT_REPO_LABEL = "gitRepo"

PIPELINE_RUN_TIMEOUT = "1h0m0s"
TRIGGER_TYPE_MANUAL = "manual"


def name_token() -> str:
    """Unix seconds plus a random suffix, unique across events in one second."""
    return f"{int(time.time())}-{secrets.token_hex(2)}"


def param(name: str, value: str) -> dict[str, str]:
    return {"name": name, "value": value}


def image_name(registry_location: str, repo_name: str) -> str:
    return f"{registry_location}/{repo_name.lower()}"


def git_labels(repo_url: str) -> dict[str, str]:
    if repo_url == "":
        return {GIT_SERVER_LABEL: "", GIT_ORG_LABEL: "", GIT_REPO_LABEL: ""}
    server, org, repo = giturl.decompose(repo_url)
    return {GIT_SERVER_LABEL: server, GIT_ORG_LABEL: org, GIT_REPO_LABEL: repo}


def pipeline_resource_body(
    name: str, namespace: str, resource_type: str, params: list[dict[str, str]]
) -> dict[str, Any]:
    return {
        "apiVersion": TEKTON_API_VERSION,
        "kind": "PipelineResource",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"type": resource_type, "params": params},
    }


def run_params(
    build_information: BuildInformation,
    registry_location: str,
    namespace: str,
    registry_secret: str = "",
    helm_secret: str = "",
) -> list[dict[str, str]]:
    repository_name = build_information.repo_name.lower()
    params = [
        param("image-tag", build_information.short_commit_id),
        param("image-name", image_name(registry_location, build_information.repo_name)),
        param("release-name", f"{repository_name}-{build_information.short_commit_id}"),
        param("repository-name", repository_name),
        param("target-namespace", namespace),
    ]
    if registry_secret != "":
        params.append(param("registry-secret", registry_secret))
    if helm_secret != "":
        params.append(param("helm-secret", helm_secret))
    return params


def pipeline_run_body(
    name: str,
    namespace: str,
    service_account: str,
    pipeline_name: str,
    labels: dict[str, str],
    image_resource_name: str,
    git_resource_name: str,
    params: list[dict[str, str]],
) -> dict[str, Any]:
    return {
        "apiVersion": TEKTON_API_VERSION,
        "kind": "PipelineRun",
        "metadata": {"name": name, "namespace": namespace, "labels": labels},
        "spec": {
            "pipelineRef": {"name": pipeline_name},
            "trigger": {"type": TRIGGER_TYPE_MANUAL},
            "serviceAccount": service_account,
            "timeout": PIPELINE_RUN_TIMEOUT,
            "resources": [
                {"name": "docker-image", "resourceRef": {"name": image_resource_name}},
                {"name": "git-source", "resourceRef": {"name": git_resource_name}},
            ],
            "params": params,
        },
    }


class RunBuilder:
    """Creates the Tekton objects of one pipeline execution for a commit."""

    def __init__(self, cluster: Cluster, registry: SourceRegistry, config: Config):
        self.cluster = cluster
        self.registry = registry
        self.config = config

    @property
    def namespace(self) -> str:
        return self.config.PIPELINE_RUN_NAMESPACE or "default"

    @property
    def service_account(self) -> str:
        return self.config.SERVICE_ACCOUNT or "default"

    async def _delete_resource(self, namespace: str, name: str):
        logger.debug("Removing PipelineResource %s after a failed run", name)
        try:
            await self.cluster.delete_pipeline_resource(namespace, name)
        except (RelayError, aiohttp.ClientError) as e:
            logger.error("Could not remove PipelineResource %s: %s", name, e)
            metrics.compensations_total.labels(namespace, "failed").inc()
        else:
            metrics.compensations_total.labels(namespace, "deleted").inc()

    async def create_pipeline_run(
        self, build_information: BuildInformation
    ) -> dict[str, Any]:
        """
        Create the image and git PipelineResources and the PipelineRun for a commit.

        Objects created before a failing step are deleted again before the
        error propagates.

        Raises:
            NotFoundError: If the pipeline template does not exist
            FormatError: If the repository URL cannot be split into labels
            RemoteError: If the Kubernetes API rejects one of the objects
        """
        namespace = self.namespace
        service_account = self.service_account
        logger.debug(
            "PipelineRuns will be created in the namespace %s with the service account %s",
            namespace,
            service_account,
        )

        with metrics.track_pipeline_run(namespace):
            registry_secret, helm_secret, pipeline_name = (
                await self.registry.lookup_by_repository_url(
                    namespace, build_information.repo_url
                )
            )
            if pipeline_name == "":
                pipeline_name = self.config.DEFAULT_PIPELINE
            if pipeline_name == "":
                logger.error(
                    "No pipeline registered for %s and no default pipeline configured",
                    build_information.repo_url,
                )
                raise NotFoundError(
                    f"No pipeline template for {build_information.repo_url}"
                )

            try:
                pipeline = await self.cluster.get_pipeline(namespace, pipeline_name)
            except NotFoundError:
                logger.error(
                    "Could not find the pipeline template %r in namespace %s",
                    pipeline_name,
                    namespace,
                )
                raise
            logger.debug("Found the pipeline template %s", pipeline_name)

            labels = {
                "app": self.config.RUN_APP_LABEL,
                **git_labels(build_information.repo_url),
            }

            token = name_token()
            image_resource_name = f"docker-image-{token}"
            git_resource_name = f"git-source-{token}"
            pipeline_run_name = f"devops-pipeline-run-{token}"

            registry_location = self.config.DOCKER_REGISTRY_LOCATION
            image_url = (
                f"{image_name(registry_location, build_information.repo_name)}"
                f":{build_information.short_commit_id}"
            )
            logger.debug("Pushing the image to %s", image_url)

            async with contextlib.AsyncExitStack() as compensations:
                await self.cluster.create_pipeline_resource(
                    namespace,
                    pipeline_resource_body(
                        image_resource_name, namespace, "image", [param("url", image_url)]
                    ),
                )
                compensations.push_async_callback(
                    self._delete_resource, namespace, image_resource_name
                )
                logger.info("Created pipeline image resource %s", image_resource_name)

                await self.cluster.create_pipeline_resource(
                    namespace,
                    pipeline_resource_body(
                        git_resource_name,
                        namespace,
                        "git",
                        [
                            param("revision", build_information.commit_id),
                            param("url", build_information.repo_url),
                        ],
                    ),
                )
                compensations.push_async_callback(
                    self._delete_resource, namespace, git_resource_name
                )
                logger.info("Created pipeline git resource %s", git_resource_name)

                body = pipeline_run_body(
                    pipeline_run_name,
                    namespace,
                    service_account,
                    (pipeline.get("metadata") or {}).get("name", pipeline_name),
                    labels,
                    image_resource_name,
                    git_resource_name,
                    run_params(
                        build_information,
                        registry_location,
                        namespace,
                        registry_secret=registry_secret,
                        helm_secret=helm_secret,
                    ),
                )
                logger.debug(
                    "Creating a new PipelineRun named %s in the namespace %s",
                    pipeline_run_name,
                    namespace,
                )
                pipeline_run = await self.cluster.create_pipeline_run(namespace, body)
                compensations.pop_all()

        metrics.pipeline_runs_created_total.labels(namespace).inc()
        logger.info(
            "PipelineRun %s created for %s at %s",
            pipeline_run_name,
            build_information.repo_url,
            build_information.short_commit_id,
        )
        return pipeline_run
