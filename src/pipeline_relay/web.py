import asyncio

from sanic import Sanic, response
import aiohttp
from aiolimiter import AsyncLimiter
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sanic.log import logger

from pipeline_relay import metrics
from pipeline_relay.cluster import Cluster
from pipeline_relay.config import Config
from pipeline_relay.exceptions import (
    FormatError,
    NotFoundError,
    RelayError,
    RemoteError,
)
from pipeline_relay.github.events import (
    MAPPERS,
    Classification,
    Mapped,
    classify,
    normalize_event_type,
)
from pipeline_relay.registry import SourceRegistry, parse_registration
from pipeline_relay.tekton import RunBuilder


def attach_cluster(app: Sanic, cluster: Cluster):
    app.ctx.cluster = cluster
    app.ctx.registry = SourceRegistry(cluster, app.ctx.config)
    app.ctx.run_builder = RunBuilder(cluster, app.ctx.registry, app.ctx.config)


async def handle_webhook(request, *, app: Sanic) -> Classification:
    config: Config = app.ctx.config
    event_type = normalize_event_type(request.headers.get(config.EVENT_TYPE_HEADER))
    event_label = event_type if event_type in MAPPERS else "other"
    metrics.webhooks_received_total.labels(event_label).inc()

    result = classify(event_type, request.body)
    metrics.webhook_classifications_total.labels(event_label, result.kind).inc()

    if not isinstance(result, Mapped):
        logger.info("No action taken for %r: %s", event_type, result.reason)
        return result

    try:
        await app.ctx.run_builder.create_pipeline_run(result.build_information)
    except (RelayError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        # ValueError covers undecodable JSON in an API response
        logger.exception(
            "Could not create a PipelineRun for %s: %s",
            result.build_information.repo_url,
            e,
        )
        metrics.webhook_processing_errors_total.labels(
            event_label, type(e).__name__
        ).inc()
    return result


def create_app(config: Config | None = None, cluster: Cluster | None = None):
    if config is None:
        config = Config()

    app = Sanic("pipeline-relay")
    app.update_config(config.model_dump())
    app.ctx.config = config
    logger.setLevel(config.OVERRIDE_LOGGING)

    if cluster is not None:
        attach_cluster(app, cluster)

    limiter = AsyncLimiter(10)

    @app.listener("before_server_start")
    async def init(app, loop):
        config.print_config()
        if getattr(app.ctx, "cluster", None) is None:
            logger.debug("Creating aiohttp session")
            app.ctx.aiohttp_session = aiohttp.ClientSession()
            attach_cluster(app, Cluster(app.ctx.aiohttp_session, config))

    @app.listener("after_server_stop")
    async def close(app, loop):
        session = getattr(app.ctx, "aiohttp_session", None)
        if session is not None:
            logger.debug("Closing aiohttp session")
            await session.close()

    @app.route("/liveness", strict_slashes=False)
    async def liveness(request):
        return response.empty()

    @app.route("/readiness", strict_slashes=False)
    async def readiness(request):
        if not limiter.has_capacity():
            return response.text("Rate limited", status=429)
        await limiter.acquire()

        try:
            await app.ctx.cluster.get_version()
        except (RelayError, aiohttp.ClientError) as e:
            logger.error("Kubernetes API is not reachable: %s", e)
            return response.text("Kubernetes API: not ok", status=503)
        return response.empty()

    @app.route("/metrics")
    async def prometheus_metrics(request):
        return response.raw(generate_latest(), content_type=CONTENT_TYPE_LATEST)

    @app.route("/", methods=["POST"])
    async def listener(request):
        logger.debug("Webhook received on listener endpoint")

        app.add_task(handle_webhook(request, app=app))

        return response.empty(200)

    @app.route("/webhook", methods=["POST"], strict_slashes=False)
    async def register(request):
        logger.debug("Registration received")
        try:
            registration = parse_registration(request.json)
            await app.ctx.registry.register(registration)
        except FormatError as e:
            logger.error("Rejected registration: %s", e)
            return response.text(str(e), status=400)
        except RemoteError as e:
            logger.error("Could not register: %s", e)
            return response.text(str(e), status=400)
        return response.empty()

    @app.route("/webhook/<namespace>", methods=["GET"], strict_slashes=False)
    async def list_registrations(request, namespace: str):
        try:
            registrations = await app.ctx.registry.list_registrations(namespace)
        except RemoteError as e:
            logger.error("Could not read registrations in %s: %s", namespace, e)
            return response.text(str(e), status=502)
        return response.json([registration.dump() for registration in registrations])

    @app.route("/webhook/<namespace>/<name>", methods=["GET"], strict_slashes=False)
    async def get_registration(request, namespace: str, name: str):
        try:
            registration = await app.ctx.registry.get(name, namespace)
        except NotFoundError as e:
            return response.text(str(e), status=404)
        except RemoteError as e:
            logger.error("Could not read registrations in %s: %s", namespace, e)
            return response.text(str(e), status=502)
        return response.json(registration.dump())

    return app


def main():
    config = Config()
    app = create_app(config)
    app.run(host="0.0.0.0", port=config.PORT, single_process=True)
