from typing import Literal

from pydantic_settings import BaseSettings
from sanic.log import logger

SERVICE_ACCOUNT_DIR = "/var/run/secrets/kubernetes.io/serviceaccount"


class Config(BaseSettings):
    PIPELINE_RUN_NAMESPACE: str = "default"
    SERVICE_ACCOUNT: str = "default"
    DOCKER_REGISTRY_LOCATION: str = ""
    DEFAULT_PIPELINE: str = ""
    RUN_APP_LABEL: str = "devops-knative"

    EVENT_TYPE_HEADER: str = "Ce-Github-Event"
    SINK_SERVICE_NAME: str = "extension-knative-eventing-listener"

    KUBERNETES_API_URL: str = "https://kubernetes.default.svc"
    KUBERNETES_TOKEN: str | None = None
    KUBERNETES_TOKEN_PATH: str = f"{SERVICE_ACCOUNT_DIR}/token"
    KUBERNETES_CA_PATH: str | None = f"{SERVICE_ACCOUNT_DIR}/ca.crt"

    REGISTRY_WRITE_ATTEMPTS: int = 3

    OVERRIDE_LOGGING: Literal[
        "CRITICAL",
        "FATAL",
        "ERROR",
        "WARNING",
        "WARN",
        "INFO",
        "DEBUG",
        "NOTSET",
    ] = "INFO"

    PORT: int = 8080

    STERILE: bool = False

    def kubernetes_token(self) -> str | None:
        """Return the bearer token for the API server, falling back to the
        mounted service account token."""
        if self.KUBERNETES_TOKEN:
            return self.KUBERNETES_TOKEN
        try:
            with open(self.KUBERNETES_TOKEN_PATH) as f:
                return f.read().strip()
        except OSError as e:
            logger.warning(
                "Could not read service account token from %s: %s",
                self.KUBERNETES_TOKEN_PATH,
                e,
            )
            return None

    def print_config(self):
        """Print configuration values with sensitive attributes masked"""
        sensitive_attrs = {
            "KUBERNETES_TOKEN",
        }

        logger.info("=== Pipeline Relay Configuration ===")
        for field_name, field_value in self.model_dump().items():
            if field_name in sensitive_attrs and field_value is not None:
                logger.info(f"{field_name}: ***")
            else:
                logger.info(f"{field_name}: {field_value}")
        logger.info("====================================")
