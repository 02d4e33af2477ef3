"""
Classification of inbound webhook deliveries.

A delivery is turned into one of three outcomes:

- ``Mapped``: a supported event kind whose payload decoded into a
  ``BuildInformation``
- ``Ignored``: an event kind this relay does not build for
- ``Malformed``: a supported event kind whose payload did not decode

The sender is acknowledged the same way in all three cases, the outcome only
drives what happens internally.
"""

import time
from typing import Callable, Literal, Union

import pydantic
from pydantic import BaseModel
from sanic.log import logger

from pipeline_relay.exceptions import DecodeError
from pipeline_relay.github.models import (
    BuildInformation,
    PullRequestEvent,
    PushEvent,
)


class Mapped(BaseModel):
    kind: Literal["mapped"] = "mapped"
    event_type: str
    build_information: BuildInformation


class Ignored(BaseModel):
    kind: Literal["ignored"] = "ignored"
    event_type: str
    reason: str


class Malformed(BaseModel):
    kind: Literal["malformed"] = "malformed"
    event_type: str
    reason: str


Classification = Union[Mapped, Ignored, Malformed]


def normalize_event_type(value: str | None) -> str:
    if value is None:
        return ""
    return value.strip().strip('"')


def timestamp_now() -> str:
    return str(int(time.time()))


def map_push(body: bytes | str, timestamp: str) -> BuildInformation:
    data = PushEvent.model_validate_json(body)
    return BuildInformation.for_commit(
        repo_url=data.repository.url,
        commit_id=data.head_commit.id,
        repo_name=data.repository.name,
        timestamp=timestamp,
    )


def map_pull_request(body: bytes | str, timestamp: str) -> BuildInformation:
    data = PullRequestEvent.model_validate_json(body)
    return BuildInformation.for_commit(
        repo_url=data.repository.html_url,
        commit_id=data.pull_request.head.sha,
        repo_name=data.repository.name,
        timestamp=timestamp,
    )


MAPPERS: dict[str, Callable[[bytes | str, str], BuildInformation]] = {
    "push": map_push,
    "pull_request": map_pull_request,
}


def decode(event_type: str, body: bytes | str, timestamp: str) -> BuildInformation:
    """Decode the payload of a supported event kind.

    Raises:
        KeyError: If the event kind is not supported
        DecodeError: If the payload does not match the event kind's schema
    """
    mapper = MAPPERS[event_type]
    try:
        return mapper(body, timestamp)
    except pydantic.ValidationError as e:
        raise DecodeError(
            f"{event_type} payload does not match the expected schema: "
            f"{e.error_count()} error(s), first: {e.errors()[0]['msg']}"
        ) from e


def classify(
    event_type: str | None, body: bytes | str, timestamp: str | None = None
) -> Classification:
    event_type = normalize_event_type(event_type)

    if event_type not in MAPPERS:
        if event_type == "":
            reason = "event type header is missing or empty"
        else:
            reason = f"event {event_type!r} is neither a push nor a pull_request"
        logger.debug("Ignoring delivery: %s", reason)
        return Ignored(event_type=event_type, reason=reason)

    logger.debug("Handling a %s event", event_type)

    try:
        build_information = decode(
            event_type, body, timestamp if timestamp is not None else timestamp_now()
        )
    except DecodeError as e:
        logger.error("An error occurred decoding webhook data: %s", e)
        return Malformed(event_type=event_type, reason=str(e))

    logger.debug(
        "Build information for repository %s:%s",
        build_information.repo_url,
        build_information.short_commit_id,
    )
    return Mapped(event_type=event_type, build_information=build_information)
