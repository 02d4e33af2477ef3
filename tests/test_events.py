import json
import os

import pytest
from pydantic import ValidationError

from pipeline_relay.exceptions import DecodeError
from pipeline_relay.github.events import (
    Ignored,
    Malformed,
    Mapped,
    classify,
    decode,
    normalize_event_type,
)
from pipeline_relay.github.models import BuildInformation, PullRequestEvent, PushEvent


def load_sample(filename) -> bytes:
    with open(os.path.join(os.path.dirname(__file__), "samples", filename), "rb") as f:
        return f.read()


def test_push_event_model():
    event = PushEvent.model_validate_json(load_sample("push.json"))

    assert event.repository.name == "Widget"
    assert event.repository.url == "https://github.com/acme/widget"
    assert event.head_commit.id == "abc1234def5678901234567890abcdef12345678"


def test_pull_request_event_model():
    event = PullRequestEvent.model_validate_json(load_sample("pull_request_opened.json"))

    assert event.repository.html_url == "https://github.com/acme/widget"
    assert event.pull_request.head.sha == "0123456789abcdef0123456789abcdef01234567"


def test_build_information_short_commit_id():
    info = BuildInformation.for_commit(
        repo_url="https://github.com/acme/widget",
        commit_id="abc1234def",
        repo_name="Widget",
        timestamp="1551434400",
    )
    assert info.short_commit_id == "abc1234"
    assert info.commit_id.startswith(info.short_commit_id)


def test_build_information_short_commit_too_short():
    with pytest.raises(ValidationError):
        BuildInformation.for_commit(
            repo_url="https://github.com/acme/widget",
            commit_id="abc12",
            repo_name="Widget",
            timestamp="1551434400",
        )


def test_build_information_mismatched_short_id():
    with pytest.raises(ValidationError):
        BuildInformation(
            repo_url="https://github.com/acme/widget",
            short_commit_id="zzzzzzz",
            commit_id="abc1234def",
            repo_name="Widget",
            timestamp="1551434400",
        )


def test_build_information_is_immutable():
    info = BuildInformation.for_commit(
        repo_url="https://github.com/acme/widget",
        commit_id="abc1234def",
        repo_name="Widget",
        timestamp="1551434400",
    )
    with pytest.raises(ValidationError):
        info.commit_id = "0000000000"


@pytest.mark.parametrize(
    "value, expected",
    [
        ("push", "push"),
        ('"push"', "push"),
        (' "pull_request" ', "pull_request"),
        (None, ""),
        ("", ""),
    ],
)
def test_normalize_event_type(value, expected):
    assert normalize_event_type(value) == expected


def test_classify_push():
    result = classify("push", load_sample("push.json"), timestamp="1551434400")

    assert isinstance(result, Mapped)
    assert result.event_type == "push"
    assert result.build_information == BuildInformation(
        repo_url="https://github.com/acme/widget",
        short_commit_id="abc1234",
        commit_id="abc1234def5678901234567890abcdef12345678",
        repo_name="Widget",
        timestamp="1551434400",
    )


def test_classify_quoted_event_type_is_identical():
    body = load_sample("push.json")
    assert classify('"push"', body, timestamp="1") == classify(
        "push", body, timestamp="1"
    )


def test_classify_pull_request_uses_html_url():
    result = classify(
        "pull_request", load_sample("pull_request_opened.json"), timestamp="1"
    )

    assert isinstance(result, Mapped)
    info = result.build_information
    assert info.repo_url == "https://github.com/acme/widget"
    assert info.commit_id == "0123456789abcdef0123456789abcdef01234567"
    assert info.short_commit_id == "0123456"
    assert info.repo_name == "Widget"


def test_classify_sets_timestamp_when_missing():
    result = classify("push", load_sample("push.json"))

    assert isinstance(result, Mapped)
    assert result.build_information.timestamp.isdigit()


@pytest.mark.parametrize("event_type", ["issues", "ping", "", None, "Push"])
def test_classify_unsupported_event_is_ignored(event_type):
    result = classify(event_type, load_sample("push.json"))

    assert isinstance(result, Ignored)
    assert result.reason


@pytest.mark.parametrize(
    "event_type, body",
    [
        ("push", b"not json"),
        ("push", b"{}"),
        ("push", json.dumps({"repository": {"name": "Widget"}}).encode()),
        (
            "push",
            json.dumps(
                {
                    "repository": {"name": "Widget", "url": "https://github.com/a/b"},
                    "head_commit": {"id": "abc"},
                }
            ).encode(),
        ),
        ("pull_request", load_sample("push.json")),
    ],
)
def test_classify_malformed_payload(event_type, body):
    result = classify(event_type, body)

    assert isinstance(result, Malformed)
    assert result.event_type == event_type


def test_decode_raises_decode_error():
    with pytest.raises(DecodeError):
        decode("pull_request", b"[]", "1")
