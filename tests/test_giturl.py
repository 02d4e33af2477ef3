import pytest

from pipeline_relay.exceptions import FormatError
from pipeline_relay.giturl import decompose, strip_scheme


@pytest.mark.parametrize(
    "url",
    [
        "https://github.com/tektoncd/pipeline",
        "https://github.com/tektoncd/pipeline/",
        "http://github.com/tektoncd/pipeline",
        "HTTPS://github.com/tektoncd/pipeline",
        "Http://github.com/tektoncd/pipeline/",
    ],
)
def test_decompose(url):
    assert decompose(url) == ("github.com", "tektoncd", "pipeline")


def test_decompose_nested_org():
    """Everything between the server and the repository is the org"""
    assert decompose("https://gitlab.example.com/group/subgroup/project") == (
        "gitlab.example.com",
        "group/subgroup",
        "project",
    )


def test_decompose_without_scheme():
    assert decompose("github.example.com/acme/widget") == (
        "github.example.com",
        "acme",
        "widget",
    )


def test_decompose_keeps_case():
    assert decompose("https://GitHub.com/Acme/Widget") == ("GitHub.com", "Acme", "Widget")


@pytest.mark.parametrize(
    "url",
    [
        "https://onlyoneslash",
        "https://github.com/acme",
        "http://",
        "",
    ],
)
def test_decompose_too_few_separators(url):
    with pytest.raises(FormatError):
        decompose(url)


def test_format_error_is_value_error():
    with pytest.raises(ValueError):
        decompose("https://github.com")


def test_strip_scheme():
    assert strip_scheme("https://github.com") == "github.com"
    assert strip_scheme("HTTP://github.com") == "github.com"
    assert strip_scheme("ssh://github.com") == "ssh://github.com"
