from pipeline_relay.exceptions import FormatError

_SCHEMES = ("https://", "http://")


def strip_scheme(url: str) -> str:
    for scheme in _SCHEMES:
        if url[: len(scheme)].lower() == scheme:
            return url[len(scheme) :]
    return url


def decompose(url: str) -> tuple[str, str, str]:
    """
    Split a repository URL into its server, organization and repository parts.

    Args:
        url: A URL like https://github.com/tektoncd/pipeline

    Returns:
        A tuple (server, org, repo), e.g. ("github.com", "tektoncd", "pipeline").
        The org keeps any nested groups, e.g. "group/subgroup".

    Raises:
        FormatError: If fewer than two path separators remain after the scheme
    """
    stripped = strip_scheme(url)

    if stripped.count("/") < 2:
        raise FormatError(f"Url {url!r} has fewer than two path separators")

    if stripped.endswith("/"):
        stripped = stripped[:-1]

    first = stripped.index("/")
    last = stripped.rindex("/")
    return stripped[:first], stripped[first + 1 : last], stripped[last + 1 :]
