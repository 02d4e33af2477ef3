class RelayError(Exception):
    """Base class for all errors raised by the pipeline relay."""

    pass


class FormatError(RelayError, ValueError):
    """Raised when a repository URL does not have the expected shape."""

    pass


class NotFoundError(RelayError):
    """Raised when a pipeline template or a registration does not exist."""

    pass


class DecodeError(RelayError):
    """Raised when a webhook payload does not match the expected schema."""

    pass


class RemoteError(RelayError):
    """Raised when the Kubernetes API answers with an unexpected status."""

    def __init__(self, status: int, message: str):
        super().__init__(f"{status}: {message}")
        self.status = status
        self.message = message


class RemoteCreateError(RemoteError):
    """Raised when the Kubernetes API rejects an object creation."""

    pass


class ConflictError(RemoteError):
    """Raised when an update is rejected because the object changed meanwhile."""

    pass
