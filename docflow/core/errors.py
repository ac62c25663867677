"""Exception taxonomy for the document pipeline."""


class DocflowError(Exception):
    """Base class for pipeline errors."""


class PolicyValidationError(DocflowError):
    """A policy or field schema is malformed. Reported immediately, never retried."""

    def __init__(self, message: str, problems: list[str] | None = None):
        super().__init__(message)
        self.problems = problems or []


class LLMUnavailableError(DocflowError):
    """The language-model service is not configured or did not answer."""

    def __init__(self, message: str, provider: str | None = None, model: str | None = None):
        super().__init__(message)
        self.provider = provider
        self.model = model


class NotFoundError(DocflowError):
    """An owner-scoped row does not exist."""
