"""Error taxonomy shared by the engine, the web API and the CLI."""


class PipelineError(Exception):
    """Base class for errors surfaced through the response envelope."""

    status_code = 500


class ValidationError(PipelineError):
    """Malformed input, rejected before any side effect."""

    status_code = 400


class NotFoundError(PipelineError):
    """A file that must exist for the operation is missing."""

    status_code = 404


class LockedError(PipelineError):
    """The backlog mutex is held by another process."""

    status_code = 423


class StoreUnavailable(Exception):
    """The structured backend could not be opened or probed."""
