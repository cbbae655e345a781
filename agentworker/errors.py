"""Error taxonomy shared by sessions, the context layer, daemons and clients.

Operations raise one of these; the daemon request handler is the only place
that turns them into ``{"success": false, "error": ...}`` responses.
"""


class AgentWorkerError(Exception):
    """Base class for all agent-worker failures."""


class NotFoundError(AgentWorkerError):
    """A tool, approval, session or agent could not be found by id or name."""


class AlreadyResolvedError(AgentWorkerError):
    """An approval was approved or denied a second time."""


class InvalidArgumentError(AgentWorkerError, ValueError):
    """Malformed model id, invalid workflow/tag name or missing request field."""


class UnavailableError(AgentWorkerError):
    """No daemon is running, or its socket refused the connection."""


class UpstreamFailureError(AgentWorkerError):
    """The model-invocation capability failed. Not retried at this layer."""
