"""Error taxonomy shared by the staging, review and publish layers.

Every error carries two renderings: ``str(exc)`` is the raw detail shown to
admins (CLI, admin routes, MCP tools) and ``customer_message`` is the generic
text the customer-facing routes return instead.
"""

GENERIC_CUSTOMER_MESSAGE = (
    "We couldn't complete that right now. "
    "Please try again or contact support if the issue persists."
)


class UpServerError(Exception):
    """Base class for all expected UpServer failures."""

    customer_message = GENERIC_CUSTOMER_MESSAGE

    @property
    def detail(self) -> str:
        return str(self)


# ── Configuration ─────────────────────────────────────────────────────────────


class ConfigurationError(UpServerError):
    """Misconfiguration: fatal to the attempted operation, never retried."""


class CustomerNotFound(ConfigurationError):
    customer_message = "Customer not found."


class SiteNotFound(ConfigurationError):
    customer_message = "Your website files could not be found. Please contact support."


class PortConfigError(ConfigurationError, ValueError):
    """Fixed staging port and port range are inconsistent."""


# ── Staging ───────────────────────────────────────────────────────────────────


class StagingError(UpServerError):
    """Failure while starting or stopping a preview server."""


class PortInUse(StagingError):
    def __init__(self, port: int):
        super().__init__(f"Configured port {port} is already in use")
        self.port = port


class NoFreePorts(StagingError):
    def __init__(self, start: int, end: int):
        super().__init__(f"No free ports available in range {start}-{end}")


class StartInProgress(StagingError):
    customer_message = "Your preview server is already starting. Please wait a moment."

    def __init__(self, customer_id: str):
        super().__init__(f"A start is already in progress for customer {customer_id}")


class _TailedStagingError(StagingError):
    """Staging failure that carries captured process output."""

    def __init__(self, message: str, tail: str = ""):
        full = f"{message}\n{tail}" if tail else message
        super().__init__(full)
        self.tail = tail


class DependencyInstallFailed(_TailedStagingError):
    pass


class SpawnFailed(_TailedStagingError):
    pass


class DevServerNotReady(_TailedStagingError):
    pass


# ── Review queue ──────────────────────────────────────────────────────────────


class ReviewError(UpServerError):
    pass


class ReviewNotFound(ReviewError):
    customer_message = "Review request not found."


class InvalidStatusTransition(ReviewError):
    customer_message = "This request can't be updated in its current state."

    def __init__(self, review_id: str, current: str, target: str):
        super().__init__(
            f"Review {review_id}: cannot move from '{current}' to '{target}'"
        )
        self.current = current
        self.target = target


# ── Publish / rollback ────────────────────────────────────────────────────────


class PublishError(UpServerError):
    pass


class RollbackBlockedByLocalChanges(PublishError):
    customer_message = (
        "Rollback is blocked because there are unpublished local changes. "
        "Publish or clear local changes first."
    )

    def __init__(self):
        super().__init__(self.customer_message)


class InvalidCommit(PublishError, ValueError):
    customer_message = "That version could not be found."


# ── Chat ──────────────────────────────────────────────────────────────────────


class SessionNotFound(UpServerError):
    customer_message = "Chat session not found."
