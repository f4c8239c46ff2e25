# agenda_agents/errors.py
from __future__ import annotations


class AgendaError(Exception):
    pass


class SourceUnavailable(AgendaError):
    """A collection could not be read; callers degrade to zero / skip."""

    def __init__(self, source: str, cause: BaseException | None = None):
        self.source = source
        self.cause = cause
        msg = f"source {source} unavailable"
        if cause is not None:
            msg += f": {type(cause).__name__}: {cause}"
        super().__init__(msg)


class AuthenticationMissing(AgendaError):
    pass


class DeliveryRejected(AgendaError):
    """The notification center refused to enqueue a delivery."""

    def __init__(self, identifier: str, reason: str = ""):
        self.identifier = identifier
        self.reason = reason
        super().__init__(f"delivery {identifier} rejected" + (f": {reason}" if reason else ""))
