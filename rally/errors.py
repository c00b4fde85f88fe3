"""Structural errors surfaced to callers of the session operations.

Per-provider failures never use these: they end up inside the provider's
own terminal ProviderResponse.
"""


class RallyError(Exception):
    """Base for errors that reject a session operation."""


class NotFoundError(RallyError):
    """Unknown session, response, provider slot or conversation."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class InvalidArgumentError(RallyError):
    """Missing or malformed argument, rejected before any network activity."""


class InvalidTransitionError(RallyError):
    """A response was asked to move to a state it cannot reach from its current one."""


class AggregationError(RallyError):
    """The fan-out itself failed, as opposed to one provider's call."""

    def __init__(self, session_id: str, cause: BaseException) -> None:
        self.session_id = session_id
        super().__init__(f"Fan-out for session {session_id} failed: {cause!r}")
