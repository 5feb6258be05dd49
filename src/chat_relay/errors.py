"""Exception taxonomy for the chat relay."""


class ChatRelayError(Exception):
    """Base class for all relay errors."""

    pass


class ConfigurationError(ChatRelayError):
    """Bad or missing settings. Fatal to the call, not to the process."""

    pass


class SurfaceNotFound(ChatRelayError):
    """The endpoint adapter could not locate its input, submit or output surface."""

    pass


class ChannelError(ChatRelayError):
    """A controller <-> agent message could not be delivered or acknowledged."""

    pass


class ResponseTimeoutError(ChatRelayError, TimeoutError):
    """No stable reply arrived within the response budget."""

    pass


class EndpointLostError(ChatRelayError):
    """A bound endpoint disappeared. Fatal to the session."""

    pass


class PersistenceError(ChatRelayError):
    """Durable storage could not be read or written. Never fatal to a live session."""

    pass


class RelayStateError(ChatRelayError):
    """An operation was requested in a state that does not allow it."""

    pass


class RelayDisabledError(ChatRelayError):
    """The circuit breaker disabled the relay; it needs an explicit re-enable."""

    pass


class SnapshotNotFoundError(ChatRelayError):
    pass


class BackupNotFoundError(ChatRelayError):
    pass
