class TransportError(RuntimeError):
    """A channel provider refused or failed to accept a message."""
