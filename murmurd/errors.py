# Custom exceptions shared by the daemon stages


class MurmurError(Exception):
    pass


class ConfigError(MurmurError):
    """Raised when the config file cannot be parsed or is incomplete."""


class IdentityError(MurmurError):
    """Raised when key material cannot be generated or loaded."""


class TransportError(MurmurError):
    """Raised when a peer cannot be reached or refuses an envelope."""


class SessionError(MurmurError):
    pass


class StoreError(MurmurError):
    """Raised when the message store cannot be opened or written."""
