"""Exceptions raised by the key pool."""


class KeyPoolError(Exception):
    """Base class for key pool errors."""


class ServiceNotFound(KeyPoolError, LookupError):
    def __init__(self, service_name: str):
        super().__init__(f"Service '{service_name}' not found")
        self.service_name = service_name


class KeyNotFound(KeyPoolError, LookupError):
    def __init__(self, service_name: str, key_prefix: str):
        super().__init__(f"API key {key_prefix} not found in service '{service_name}'")
        self.service_name = service_name
        self.key_prefix = key_prefix


class InvalidArgument(KeyPoolError, ValueError):
    pass


class PersistenceFailure(KeyPoolError):
    """The pool document could not be read from or written to its store."""
