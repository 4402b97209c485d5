class ApplicationError(Exception):
    pass


class ConfigurationError(ApplicationError):
    pass


class InvalidPod(ApplicationError):
    """The pod in an admission request cannot be injected as submitted."""


class ProviderError(ApplicationError):
    pass


class RegistryError(ProviderError):
    """A registry call failed (transport, permission, or server error)."""


class NamespaceExists(ProviderError):
    """A namespace create lost to a namespace that already exists."""


class RegistryUnavailable(ApplicationError):
    pass
