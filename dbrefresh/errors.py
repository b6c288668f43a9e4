"""Errors raised by the refresh stages. Anything fatal derives from RefreshError."""


class RefreshError(Exception):
    """Base class for failures that abort a refresh run."""


class ConfigError(RefreshError):
    pass


class FetchError(RefreshError):
    pass


class ToolNotFound(RefreshError):
    """The external SQL utility could not be located."""


class ProcessError(RefreshError):
    """Launching the external SQL utility raised."""


class LifecycleError(RefreshError):
    pass


class RenameError(RefreshError):
    def __init__(self, message, missing=None):
        super().__init__(message)
        self.missing = list(missing or [])


class ConflictError(RenameError):
    """A destination file is owned by another database and the drop was declined."""

    def __init__(self, message, owner=None, path=None):
        super().__init__(message)
        self.owner = owner
        self.path = path


class RestoreError(RefreshError):
    pass


class DataCopyError(RefreshError):
    pass
