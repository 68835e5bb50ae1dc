"""Error types raised by the APM dependency system."""


class APMError(Exception):
    """Base class for all APM errors."""


class ParseError(APMError, ValueError):
    """A dependency declaration could not be parsed."""


class ManifestError(APMError, ValueError):
    """An apm.yml file is unreadable or missing required fields."""


class DownloadError(APMError, RuntimeError):
    """A package could not be materialized."""


class NotFoundError(DownloadError):
    """The repository, reference or sub-path does not exist."""


class TransientError(DownloadError):
    """Network or timeout failure; retrying may succeed."""


class CorruptLockfileError(APMError, ValueError):
    """The lockfile exists but cannot be parsed."""
