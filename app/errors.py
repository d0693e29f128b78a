"""Exception hierarchy shared by the bootstrap and sync engine."""

from __future__ import annotations


class RasaError(Exception):
    """Base class for errors raised by the catalog core."""


class MigrationError(RasaError):
    """A schema migration step failed and was rolled back."""

    def __init__(self, version: int, cause: BaseException):
        super().__init__(f"Migration {version} failed: {cause}")
        self.version = version
        self.cause = cause


class IncompatibleSchemaError(RasaError):
    """The database was written by a newer release than the one running."""

    def __init__(self, database_version: int, supported_version: int):
        super().__init__(
            f"Database schema version {database_version} is newer than the "
            f"highest supported version {supported_version}; upgrade Rasa Server"
        )
        self.database_version = database_version
        self.supported_version = supported_version


class ClassificationError(RasaError):
    """The mood rule table is malformed."""


class SyncError(RasaError):
    """Base class for failures raised while synchronising the catalog."""

    transient = False


class SyncNetworkError(SyncError):
    """The metadata source could not be reached or answered with an error."""

    transient = True


class SyncTimeoutError(SyncError):
    """The metadata source did not answer within the configured timeout."""

    transient = True


class MalformedRecordError(SyncError):
    """A single source record could not be turned into a movie."""

    def __init__(self, message: str, *, external_id: str | None = None):
        super().__init__(message)
        self.external_id = external_id
