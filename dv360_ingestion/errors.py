"""Exceptions raised by the DV360 feature adoption pipelines."""


class Dv360Error(Exception):
    """Base class for every pipeline error."""


class MissingParameterError(Dv360Error):
    """A required invocation parameter (advertiser id) is absent."""


class InvalidParameterError(Dv360Error):
    """An invocation parameter is present but unusable."""


class TransportError(Dv360Error):
    """A remote call failed at the network, HTTP or auth layer."""


class AuthenticationError(TransportError):
    """No usable access token could be obtained."""


class JobFailedError(Dv360Error):
    """The remote system reported the report/SDF job as failed."""


class JobTimeoutError(Dv360Error):
    """A job did not complete before the polling deadline."""


class MalformedRowError(Dv360Error):
    """A single source row could not be mapped. Handled by dropping the row."""


class StructuralStreamError(Dv360Error):
    """The payload could not be read as a zip archive or delimited text."""
