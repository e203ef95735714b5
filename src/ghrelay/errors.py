"""Failure kinds surfaced to HTTP callers.

Every class carries the status code the caller sees. Only ``InputError`` (and
the request-side body failures of the interaction log) are the caller's fault.
"""
from __future__ import annotations


class RelayError(Exception):
    status_code = 500


class SigningError(RelayError):
    """Clock or key failure while minting an assertion."""


class BuildError(RelayError):
    """The outbound request could not be constructed."""


class TransportError(RelayError):
    """Network failure talking to the upstream API."""


class UpstreamParseError(RelayError):
    """Upstream answered with a body that is not JSON."""


class InputError(RelayError):
    status_code = 400


class AuditIOError(RelayError):
    """Draining a body or writing the interaction log failed."""


class BodyReadError(AuditIOError):
    status_code = 400


class BodyTooLarge(AuditIOError):
    status_code = 413


class LoginRequired(Exception):
    """Raised by the session gate; answered with a redirect to ``location``."""

    def __init__(self, location: str):
        super().__init__(location)
        self.location = location
