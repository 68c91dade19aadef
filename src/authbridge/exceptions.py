"""Errors raised by the authorization bridge.

Every error is terminal for the flow it occurs in. The only one that is
recovered locally is an approval cookie that fails verification, which
degrades to showing the consent page again.
"""

from __future__ import annotations


class AuthBridgeError(Exception):
    """Base error for the authorization bridge."""


class ConfigurationError(AuthBridgeError):
    """Required configuration (credentials, signing key) is missing."""


class AuthFailure(AuthBridgeError):
    """A signed value could not be verified."""


class InvalidSignature(AuthFailure):
    """MAC mismatch, decoding error or truncated signed value."""


class SignatureExpired(AuthFailure):
    """The signed value verified but is older than the allowed maximum age."""


class InvalidClient(AuthBridgeError):
    """The ``client_id`` is not registered."""


class RedirectMismatch(AuthBridgeError):
    """The ``redirect_uri`` is not registered for the client.

    Never answered with a redirect, since that would hand the code to an
    unregistered location.
    """


class AuthorizationRequestError(AuthBridgeError):
    """A malformed authorization request from a client whose redirect URI is verified.

    Reported back to the client via its redirect URI, as OAuth prescribes.
    """

    def __init__(self, error: str, description: str):
        super().__init__(description)
        self.error = error
        self.description = description


class UpstreamError(AuthBridgeError):
    """The upstream identity provider rejected or failed a request."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class StorageError(AuthBridgeError):
    """The persistence collaborator failed."""


class UpsertFailure(StorageError):
    """The user record could not be created or updated."""


class UserConflict(StorageError):
    """An update collides with a uniqueness constraint (e.g. username)."""


class StateError(AuthBridgeError):
    """The round-trip ``state`` of an upstream callback is unusable."""


class StateTampered(StateError):
    """``state`` failed its integrity check or matches no pending flow."""


class StateExpired(StateError):
    """``state`` verified but the flow took too long."""
