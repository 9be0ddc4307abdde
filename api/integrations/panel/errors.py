from __future__ import annotations


class ProvisioningError(RuntimeError):
    """Base exception for provisioning panel errors."""


class AuthExhaustedError(ProvisioningError):
    """Raised when a request is still unauthorized after one re-login."""


class KeyNotFoundError(ProvisioningError):
    """Raised when the panel has no client with the requested key id."""


class PanelLoginError(ProvisioningError):
    """Raised when the panel refuses or fails a login request."""


class ProvisioningTimeoutError(ProvisioningError):
    """Raised when the panel does not answer within the configured timeout."""


__all__ = [
    "AuthExhaustedError",
    "KeyNotFoundError",
    "PanelLoginError",
    "ProvisioningError",
    "ProvisioningTimeoutError",
]
