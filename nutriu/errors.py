"""
Exception types shared by the Nutri U services.

Collaborator failures are translated into these types at the gateway and
resolver boundaries so that the GUI only ever deals with `NutriUError`
subclasses, never with client-library exceptions.
"""
# nutriu/errors.py


class NutriUError(Exception):
    """Base class for every error raised by the Nutri U package."""


class ConfigurationError(NutriUError):
    """A required setting is missing or invalid."""


class CredentialError(NutriUError):
    """The authentication service rejected the supplied credentials."""


class GatewayError(NutriUError):
    """A call to the remote store or the authentication service failed."""


class RemoteTimeout(GatewayError):
    """A remote call did not complete within its time limit."""


class DataIntegrityError(GatewayError):
    """The remote store returned data that breaks a model invariant."""


class CacheCorruptionError(NutriUError):
    """A cached identity record could not be deserialized."""


class ValidationError(NutriUError):
    """User-supplied data failed a business rule."""


class PermissionDenied(NutriUError):
    """The current identity is not allowed to perform the operation."""
