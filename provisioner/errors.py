"""Exception types raised while planning and running a provisioning sequence."""

from typing import Optional


class ProvisionError(Exception):
    """Base class for all provisioning errors."""


class PreconditionProbeError(ProvisionError):
    """Probing the host failed (e.g. permission denied).

    Treated as "not satisfied" by the precondition checker.
    """


class ActionError(ProvisionError):
    """A step's action could not complete."""

    def __init__(self, message: str, output: Optional[str] = None):
        super().__init__(message)
        self.output = output


class VerificationTimeout(ProvisionError):
    """A postcondition did not become true within its bound."""

    def __init__(self, message: str, last_observed: Optional[str] = None, attempts: int = 0):
        super().__init__(message)
        self.last_observed = last_observed
        self.attempts = attempts


class CredentialError(ProvisionError):
    """Authentication against the model repository failed. Never retried."""


class PlanError(ProvisionError):
    """The plan is malformed (duplicate names, unknown requirement, cycle)."""


class HostLockError(ProvisionError):
    """Another provisioning run holds the host lock."""


class ConfigError(ProvisionError):
    """Settings are missing or invalid."""
