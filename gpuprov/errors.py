from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - typing only
    from gpuprov.install.strategy import ExecutionResult


class ProvisionError(Exception):
    """Base class for every provisioning failure.

    ``result`` holds the :class:`ExecutionResult` of the step that failed, when
    a step was attempted at all.
    """

    def __init__(self, message: str, *, result: "ExecutionResult | None" = None) -> None:
        super().__init__(message)
        self.result = result


class ConfigError(ProvisionError):
    """Raised when configuration is invalid or incomplete."""


class MatrixLoadError(ProvisionError):
    """Raised when the GPU architecture matrix cannot be loaded. Fatal."""


class UnsupportedArchitecture(ProvisionError):
    """A detected GPU family has no matrix entry and no override covers it."""


class ConflictingOverride(ProvisionError):
    """A user override contradicts the matrix-derived constraints."""


class IncompatibleMixedGpus(ProvisionError):
    """GPU families on one node share no CUDA toolkit major."""


class MissingArtifact(ProvisionError):
    """An offline installer artifact was not staged locally."""


class DriverInUse(ProvisionError):
    """The loaded driver is held by running GPU processes."""


class InstallFailed(ProvisionError):
    """An installer exited non-zero (after retries, where retries apply)."""


class InstallTimeout(ProvisionError):
    """An installer exceeded the configured timeout."""


class VerificationMismatch(ProvisionError):
    """Post-install checks did not match the plan."""


class Cancelled(ProvisionError):
    """The node pipeline was cancelled between steps."""


__all__ = [
    "ProvisionError",
    "ConfigError",
    "MatrixLoadError",
    "UnsupportedArchitecture",
    "ConflictingOverride",
    "IncompatibleMixedGpus",
    "MissingArtifact",
    "DriverInUse",
    "InstallFailed",
    "InstallTimeout",
    "VerificationMismatch",
    "Cancelled",
]
