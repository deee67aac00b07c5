"""
Type definitions for unifi-lego.

Contains the result types returned by orchestration steps and the error
hierarchy raised by the deployment components.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any


# Structured result types for orchestration steps
@dataclass
class Success:
    message: str = ""
    data: Any | None = None
    continue_execution: bool = True  # False ends the pipeline early, successfully


@dataclass
class Error:
    error: str
    exception: Exception | None = None
    recovery_suggestions: str | None = None


# Union type for step results
Result = Success | Error


class KeystoreMode(str, Enum):
    """How the certificate is imported into the controller keystore."""

    FULL_CHAIN = "full_chain"
    LEAF_ONLY = "leaf_only"


class RunState(str, Enum):
    """States of a single renewal run."""

    IDLE = "idle"
    REQUESTING = "requesting"
    ISSUED_OR_RENEWED = "issued_or_renewed"
    NOT_DUE = "not_due"
    DEPLOYING = "deploying"
    SYNCING = "syncing"
    RESTART_DECIDING = "restart_deciding"
    DONE = "done"
    FAILED = "failed"


class UnifiLegoError(Exception):
    """Base exception for unifi-lego errors."""

    pass


class ConfigurationError(UnifiLegoError):
    """Exception raised when the configuration is missing or invalid."""

    pass


class AcmeClientError(UnifiLegoError):
    """Exception raised when the lego invocation fails."""

    def __init__(self, message: str, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class LegoInstallError(UnifiLegoError):
    """Exception raised when the lego binary cannot be installed or verified."""

    pass


class DeploymentError(UnifiLegoError):
    """Exception raised when writing a deployment target fails."""

    def __init__(self, message: str, target: str) -> None:
        super().__init__(message)
        self.target = target


class KeystoreSyncError(UnifiLegoError):
    """Exception raised when a keystore synchronization step fails."""

    pass


class AliasNotFoundError(KeystoreSyncError):
    """Exception raised when the alias to delete is not in the keystore."""

    pass


class RestartError(UnifiLegoError):
    """Exception raised when a service restart fails."""

    def __init__(self, message: str, unit: str) -> None:
        super().__init__(message)
        self.unit = unit
