"""Error taxonomy for index aggregation and installation.

Every error carries an ``ErrorKind`` so callers can decide whether to
continue or abort, the exit code the CLI should use, and an optional
remediation hint for the user.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

from depfetch.constants import ExitCodes

if TYPE_CHECKING:
    from depfetch.remote import Remote


class ErrorKind(Enum):
    """Kinds of failure, independent of the concrete exception type."""

    NOT_FOUND = "not_found"
    REGISTRY_UNAVAILABLE = "registry_unavailable"
    INSTALL_PERMISSION = "install_permission"
    INSTALL = "install"
    UNTRUSTED = "untrusted"
    AMBIGUOUS = "ambiguous"
    CONFIGURATION = "configuration"


class DepfetchError(Exception):
    """Base class for all errors raised by depfetch."""

    kind = ErrorKind.INSTALL
    exit_code = ExitCodes.INSTALL_ERROR

    def __init__(self, message: str, *, hint: Optional[str] = None):
        super().__init__(message)
        self.hint = hint


class PackageNotFound(DepfetchError):
    """A requested package or artifact does not exist on any tier."""

    kind = ErrorKind.NOT_FOUND
    exit_code = ExitCodes.NOT_FOUND


class NoSourcesError(PackageNotFound):
    """A lookup failed and no registry sources are configured at all."""

    def __init__(self, message: str, *, hint: Optional[str] = None):
        super().__init__(
            message,
            hint=hint or (
                "No registry sources are configured. If you need packages that "
                "are not already on your machine, add a source, for example: "
                "depfetch install --source https://packages.example.org"
            ),
        )


class RegistryUnavailable(DepfetchError):
    """A registry could not be reached or answered with an error."""

    kind = ErrorKind.REGISTRY_UNAVAILABLE
    exit_code = ExitCodes.CONNECTION_ERROR

    def __init__(self, remote: Optional["Remote"], message: str):
        target = remote.anonymized_uri if remote is not None else "registry"
        super().__init__(f"Could not fetch from {target}: {message}")
        self.remote = remote
        self.reason = message


class InstallError(DepfetchError):
    """Installing a package failed."""

    kind = ErrorKind.INSTALL
    exit_code = ExitCodes.INSTALL_ERROR


class InstallPermissionError(InstallError):
    """A filesystem write was denied outside the privileged install path."""

    kind = ErrorKind.INSTALL_PERMISSION


class ArtifactError(InstallError):
    """An artifact file is corrupt or unreadable."""


class UntrustedArtifact(DepfetchError):
    """An artifact failed the configured trust policy."""

    kind = ErrorKind.UNTRUSTED
    exit_code = ExitCodes.UNTRUSTED


class ConfigurationError(DepfetchError):
    """Settings or command-line options are invalid."""

    kind = ErrorKind.CONFIGURATION
    exit_code = ExitCodes.CONFIGURATION_ERROR


@dataclass(frozen=True)
class FetchFailure:
    """A registry that could not be queried during aggregation."""

    remote: "Remote"
    reason: str

    @property
    def kind(self) -> ErrorKind:
        return ErrorKind.REGISTRY_UNAVAILABLE

    def __str__(self) -> str:
        return f"Could not fetch from {self.remote.anonymized_uri}: {self.reason}"
