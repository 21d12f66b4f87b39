from __future__ import annotations

from typing import Optional


class OrphanSweepError(Exception):
    """Base class for every error raised by orphansweep."""


class FatalSetupError(OrphanSweepError):
    """Aborts the whole run. Never retried within the run."""


class AuthenticationError(FatalSetupError):
    pass


class HierarchyPrerequisiteError(FatalSetupError):
    """The Microsoft.Management provider is not registered / usable."""


class HierarchyRootError(FatalSetupError):
    pass


class VerificationError(OrphanSweepError):
    """
    The directory query failed. This is NOT a "principal not found" answer:
    callers must treat it as "cannot confirm" and never as orphaned.
    """

    def __init__(self, principal_id: str, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(f"{principal_id}: {message}")
        self.principal_id = principal_id
        self.status_code = status_code


class ListingError(OrphanSweepError):
    def __init__(self, scope: str, message: str) -> None:
        super().__init__(f"{scope}: {message}")
        self.scope = scope


class PreconditionFailedError(OrphanSweepError):
    """The assignment was concurrently modified or is already gone."""


class ArtifactError(OrphanSweepError):
    pass


class ArmRequestError(OrphanSweepError):
    """Non-2xx answer from a raw Azure Resource Manager call."""

    def __init__(self, method: str, url: str, status_code: int, code: Optional[str], message: str) -> None:
        super().__init__(f"ARM {method} failed ({status_code}{' ' + code if code else ''}) {url}: {message}")
        self.status_code = status_code
        self.code = code or ""


class ScanCancelledError(OrphanSweepError):
    """The run stopped (timeout or fatal error elsewhere) before this scope finished."""

    def __init__(self, scope: str) -> None:
        super().__init__(f"{scope}: scan cancelled")
        self.scope = scope
