"""
Error types for the pgarchive sidecar.

This module defines every exception raised by the sidecar core:
- SidecarError: Base exception
- ConfigurationError: Missing or invalid declarative configuration
- WalNotFoundError: Requested WAL file is absent from the archive
- EndOfStreamError: End-of-WAL-stream flag consumed
- ToolExecutionError: Archiving tool exited with an error
- TransientAPIError: Control-plane read/write failure

Each error carries a gRPC status code so the RPC transport can map it
to a response without inspecting the message.

Invariants:
    - All errors inherit from SidecarError
    - WalNotFoundError and EndOfStreamError are never collapsed into
      a generic error, recovery relies on telling them apart
    - Secrets never appear in messages or details

How to change safely:
    - Add new error kinds as subclasses of an existing category
    - Never change the status code of an existing error
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import grpc


class SidecarError(Exception):
    """Base exception for all sidecar errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    status_code: grpc.StatusCode = grpc.StatusCode.UNKNOWN

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "SIDECAR_ERROR"
        self.details = details or {}


class ConfigurationError(SidecarError):
    """The declarative configuration is missing or invalid.

    Fatal for the current operation and not retried here: retrying
    cannot fix a configuration mistake.
    """

    status_code = grpc.StatusCode.INVALID_ARGUMENT

    def __init__(self, message: str, messages: Optional[List[str]] = None) -> None:
        self.messages = messages or [message]
        super().__init__(
            message,
            code="CONFIGURATION_ERROR",
            details={"messages": self.messages},
        )


class ResourceNotFoundError(SidecarError):
    """A control-plane object does not exist."""

    status_code = grpc.StatusCode.NOT_FOUND

    def __init__(self, kind: str, key: str) -> None:
        super().__init__(
            f"{kind} {key} not found",
            code="RESOURCE_NOT_FOUND",
            details={"kind": kind, "key": key},
        )
        self.kind = kind
        self.key = key


class WalNotFoundError(SidecarError):
    """The requested WAL file is not present in the archive.

    This is a normal terminal condition for PostgreSQL recovery.
    """

    status_code = grpc.StatusCode.NOT_FOUND

    def __init__(self, wal_name: str) -> None:
        super().__init__(
            f"wal {wal_name!r} not found",
            code="WAL_NOT_FOUND",
            details={"wal_name": wal_name},
        )
        self.wal_name = wal_name


class EndOfStreamError(SidecarError):
    """The end-of-WAL-stream flag was set by a previous prefetch.

    Tells the caller to stop asking the archive and switch to streaming
    replication.
    """

    status_code = grpc.StatusCode.OUT_OF_RANGE

    def __init__(self) -> None:
        super().__init__("end of WAL reached", code="END_OF_WAL_STREAM")


class ToolExecutionError(SidecarError):
    """The archiving tool exited with a non-zero status.

    Attributes:
        tool: Executable name
        exit_code: Process exit code
        stderr: Last lines of the tool's error output
    """

    status_code = grpc.StatusCode.INTERNAL

    def __init__(
        self,
        tool: str,
        exit_code: int,
        reason: str = "unexpected failure",
        stderr: str = "",
        code: str = "TOOL_EXECUTION_ERROR",
    ) -> None:
        super().__init__(
            f"{tool} exited with code {exit_code}: {reason}",
            code=code,
            details={"tool": tool, "exit_code": exit_code, "stderr": stderr},
        )
        self.tool = tool
        self.exit_code = exit_code
        self.reason = reason
        self.stderr = stderr


class ToolConnectivityError(ToolExecutionError):
    """The archiving tool could not reach the object store."""

    status_code = grpc.StatusCode.UNAVAILABLE

    def __init__(self, tool: str, exit_code: int, stderr: str = "") -> None:
        super().__init__(
            tool,
            exit_code,
            reason="connection to the cloud provider failed",
            stderr=stderr,
            code="TOOL_CONNECTIVITY_ERROR",
        )


class ArchiveNotEmptyError(ToolExecutionError):
    """The destination archive already contains WAL files for this server."""

    status_code = grpc.StatusCode.FAILED_PRECONDITION

    def __init__(self, tool: str, exit_code: int, stderr: str = "") -> None:
        super().__init__(
            tool,
            exit_code,
            reason="the WAL archive is not empty",
            stderr=stderr,
            code="ARCHIVE_NOT_EMPTY",
        )


class TransientAPIError(SidecarError):
    """A control-plane read or write failed.

    Surfaced to the caller for an outer retry, never swallowed.
    """

    status_code = grpc.StatusCode.UNAVAILABLE

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: str = "TRANSIENT_API_ERROR",
    ) -> None:
        super().__init__(message, code=code, details={"status": status})
        self.status = status


class MissingPermissionsError(TransientAPIError):
    """The sidecar is not (yet) allowed to read the credentials.

    Fixed by the operator's reconciliation loop, so the caller retries.
    """

    status_code = grpc.StatusCode.FAILED_PRECONDITION

    def __init__(self, message: str = "no permission to download the backup credentials, retrying") -> None:
        super().__init__(message, status=403, code="MISSING_PERMISSIONS")


class ConflictError(TransientAPIError):
    """An update lost a race with a concurrent writer."""

    status_code = grpc.StatusCode.ABORTED

    def __init__(self, message: str) -> None:
        super().__init__(message, status=409, code="CONFLICT")


class SpoolError(SidecarError):
    """The spool directory could not be read or written."""

    status_code = grpc.StatusCode.INTERNAL

    def __init__(self, wal_name: str, cause: Exception) -> None:
        super().__init__(
            f"while managing the WAL file ({wal_name}) in the spool directory: {cause}",
            code="SPOOL_ERROR",
            details={"wal_name": wal_name},
        )
        self.wal_name = wal_name


class RetentionError(SidecarError):
    """One or more steps of a retention cycle failed."""

    status_code = grpc.StatusCode.INTERNAL

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        super().__init__(message, code="RETENTION_ERROR", details={"errors": errors or []})
        self.errors = errors or []
