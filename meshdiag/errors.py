# -*- coding: utf-8 -*-
# meshdiag/errors.py

from __future__ import annotations

from typing import Any, Optional


class MeshDiagError(Exception):
    """Base for everything the client and analysis core raise on purpose."""

    def __init__(
            self,
            message: str,
            *,
            operation: Optional[str] = None,
            device: Optional[str] = None,
            topic: Optional[str] = None,
            elapsed_s: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.device = device
        self.topic = topic
        self.elapsed_s = elapsed_s


class RequestTimeout(MeshDiagError):
    """No matching response arrived before the deadline."""


class TransportFailure(MeshDiagError):
    """The channel failed (connect error, socket error, closed early)."""


class NotFound(MeshDiagError):
    """A device or group is not part of the current snapshot."""


class MalformedInput(MeshDiagError):
    """Location metadata could not be parsed into floor + sector."""


class BridgeError(MeshDiagError):
    """The bridge answered, but with status 'error'."""

    def __init__(self, message: str, *, payload: Any = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.payload = payload


class EmptyTopology(MeshDiagError, ValueError):
    """The optimizer was handed a graph without any nodes."""
