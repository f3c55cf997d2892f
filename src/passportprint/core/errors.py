from __future__ import annotations

from typing import Optional


class PassportPrintError(Exception):
    """Base class for errors surfaced to the user by the pipeline."""


class UserInputError(PassportPrintError):
    """Missing or incomplete user input (no file selected, crop not finished...)."""


class RemoteError(PassportPrintError):
    """
    An image operation did not succeed.

    status:
        HTTP status of the failed call, or None when the call never produced a
        response (timeout, connection refused, local backend failure).
    """

    def __init__(self, status: Optional[int], message: str):
        super().__init__(message)
        self.status = status
        self.message = message

    def __str__(self) -> str:
        if self.status is None:
            return self.message
        return f"{self.message} (status {self.status})"


# Local operations fail with the same shape so callers handle one type.
ImageOpError = RemoteError


class GeometryError(PassportPrintError):
    """Invalid physical size, unit or crop geometry."""


class InvalidUnit(GeometryError):
    def __init__(self, unit: str):
        super().__init__(f"Unknown unit {unit!r}; expected one of mm, cm, inch.")
        self.unit = unit


class DegenerateCrop(GeometryError):
    """A crop rectangle or image with no usable area."""
