"""Exception types raised by the texturing pipeline."""

from __future__ import annotations

from typing import Optional


class TexReconError(ValueError):
    """Base class for fatal texturing errors.

    Args:
        message: Human readable description of the failure
        stage: Pipeline stage that failed (e.g. "view selection")
    """

    def __init__(self, message: str, stage: Optional[str] = None):
        self.stage = stage
        if stage:
            message = f"[{stage}] {message}"
        super().__init__(message)


class InputValidationError(TexReconError):
    """Input files or parameters do not fit the mesh/scene combination."""


class InvalidLabelError(InputValidationError):
    """A label lies outside the valid range 0..num_views."""


class FormatError(InputValidationError):
    """A persisted intermediate file is truncated or inconsistent."""


class PatchTooLargeError(InputValidationError):
    """A texture patch does not fit into an atlas of the maximum size."""
