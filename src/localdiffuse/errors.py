"""Error taxonomy for the generation core.

Every failure aborts the in-progress request.  The classes also derive from
the builtin exception a plain-Python caller would expect (ValueError for bad
input, RuntimeError for sequencing/backend failures) so existing
``except ValueError`` handlers keep working.
"""

from __future__ import annotations


class LocalDiffuseError(Exception):
    """Base class for all errors raised by localdiffuse."""


class ConfigurationError(LocalDiffuseError, ValueError):
    """Unknown schedule/spacing/prediction string or an invalid setting."""


class SequencingError(LocalDiffuseError, RuntimeError):
    """An operation was invoked out of its required order (caller bug)."""


class ShapeMismatchError(LocalDiffuseError, ValueError):
    """Array or tile dimensions disagree with the configured resolution."""


class ExternalServiceError(LocalDiffuseError, RuntimeError):
    """An inference backend call failed."""

    def __init__(self, service: str, message: str):
        super().__init__(f"{service}: {message}")
        self.service = service
