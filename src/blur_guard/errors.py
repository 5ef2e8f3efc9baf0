"""Exception types raised inside the Blur Guard pipeline.

None of these escape `BlurGuard.evaluate`; the orchestrator turns them into
absent signals or a degraded decision.
"""

from __future__ import annotations


class GuardError(Exception):
    """Base class for Blur Guard errors."""


class CollaboratorUnavailable(GuardError):
    """A classifier or locator failed to load or errored on a call."""

    def __init__(self, collaborator: str, message: str = ""):
        self.collaborator = collaborator
        super().__init__(
            f"{collaborator} unavailable" + (f": {message}" if message else "")
        )


class InvalidInputError(GuardError, ValueError):
    """The image or a face crop cannot be evaluated (e.g. zero area)."""


class FetchError(GuardError):
    """An image could not be downloaded or decoded."""
