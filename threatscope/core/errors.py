"""
@file errors.py
@brief Exception taxonomy for the threat scanner

Every failure the scanner knows how to survive has its own class so callers
can log it and move on to the next feed query, subject or host.
"""


class ThreatscopeError(Exception):
    """Base class for all scanner errors."""


class FeedUnavailableError(ThreatscopeError):
    """
    A vulnerability feed query failed (network, API or storage error).

    Callers treat it as "no matches found" for that query.
    """


class MalformedInputError(ThreatscopeError):
    """A descriptor or version string could not be interpreted."""


class CollaboratorUnreachableError(ThreatscopeError):
    """
    The container runtime or cluster API could not be reached.

    @param target str Inventory name of the host that failed
    """

    def __init__(self, target, message):
        super().__init__(f"{target}: {message}")
        self.target = target
