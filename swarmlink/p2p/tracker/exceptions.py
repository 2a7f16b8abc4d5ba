"""Exception types raised by tracker connections and servers."""
from __future__ import annotations


class TrackerError(Exception):
    """Base exception type for errors talking to a tracker."""

    pass


class TrackerUnreachableError(TrackerError):
    """Exception raised if unable to connect to one or more trackers."""

    pass


class TrackerDisconnectedError(TrackerError):
    """Exception raised if a tracker connection is lost or not open."""

    pass


class TrackerMessageDecodeError(TrackerError):
    """Error raised when a frame cannot be decoded into a tracker message."""

    pass


class TrackerMessageEncodeError(TrackerError):
    """Error raised when a tracker request cannot be encoded."""

    pass


class BadRequestError(TrackerError):
    """A tracker server runtime exception indicating a bad client request."""

    pass
