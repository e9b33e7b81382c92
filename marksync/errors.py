class MarksyncError(Exception):
    """Base class for errors raised by the sync client."""


class FetchError(MarksyncError):
    """The bulk fetch of a user's bookmarks failed.

    Callers must show a distinct error state rather than an empty list, since
    an empty collection is indistinguishable from "no bookmarks yet".
    """


class WriteError(MarksyncError):
    """A create or delete write to the backing store failed.

    The caller is responsible for rolling back any optimistic edit it applied.
    """


class ValidationError(MarksyncError):
    """Input rejected before any network call was made."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message
