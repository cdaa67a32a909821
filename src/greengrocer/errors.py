"""Exception types raised for illegal state transitions.

Input validation failures use the built‑in :class:`ValueError`; database
failures surface as :class:`sqlite3.Error`.
"""


class OrderStateError(RuntimeError):
    """An order is not in a status that permits the requested action."""


class CarrierBusyError(RuntimeError):
    """A carrier still has undelivered orders assigned."""


class AccessDeniedError(RuntimeError):
    """The session's user may not perform the requested action."""


class NotLoggedInError(AccessDeniedError):
    """The action requires an authenticated user in the session."""
