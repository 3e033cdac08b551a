"""Error taxonomy shared by the billing engine, services and API layer.

``ValidationError`` and ``NotFoundError`` are caller mistakes and are never
retried. ``TransientStoreError`` means the record store could not be reached
and the whole operation may be retried later. ``ComputationInvariantViolation``
signals a date-arithmetic bug and must never be silently corrected.
"""


class TrackerError(Exception):
    pass


class ValidationError(TrackerError, ValueError):
    pass


class NotFoundError(TrackerError, LookupError):
    pass


class TransientStoreError(TrackerError):
    pass


class ComputationInvariantViolation(TrackerError, RuntimeError):
    pass
