"""VolZone — error taxonomy.

Input errors subclass ``ValueError`` so callers that already guard pure
functions with ``except ValueError`` keep working.
"""


class VolZoneError(Exception):
    """Base class for all engine errors."""


class InsufficientData(VolZoneError, ValueError):
    """Too few observations to compute the requested quantity."""


class InvalidInput(VolZoneError, ValueError):
    """An argument is outside its valid domain (e.g. a non-positive open)."""


class NonFiniteInput(VolZoneError, ValueError):
    """A price series contains NaN, infinity or a non-positive value."""


class ModelFitError(VolZoneError):
    """A variance model failed to converge or produced unusable parameters."""


class DataUnavailable(VolZoneError):
    """A collaborator could not supply data in time (transient)."""


class LevelsNotModified(VolZoneError):
    """The gateway reports the protective levels already hold the requested values."""


class MutationExhausted(VolZoneError):
    """A protective-level mutation failed after every allowed retry."""
