"""
domain/errors.py
Error taxonomy shared by the calculators and the lifecycle service.
"""


class ParkingError(Exception):
    """Base class for every error raised by the pricing/lifecycle core."""

    retryable: bool = False


class ValidationError(ParkingError):
    """Malformed interval or booking input, extension hours out of range."""


class InvalidStateError(ParkingError):
    """Operation not legal for the reservation's current lifecycle state."""


class ConflictError(ParkingError):
    """A concurrent mutation of the same reservation won the race."""

    retryable = True


class PaymentFailure(ParkingError):
    """Gateway declined or timed out. The reservation is left unchanged."""

    retryable = True


class ConfigurationError(ParkingError):
    """A lot row carries a rate model the engine does not recognise."""
