"""
NoiseMonitor — Error taxonomy
==============================
Every contract failure aborts the whole transaction; the AVM only reports the
assertion message. This module turns those messages back into typed errors so
the API layer can answer with a meaningful status code.
"""

from typing import Optional


class NoiseMonitorError(Exception):
    """Base class for all NoiseMonitor failures."""

    status_code = 500

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason or message


# ── Validation errors ────────────────────────────────────────────────────────

class InvalidInput(NoiseMonitorError):
    status_code = 400


class IndexOutOfBounds(NoiseMonitorError):
    status_code = 404


# ── Authorization errors ─────────────────────────────────────────────────────

class Unauthorized(NoiseMonitorError):
    status_code = 403


class LocationNotFound(NoiseMonitorError):
    status_code = 404


class InvalidManagerAddress(NoiseMonitorError):
    status_code = 400


class InvalidNewOwner(NoiseMonitorError):
    status_code = 400


# ── Empty-state errors ───────────────────────────────────────────────────────

class NoData(NoiseMonitorError):
    status_code = 404


# ── Platform-fatal errors ────────────────────────────────────────────────────

class PlatformError(NoiseMonitorError):
    """Malformed proof, unknown ciphertext, or any other FHE runtime failure."""

    status_code = 422


# Assertion messages raised by the contract, matched case-insensitively.
# Order matters: "Not authorized: no reports..." must not fall through to
# a more generic rule first.
CONTRACT_ERROR_RULES: list[tuple[str, type[NoiseMonitorError]]] = [
    ("invalid timestamp", InvalidInput),
    ("invalid location id", InvalidInput),
    ("index out of bounds", IndexOutOfBounds),
    ("invalid manager address", InvalidManagerAddress),
    ("invalid new owner", InvalidNewOwner),
    ("location not registered", LocationNotFound),
    ("only owner can call this function", Unauthorized),
    ("not authorized", Unauthorized),
    ("no data available", NoData),
    ("invalid input proof", PlatformError),
    ("input already consumed", PlatformError),
]


def classify_contract_error(error: Exception) -> NoiseMonitorError:
    """
    Map an algod / simulate failure to the NoiseMonitor error taxonomy.

    Args:
        error: The raw exception raised by algosdk (or an AssertionError when
               the contract runs under algopy_testing).

    Returns:
        A NoiseMonitorError subclass instance. Unknown failures become
        PlatformError, since the only other failure source is the runtime.
    """
    if isinstance(error, NoiseMonitorError):
        return error

    error_str = str(error)
    lowered = error_str.lower()
    for needle, error_cls in CONTRACT_ERROR_RULES:
        if needle in lowered:
            return error_cls(error_str, reason=needle)
    return PlatformError(error_str)
