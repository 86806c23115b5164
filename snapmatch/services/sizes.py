# snapmatch/services/sizes.py
"""Byte counts and MB/GB quantities.

Sizes are stored as a number plus a unit. Every result is rounded to two
decimals and expressed in MB below 1024 MB, in GB from there on.
"""
from snapmatch.exceptions import ValidationError
from snapmatch.schemas import SizeQuantity

MB = 1024 * 1024
GB = 1024 * MB
UNITS = ("MB", "GB")


def _check_unit(unit: str) -> None:
    if unit not in UNITS:
        raise ValidationError(f"unknown size unit {unit!r}, expected one of {UNITS}")


def bytes_to_mb(num_bytes: float) -> float:
    return round(num_bytes / MB, 2)


def bytes_to_gb(num_bytes: float) -> float:
    return round(num_bytes / GB, 2)


def to_mb(size: float, unit: str) -> float:
    """Unrounded MB value of ``size`` ``unit``."""
    _check_unit(unit)
    return size * 1024 if unit == "GB" else size


def to_appropriate_unit(num_bytes: float) -> SizeQuantity:
    mb = bytes_to_mb(num_bytes)
    if mb >= 1024:
        return SizeQuantity(size=bytes_to_gb(num_bytes), unit="GB")
    return SizeQuantity(size=mb, unit="MB")


def convert_units(size: float, from_unit: str, to_unit: str) -> float:
    _check_unit(from_unit)
    _check_unit(to_unit)
    if from_unit == to_unit:
        return size
    if from_unit == "MB":
        return round(size / 1024, 2)
    return round(size * 1024, 2)


def add_sizes(size1: float, unit1: str, size2: float, unit2: str) -> SizeQuantity:
    total_mb = to_mb(size1, unit1) + to_mb(size2, unit2)
    return to_appropriate_unit(total_mb * MB)


def subtract_sizes(size1: float, unit1: str, size2: float, unit2: str) -> SizeQuantity:
    # A deleted blob can be bigger than what was tracked; clamp instead of failing
    total_mb = max(0.0, to_mb(size1, unit1) - to_mb(size2, unit2))
    return to_appropriate_unit(total_mb * MB)


def format_size(size: float, unit: str) -> str:
    _check_unit(unit)
    return f"{size:g} {unit}"
