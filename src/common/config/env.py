"""Typed environment variable parsing helpers."""

import os
from typing import Callable, List, Optional, TypeVar

T = TypeVar("T")

_TRUTHY = ("true", "1", "yes", "on")
_FALSEY = ("false", "0", "no", "off", "")


def _read(name: str, default: Optional[T], required: bool, parse: Callable[[str], T]):
    value = os.getenv(name)
    if value is None:
        if required:
            raise KeyError(f"Environment variable '{name}' is required but not set.")
        return default
    return parse(value)


def get_env_str(name: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
    """Get an environment variable as a string."""
    return _read(name, default, required, lambda value: value)


def get_env_int(name: str, default: Optional[int] = None, required: bool = False) -> Optional[int]:
    """Get an environment variable as an integer."""

    def _parse(value: str) -> int:
        try:
            return int(value)
        except ValueError:
            raise ValueError(f"Environment variable '{name}' must be an integer, got '{value}'.")

    return _read(name, default, required, _parse)


def get_env_float(
    name: str, default: Optional[float] = None, required: bool = False
) -> Optional[float]:
    """Get an environment variable as a float."""

    def _parse(value: str) -> float:
        try:
            return float(value)
        except ValueError:
            raise ValueError(f"Environment variable '{name}' must be a float, got '{value}'.")

    return _read(name, default, required, _parse)


def get_env_bool(
    name: str, default: Optional[bool] = None, required: bool = False
) -> Optional[bool]:
    """Get an environment variable as a boolean.

    Truthy: true, 1, yes, on
    Falsey: false, 0, no, off, (empty string)
    """

    def _parse(value: str) -> bool:
        lowered = value.strip().lower()
        if lowered in _TRUTHY:
            return True
        if lowered in _FALSEY:
            return False
        raise ValueError(f"Environment variable '{name}' must be a boolean, got '{value}'.")

    return _read(name, default, required, _parse)


def get_env_list(
    name: str, default: Optional[List[str]] = None, required: bool = False, separator: str = ","
) -> Optional[List[str]]:
    """Get an environment variable as a list of strings."""
    return _read(
        name,
        default,
        required,
        lambda value: [item.strip() for item in value.split(separator) if item.strip()],
    )


def get_positive_float(name: str, default: float) -> float:
    """Get a timeout-like float, falling back to the default for non-positive values."""
    value = get_env_float(name, default)
    if value is None or value <= 0:
        return default
    return value
