"""
Preference value validation.

A preference item names the validators its value must pass in a ``valid``
list. Validators are looked up in a :class:`ValidatorRegistry`, run
concurrently and bounded by a shared timeout. A validator rejects a value by
raising :class:`~kernel_bridge.errors.ValidationError` or returning False.
"""

import asyncio
import inspect
import os
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional, Union

from .environment import probe
from .errors import ProbeError, UnknownValidatorError, ValidationError
from .observability import get_logger
from .paths import resolve_home_directory

logger = get_logger(__name__)

VALIDATION_TIMEOUT = 2.0

Validator = Callable[[Any], Union[bool, None, Awaitable[Union[bool, None]]]]


class ValidatorRegistry:
    def __init__(self, validators: Optional[Mapping[str, Validator]] = None):
        self._validators: Dict[str, Validator] = dict(validators or {})

    def __contains__(self, name: str) -> bool:
        return name in self._validators

    def names(self):
        return sorted(self._validators)

    def register(self, name: str, validator: Optional[Validator] = None):
        """Register ``validator`` under ``name``; usable as a decorator."""
        if validator is None:
            def decorator(fn):
                self._validators[name] = fn
                return fn

            return decorator
        self._validators[name] = validator
        return validator

    def get(self, name: str) -> Validator:
        try:
            return self._validators[name]
        except KeyError:
            raise UnknownValidatorError(f"No validator named {name!r}") from None


def _validator_names(item: Any) -> Iterable[str]:
    if isinstance(item, Mapping):
        names = item.get("valid")
    else:
        names = getattr(item, "valid", None)
    if not names:
        return ()
    if isinstance(names, str):
        return (names,)
    return tuple(names)


async def _run_validator(name: str, validator: Validator, value: Any):
    result = validator(value)
    if inspect.isawaitable(result):
        result = await result
    if result is False:
        raise ValidationError(f"{name} rejected {value!r}")


async def validate(
    item: Any,
    value: Any,
    registry: Optional[ValidatorRegistry] = None,
    timeout: float = VALIDATION_TIMEOUT,
) -> Any:
    """
    Run every validator ``item`` names against ``value``.

    Returns:
        ``value`` when all validators accept it

    Raises:
        UnknownValidatorError: Before anything runs, if a name is not registered
        ValidationError: If a validator rejects the value or time runs out
    """
    names = _validator_names(item)
    if not names:
        return value

    registry = registry or default_registry()
    validators = [(name, registry.get(name)) for name in names]

    try:
        await asyncio.wait_for(
            asyncio.gather(*(_run_validator(name, fn, value) for name, fn in validators)),
            timeout,
        )
    except asyncio.TimeoutError:
        raise ValidationError(
            f"Validation ({', '.join(names)}) did not finish within {timeout}s"
        ) from None
    return value


async def is_valid(
    item: Any,
    value: Any,
    registry: Optional[ValidatorRegistry] = None,
    timeout: float = VALIDATION_TIMEOUT,
) -> bool:
    """Like :func:`validate` but answers with a bool. Unknown validators still raise."""
    try:
        await validate(item, value, registry, timeout)
    except ValidationError as e:
        logger.debug("Preference value rejected", error=str(e))
        return False
    return True


# ============================================================================
# BUILT-IN VALIDATORS
# ============================================================================


def _int_in_range(value: Any, low: int, high: int, label: str):
    if isinstance(value, bool):
        raise ValidationError(f"{label} must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{label} must be an integer, got {value!r}") from None
    if str(number) != str(value).strip():
        raise ValidationError(f"{label} must be an integer, got {value!r}")
    if not low <= number <= high:
        raise ValidationError(f"{label} must be between {low} and {high}, got {number}")


def is_font_size(value: Any):
    _int_in_range(value, 6, 72, "Font size")


def is_tab_space(value: Any):
    _int_in_range(value, 1, 8, "Tab space")


def is_path_real(value: Any):
    path = resolve_home_directory(str(value or ""))
    if not path or not os.path.exists(path):
        raise ValidationError(f"Path does not exist: {value}")


async def is_python(value: Any):
    if not value:
        raise ValidationError("No Python executable given")
    loop = asyncio.get_running_loop()
    try:
        info = await loop.run_in_executor(None, probe, str(value))
    except ProbeError as e:
        raise ValidationError(str(e)) from e
    if not info.has_jupyter_kernel:
        raise ValidationError(f"{info.executable} cannot run a Jupyter kernel (ipykernel missing)")


def default_registry() -> ValidatorRegistry:
    return ValidatorRegistry(
        {
            "isPathReal": is_path_real,
            "isPython": is_python,
            "isFontSize": is_font_size,
            "isTabSpace": is_tab_space,
        }
    )
