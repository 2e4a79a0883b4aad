from __future__ import annotations
import math
import numbers
from typing import Iterable, Optional, Sequence, Tuple, Union


# --- parameter checks used by the frozen param dataclasses ---

def validate_int(
    name: str,
    value: Union[int, float],
    min_value: Optional[int] = None,
    max_value: Optional[int] = None,
) -> int:
    """
    Whole-number setting such as a window in ps or a bin count. Numpy
    integers and floats without a fractional part pass; bools do not.
    Bounds are inclusive. Returns the value as a plain ``int``.
    """
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise ValueError(f"{name}: expected int, got {type(value).__name__} ({value!r})")
    if not isinstance(value, numbers.Integral) and not float(value).is_integer():
        raise ValueError(f"{name}: expected int, got float {value}")
    int_val = int(value)
    if min_value is not None and int_val < min_value:
        raise ValueError(f"{name}: {int_val} < minimum {min_value}")
    if max_value is not None and int_val > max_value:
        raise ValueError(f"{name}: {int_val} > maximum {max_value}")
    return int_val


def validate_float(
    name: str,
    value: Union[int, float],
    min_value: Optional[float] = None,
    max_value: Optional[float] = None,
    allow_nan: bool = False,
    allow_inf: bool = False,
) -> float:
    """Real-valued setting; NaN and infinity only pass when allowed."""
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise ValueError(f"{name}: expected float, got {type(value).__name__} ({value!r})")
    float_val = float(value)
    if math.isnan(float_val) and not allow_nan:
        raise ValueError(f"{name}: NaN not allowed")
    if math.isinf(float_val) and not allow_inf:
        raise ValueError(f"{name}: infinity not allowed")
    if min_value is not None and float_val < min_value:
        raise ValueError(f"{name}: {float_val} < minimum {min_value}")
    if max_value is not None and float_val > max_value:
        raise ValueError(f"{name}: {float_val} > maximum {max_value}")
    return float_val


def validate_positive(name: str, value: Union[int, float]) -> float:
    """Validate a strictly positive, finite number."""
    float_val = validate_float(name, value)
    if float_val <= 0.0:
        raise ValueError(f"{name}: must be positive, got {float_val}")
    return float_val


def validate_channel_pairs(
    name: str,
    pairs: Iterable[Sequence[int]],
) -> Tuple[Tuple[int, int], ...]:
    """
    Normalize a channel pair set into a tuple of (channel_a, channel_b) ints.

    Channels are detector numbers in [0, 255].
    """
    out = []
    for pair in pairs:
        if len(pair) != 2:
            raise ValueError(f"{name}: expected (channel_a, channel_b), got {pair!r}")
        chan_a = validate_int(f"{name} channel_a", pair[0], min_value=0, max_value=255)
        chan_b = validate_int(f"{name} channel_b", pair[1], min_value=0, max_value=255)
        out.append((chan_a, chan_b))
    if not out:
        raise ValueError(f"{name}: at least one channel pair required")
    return tuple(out)


def format_positions(positions: Sequence[float], digits: int = 3) -> str:
    """Format stage positions as '(p0,p1,p2)'."""
    return "(" + ",".join(f"{float(p):.{digits}f}" for p in positions) + ")"


def relative_percent(value: float, error: float) -> float:
    """Relative error in percent, 0 when value is zero or not finite."""
    if value == 0.0 or not math.isfinite(value):
        return 0.0
    return 100.0 * error / value
