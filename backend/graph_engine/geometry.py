"""
Pure geometry helpers for media transform nodes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class CropRect:
    x: int
    y: int
    width: int
    height: int

    def as_box(self):
        """(left, upper, right, lower) box as used by PIL."""
        return (self.x, self.y, self.x + self.width, self.y + self.height)


def _round_half_up(value: float) -> int:
    # Python's round() is banker's rounding; pixel offsets round half up
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)


def _check_percent(name: str, value: float) -> float:
    value = float(value)
    if not 0 <= value <= 100:
        raise ValueError(f"{name} must be a percentage between 0 and 100, got {value}")
    return value


def compute_crop_rect(
    width: int,
    height: int,
    x_percent: float,
    y_percent: float,
    width_percent: float,
    height_percent: float,
) -> CropRect:
    """
    Convert a percentage rectangle into a pixel rectangle clamped to the image.

    The result is always at least 1x1 and never extends past the image edge.
    """
    if width < 1 or height < 1:
        raise ValueError(f"Invalid source dimensions {width}x{height}")

    px = _check_percent("x", x_percent)
    py = _check_percent("y", y_percent)
    pw = _check_percent("width", width_percent)
    ph = _check_percent("height", height_percent)

    x = _round_half_up(width * px / 100)
    y = _round_half_up(height * py / 100)
    w = _round_half_up(width * pw / 100)
    h = _round_half_up(height * ph / 100)

    x = max(0, min(x, width - 1))
    y = max(0, min(y, height - 1))
    w = max(1, min(w, width - x))
    h = max(1, min(h, height - y))
    return CropRect(x=x, y=y, width=w, height=h)


@dataclass(frozen=True)
class FrameTimestamp:
    """Either an absolute offset in seconds or a percentage of the duration."""

    seconds: Optional[float] = None
    percent: Optional[float] = None

    @property
    def needs_duration(self) -> bool:
        return self.percent is not None

    def describe(self) -> str:
        if self.percent is not None:
            return f"{self.percent:g}%"
        return f"{self.seconds or 0:g}s"


def parse_timestamp(value: Union[str, int, float, None]) -> FrameTimestamp:
    """
    Parse a frame timestamp.

    Accepts seconds (``12``, ``"12.5"``) or a percentage of the duration
    (``"50%"``). Empty values mean the first frame.
    """
    if value is None:
        return FrameTimestamp(seconds=0.0)
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
        if seconds < 0:
            raise ValueError(f"Timestamp must not be negative, got {seconds}")
        return FrameTimestamp(seconds=seconds)

    text = str(value).strip()
    if not text:
        return FrameTimestamp(seconds=0.0)
    try:
        if text.endswith('%'):
            return FrameTimestamp(percent=_check_percent("timestamp", float(text[:-1].strip())))
        seconds = float(text.rstrip('s').strip())
    except ValueError as exc:
        raise ValueError(f"Invalid timestamp: {value!r}") from exc
    if seconds < 0:
        raise ValueError(f"Timestamp must not be negative, got {seconds}")
    return FrameTimestamp(seconds=seconds)


def resolve_timestamp(timestamp: FrameTimestamp, duration: Optional[float] = None) -> float:
    """Effective offset in seconds; percentages need the probed duration."""
    if timestamp.percent is None:
        return float(timestamp.seconds or 0.0)
    if duration is None:
        raise ValueError("Duration is required to resolve a percentage timestamp")
    if duration < 0:
        raise ValueError(f"Invalid duration: {duration}")
    return float(duration) * timestamp.percent / 100
