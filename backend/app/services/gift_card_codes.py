"""Generation of human readable gift card codes.

Codes look like ``GIFT-7KQ2-XM4P``: a fixed prefix followed by segments drawn
from an alphabet without the easily confused characters ``0``, ``O``, ``1``
and ``I``. Uniqueness is guaranteed by the ``gift_cards.code`` constraint;
the generator only keeps collisions unlikely.
"""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from typing import Optional, Protocol

from ..database import read_int_env

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_PREFIX_ENV = "GIFT_CARD_CODE_PREFIX"
CODE_SEGMENTS_ENV = "GIFT_CARD_CODE_SEGMENTS"
CODE_SEGMENT_LENGTH_ENV = "GIFT_CARD_CODE_SEGMENT_LENGTH"
CODE_MAX_ATTEMPTS_ENV = "GIFT_CARD_CODE_MAX_ATTEMPTS"

DEFAULT_PREFIX = "GIFT"
DEFAULT_SEGMENTS = 2
DEFAULT_SEGMENT_LENGTH = 4
DEFAULT_MAX_ATTEMPTS = 5
MAX_CODE_LENGTH = 32


class RandomSource(Protocol):
    def choice(self, seq: str) -> str: ...


@dataclass(frozen=True)
class CodeFormat:
    prefix: str = DEFAULT_PREFIX
    segments: int = DEFAULT_SEGMENTS
    segment_length: int = DEFAULT_SEGMENT_LENGTH

    def __post_init__(self) -> None:
        if self.prefix and not self.prefix.isalnum():
            raise ValueError("Gift card code prefix must be alphanumeric")
        if self.segments < 1 or self.segment_length < 1:
            raise ValueError("Gift card codes need at least one non-empty segment")
        if self.length > MAX_CODE_LENGTH:
            raise ValueError(f"Gift card codes cannot exceed {MAX_CODE_LENGTH} characters")

    @classmethod
    def from_env(cls) -> "CodeFormat":
        prefix = os.getenv(CODE_PREFIX_ENV, DEFAULT_PREFIX).strip().upper()
        return cls(
            prefix=prefix,
            segments=read_int_env(CODE_SEGMENTS_ENV, DEFAULT_SEGMENTS, minimum=1),
            segment_length=read_int_env(
                CODE_SEGMENT_LENGTH_ENV, DEFAULT_SEGMENT_LENGTH, minimum=1
            ),
        )

    @property
    def length(self) -> int:
        random_part = self.segments * self.segment_length + (self.segments - 1)
        if self.prefix:
            return len(self.prefix) + 1 + random_part
        return random_part


def generate_code(
    code_format: Optional[CodeFormat] = None, *, rng: Optional[RandomSource] = None
) -> str:
    """Return a new random code in the configured format."""

    fmt = code_format or CodeFormat.from_env()
    choose = rng.choice if rng is not None else secrets.choice
    segments = [
        "".join(choose(CODE_ALPHABET) for _ in range(fmt.segment_length))
        for _ in range(fmt.segments)
    ]
    if fmt.prefix:
        segments.insert(0, fmt.prefix)
    return "-".join(segments)


def normalize_code(raw: str) -> str:
    """Canonical form used for lookups: no whitespace, upper case."""

    return "".join(raw.split()).upper()


def max_generation_attempts() -> int:
    return read_int_env(CODE_MAX_ATTEMPTS_ENV, DEFAULT_MAX_ATTEMPTS, minimum=1)
