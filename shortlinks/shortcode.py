"""Random short-code generation with collision checks.

Codes are nanoid draws from an alphabet without visually confusable
characters. Each draw is checked against the link store through an injected
``is_taken`` callable; the store keeps the final word through its unique
constraint.
"""

import logging
from collections.abc import Awaitable, Callable

from nanoid import generate
from prometheus_client import Counter

from shortlinks.config import Settings
from shortlinks.exceptions import ShortCodeExhaustedError

__all__ = ["ShortCodeGenerator"]

logger = logging.getLogger("shortlinks.shortcode")

SHORT_CODE_COLLISIONS_TOTAL = Counter(
    "shortlinks_short_code_collisions_total",
    "Generated short codes that were already taken",
)


class ShortCodeGenerator:
    def __init__(self, alphabet: str, length: int, max_attempts: int) -> None:
        if length < 1 or max_attempts < 1:
            raise ValueError("length and max_attempts must be positive")
        if len(set(alphabet)) < 2:
            raise ValueError("alphabet needs at least two distinct characters")
        self.alphabet = alphabet
        self.length = length
        self.max_attempts = max_attempts

    @classmethod
    def from_settings(cls, settings: Settings) -> "ShortCodeGenerator":
        return cls(
            alphabet=settings.SHORT_CODE_ALPHABET,
            length=settings.SHORT_CODE_LENGTH,
            max_attempts=settings.SHORT_CODE_MAX_ATTEMPTS,
        )

    def draw(self) -> str:
        return generate(self.alphabet, self.length)

    async def generate(self, is_taken: Callable[[str], Awaitable[bool]]) -> str:
        """Return a code that ``is_taken`` reports as free.

        Raises:
            ShortCodeExhaustedError: every attempt collided.
        """
        for attempt in range(1, self.max_attempts + 1):
            code = self.draw()
            if not await is_taken(code):
                return code
            SHORT_CODE_COLLISIONS_TOTAL.inc()
            logger.warning(f"Short code collision on attempt {attempt}/{self.max_attempts}")

        raise ShortCodeExhaustedError(
            f"Could not generate a unique short code after {self.max_attempts} attempts "
            f"(alphabet={len(self.alphabet)} chars, length={self.length})"
        )
