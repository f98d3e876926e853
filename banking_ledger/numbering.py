"""
Account Number Generation

Account numbers are a 2-letter prefix followed by 16 digits: a 12-digit
millisecond component that is strictly increasing per generator, then a
4-digit random component. The clock and the random source are injectable so
tests can force collisions and replay sequences.
"""

import re
import secrets
import threading
import time
from typing import Callable, Optional

from .config import get_config
from .errors import InternalError

TIME_DIGITS = 12
RANDOM_DIGITS = 4

_TIME_MODULUS = 10 ** TIME_DIGITS


def _wall_clock_ms() -> int:
    return time.time_ns() // 1_000_000


class AccountNumberGenerator:
    """
    Produces collision-resistant account numbers.

    The time component never repeats within one generator: if the clock has
    not advanced (or stepped backwards) since the previous number, the last
    issued value plus one is used instead.
    """

    def __init__(
        self,
        prefix: Optional[str] = None,
        clock: Optional[Callable[[], int]] = None,
        rng=None,
        max_attempts: Optional[int] = None
    ):
        cfg = get_config()
        self.prefix = prefix if prefix is not None else cfg.account_number_prefix
        if not re.fullmatch(r"[A-Z]{2}", self.prefix):
            raise ValueError(f"Account number prefix must be 2 uppercase letters, got {self.prefix!r}")

        self._clock = clock or _wall_clock_ms
        self._rng = rng or secrets.SystemRandom()
        self.max_attempts = max_attempts if max_attempts is not None else cfg.account_number_max_attempts
        self._last_tick = -1
        self._lock = threading.Lock()

    def _next_tick(self) -> int:
        with self._lock:
            tick = self._clock() % _TIME_MODULUS
            if tick <= self._last_tick:
                tick = self._last_tick + 1
            self._last_tick = tick
            return tick

    def generate(self) -> str:
        """Derive a fresh account number"""
        tick = self._next_tick()
        suffix = self._rng.randrange(10 ** RANDOM_DIGITS)
        return f"{self.prefix}{tick:0{TIME_DIGITS}d}{suffix:0{RANDOM_DIGITS}d}"

    def generate_unique(self, is_taken: Callable[[str], bool]) -> str:
        """
        Generate a number that is not already issued.

        Args:
            is_taken: Returns True if a number already belongs to an account

        Raises:
            InternalError: If every attempt collided
        """
        for _ in range(self.max_attempts):
            candidate = self.generate()
            if not is_taken(candidate):
                return candidate
        raise InternalError(
            f"Could not derive a unique account number after {self.max_attempts} attempts"
        )


def is_valid_account_number(value: str, prefix: str = "BA") -> bool:
    """Check the account number format"""
    if not isinstance(value, str):
        return False
    return re.fullmatch(rf"{re.escape(prefix)}\d{{{TIME_DIGITS + RANDOM_DIGITS}}}", value) is not None
