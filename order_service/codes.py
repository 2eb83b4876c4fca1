import random
import time
from typing import Callable, Optional

from .logs import get_logger

logger = get_logger("codes")

# no 0/O, 1/I/L: codes are read out loud to drivers
ORDER_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
ORDER_CODE_LENGTH = 6
MAX_ATTEMPTS = 10
FALLBACK_PREFIX = "SM"


class OrderCodeGenerator:
    """Short, shareable, collision-free codes for delivery orders.

    ``exists`` answers whether a code is already taken. The check is advisory:
    the unique constraint on ``orders.order_code`` is what finally guarantees
    uniqueness when two creations race.
    """

    def __init__(
        self,
        exists: Callable[[str], bool],
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.exists = exists
        self.rng = rng or random.SystemRandom()
        self.clock = clock

    def random_code(self) -> str:
        return "".join(self.rng.choice(ORDER_CODE_ALPHABET) for _ in range(ORDER_CODE_LENGTH))

    def fallback_code(self) -> str:
        millis = int(self.clock() * 1000)
        return f"{FALLBACK_PREFIX}{str(millis)[-ORDER_CODE_LENGTH:]}"

    def generate(self) -> str:
        for _ in range(MAX_ATTEMPTS):
            code = self.random_code()
            if not self.exists(code):
                return code
        code = self.fallback_code()
        logger.warning(f"{MAX_ATTEMPTS} order code collisions in a row, using fallback {code}")
        return code


def is_well_formed(code: str) -> bool:
    if len(code) == ORDER_CODE_LENGTH:
        return all(c in ORDER_CODE_ALPHABET for c in code)
    return (
        code.startswith(FALLBACK_PREFIX)
        and len(code) == len(FALLBACK_PREFIX) + ORDER_CODE_LENGTH
        and code[len(FALLBACK_PREFIX):].isdigit()
    )
