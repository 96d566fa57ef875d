"""
Reference ID Generator

Produces the digits-only reference shown to customers and used to reconcile
with the payment processor. The existence pre-check only narrows the chance
of a collision; the unique key table in the transfer store is the final
arbiter, and callers retry generation and insert on DuplicateKeyError.
"""

import random
import re
import time
from typing import Callable, Optional

from .config import EngineConfig, resolve_config
from .logging_config import get_logger, log_action


MIN_REF_ID_LENGTH = 14
MAX_REF_ID_LENGTH = 16
FALLBACK_PREFIX_LENGTH = 12

_REF_ID_PATTERN = re.compile(r"[0-9]{14,16}")


def is_valid_ref_id(value) -> bool:
    """Check that a value is a 14-16 digit reference string"""
    return isinstance(value, str) and _REF_ID_PATTERN.fullmatch(value) is not None


class ReferenceIdGenerator:
    """Random numeric reference IDs with a timestamp-salted fallback"""

    def __init__(
        self,
        exists: Callable[[str], bool],
        config: Optional[EngineConfig] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time
    ):
        self.exists = exists
        self.config = resolve_config(config)
        self.rng = rng or random.SystemRandom()
        self.clock = clock
        self.logger = get_logger("remit_engine.refids")

    def _digits(self, length: int) -> str:
        return "".join(str(self.rng.randrange(10)) for _ in range(length))

    def _fallback(self) -> str:
        epoch_ms = re.sub(r"\D", "", str(int(self.clock() * 1000)))
        candidate = (self._digits(FALLBACK_PREFIX_LENGTH) + epoch_ms[-4:])[:MAX_REF_ID_LENGTH]
        return candidate.rjust(MIN_REF_ID_LENGTH, "0")

    def generate(self) -> str:
        """
        Draw a reference ID not currently assigned to any transfer

        Never fails: after `ref_id_max_attempts` colliding draws it returns the
        fallback composite without a further existence check.
        """
        attempts = self.config.ref_id_max_attempts
        for attempt in range(1, attempts + 1):
            candidate = self._digits(self.config.ref_id_length)
            if not self.exists(candidate):
                return candidate
            log_action(
                self.logger, "info", "Reference ID collision",
                action="generate_ref_id",
                extra={"attempt": attempt, "max_attempts": attempts}
            )

        candidate = self._fallback()
        log_action(
            self.logger, "warning", "Reference ID attempts exhausted, using fallback",
            action="generate_ref_id",
            extra={"attempts": attempts}
        )
        return candidate
