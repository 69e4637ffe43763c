"""
Transaction reference generation.

References have the form ``<PREFIX>-<epoch millis>`` and double as the
idempotency key of each operation: the ``transactions.reference`` unique
constraint rejects a second record for the same logical operation.
"""
import threading
import time
from typing import Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


class ReferenceGenerator:
    """
    Generates strictly increasing timestamp references.

    Two calls within the same millisecond get consecutive values, so
    references handed out by one process never collide. Collisions between
    processes surface as DuplicateReference from the ledger.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        """
        Initialize reference generator.

        Args:
            clock: Optional time source returning seconds (defaults to time.time)
        """
        self._clock = clock or time.time
        self._last_millis = 0
        self._lock = threading.Lock()

    def _next_millis(self) -> int:
        with self._lock:
            millis = int(self._clock() * 1000)
            if millis <= self._last_millis:
                millis = self._last_millis + 1
            self._last_millis = millis
            return millis

    def next(self, prefix: str) -> str:
        """
        Generate the next reference for a prefix.

        Args:
            prefix: Reference prefix (e.g. 'ORDER', 'WD')

        Returns:
            str: Reference such as 'ORDER-1700000000000'
        """
        reference = f"{prefix.upper()}-{self._next_millis()}"
        logger.debug("reference_generated", reference=reference)
        return reference

    @staticmethod
    def timestamp_part(reference: str) -> str:
        """Return the part of a reference after its prefix."""
        _, _, tail = reference.partition("-")
        return tail or reference

    @classmethod
    def linked_reference(cls, prefix: str, reference: str) -> str:
        """
        Derive a reference that is tied one-to-one to another reference.

        ``linked_reference('LOAN', 'ORDER-1700000000000')`` returns
        ``'LOAN-1700000000000'``.
        """
        return f"{prefix.upper()}-{cls.timestamp_part(reference)}"
