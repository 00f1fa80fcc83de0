from __future__ import annotations

import logging
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SecondaryWriteFailure(Exception):
    """Describes a failed best-effort write to the global collection."""


class DualWriter:
    """Required write first, then an independently attempted secondary write.

    The secondary write never raises and is never retried. Its failure is
    logged and handed back as a ``SecondaryWriteFailure`` value.
    """

    def write(
        self,
        required: Optional[Callable[[], T]],
        secondary: Optional[Callable[[], object]],
        *,
        description: str,
    ) -> tuple[Optional[T], Optional[SecondaryWriteFailure]]:
        result = required() if required is not None else None
        return result, self.best_effort(secondary, description=description)

    def best_effort(
        self, secondary: Optional[Callable[[], object]], *, description: str
    ) -> Optional[SecondaryWriteFailure]:
        if secondary is None:
            return None
        try:
            secondary()
        except Exception as exc:
            logger.warning(
                "Global orders write failed for %s; canteen copy stays authoritative: %s",
                description,
                exc,
            )
            failure = SecondaryWriteFailure(f"{description}: {exc}")
            failure.__cause__ = exc
            return failure
        return None
