"""Per-cell masks attached to tensors."""

from __future__ import annotations

import logging
from typing import Self

from .backend import xp
from .config import validate_probability

logger = logging.getLogger(__name__)


class Mask:
    """Marks each (row, column, depth) cell of a tensor as active or suppressed.

    A fresh mask has every cell active. A mask drawn with
    `mask_by_probability` remembers the probability so that consumers can
    compensate active cells by `1 / (1 - probability)` (inverted dropout).

    Attributes:
        suppressed (xp.ndarray): Boolean array, `True` where a cell is suppressed.
        probability (float): Suppression probability of the last random draw,
            0.0 if the mask was never drawn randomly.
    """

    def __init__(self, rows: int, columns: int, depth: int) -> None:
        self.suppressed = xp.zeros((rows, columns, depth), dtype=bool)
        self.probability = 0.0

    @property
    def shape(self) -> tuple[int, int, int]:
        return self.suppressed.shape  # type: ignore[return-value]

    @property
    def active(self) -> xp.ndarray:
        """Boolean array, `True` where a cell participates in computations."""
        return ~self.suppressed

    @property
    def keep_probability(self) -> float:
        return 1.0 - self.probability

    def set_mask_at(self, row: int, column: int, depth: int, *, suppressed: bool = True) -> None:
        self.suppressed[row, column, depth] = suppressed

    def has_mask_at(self, row: int, column: int, depth: int) -> bool:
        """Whether the cell at `(row, column, depth)` is suppressed."""
        return bool(self.suppressed[row, column, depth])

    def mask_by_probability(self, probability: float, rng: xp.random.Generator) -> None:
        """Suppress every cell independently with `probability`.

        Args:
            probability (float): Suppression probability in `[0, 1)`.
            rng (xp.random.Generator): Random source, owned by the caller.

        Raises:
            ConfigurationError: If `probability` is outside `[0, 1)`.
        """
        validate_probability(probability, name="mask probability")
        self.suppressed = rng.random(self.suppressed.shape) < probability
        self.probability = probability
        logger.debug(
            f"Masked {int(self.suppressed.sum())}/{self.suppressed.size} cells "
            f"with probability {probability}"
        )

    def clear(self) -> None:
        """Reactivate every cell."""
        self.suppressed[...] = False
        self.probability = 0.0

    def copy(self) -> Self:
        duplicate = type(self)(*self.shape)
        duplicate.suppressed = self.suppressed.copy()
        duplicate.probability = self.probability
        return duplicate

    def __repr__(self) -> str:
        return (
            f"Mask(shape={self.shape}, suppressed={int(self.suppressed.sum())}, "
            f"probability={self.probability})"
        )


__all__ = [
    "Mask",
]
