"""Array backend for tracenet Tensors.

All numerical kernels run on NumPy arrays, addressed through the `xp` alias so
kernels read the same way everywhere in the package.
"""

from __future__ import annotations

import logging

import numpy as xp

logger = logging.getLogger(__name__)


DEFAULT_DTYPE = xp.float64


def default_rng(seed: int | None = None) -> xp.random.Generator:
    """Create an explicit random generator handle.

    Every stochastic part of tracenet (random initialization, dropout masks)
    takes one of these handles instead of reading a global random state,
    so callers control seeding.

    Args:
        seed (int | None): Seed for the generator. Defaults to None,
            meaning fresh OS entropy.

    Returns:
        xp.random.Generator: The generator.
    """
    logger.debug(f"Creating random generator with seed {seed!r}")
    return xp.random.default_rng(seed)


__all__ = [
    "DEFAULT_DTYPE",
    "default_rng",
    "xp",
]
