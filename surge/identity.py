"""
User-identity generators for virtual users.

Two strategies:
- SequentialIdentity: id = (vu_id - 1) * iterations_per_vu + iteration + 1.
  Every (vu_id, iteration) pair of a per-vu-iterations scenario maps to a
  distinct id in [1, vus * iterations_per_vu], so a correct target should
  report zero duplicates.
- RandomPoolIdentity: uniform draw from [1, pool_size]. The pool size sets
  the collision rate. A pool much larger than the target's finite resource
  (inventory, coupon stock) rarely repeats identities; a pool near or below
  it repeats them constantly. Pick the ratio on purpose.
"""

from __future__ import annotations

import random
from typing import Optional, Protocol

from surge.exceptions import SurgeConfigError
from surge.models import IdentityConfig, IdentityStrategy, ScenarioSpec


class IdentityGenerator(Protocol):
    """Produces the numeric identity for one iteration of one VU."""

    def next_id(self, vu_id: int, iteration: int) -> int:
        ...


class SequentialIdentity:
    """Collision-free identities derived from (vu_id, iteration)."""

    def __init__(self, iterations_per_vu: int) -> None:
        if iterations_per_vu < 1:
            raise ValueError("iterations_per_vu must be >= 1")
        self.iterations_per_vu = iterations_per_vu

    def next_id(self, vu_id: int, iteration: int) -> int:
        if vu_id < 1:
            raise ValueError("vu_id starts at 1")
        if not 0 <= iteration < self.iterations_per_vu:
            raise ValueError(
                f"iteration {iteration} outside [0, {self.iterations_per_vu})"
            )
        return (vu_id - 1) * self.iterations_per_vu + iteration + 1


class RandomPoolIdentity:
    """Uniform identities from [1, pool_size]; repeats are expected."""

    def __init__(self, pool_size: int, rng: Optional[random.Random] = None) -> None:
        if pool_size < 1:
            raise ValueError("pool_size must be >= 1")
        self.pool_size = pool_size
        self._rng = rng or random.Random()

    def next_id(self, vu_id: int, iteration: int) -> int:
        return self._rng.randint(1, self.pool_size)


def build_identity(
    spec: ScenarioSpec,
    *,
    rng: Optional[random.Random] = None,
) -> Optional[IdentityGenerator]:
    """Identity generator for a scenario, or None when it has no identity config."""
    config: Optional[IdentityConfig] = spec.identity
    if config is None:
        return None
    if config.strategy == IdentityStrategy.SEQUENTIAL:
        if spec.iterations is None:
            raise SurgeConfigError(
                "sequential identities need a fixed iteration count",
                field=f"{spec.name}.identity",
            )
        return SequentialIdentity(spec.iterations)
    if config.pool_size is None:
        raise SurgeConfigError(
            "random identities need a pool_size",
            field=f"{spec.name}.identity.pool_size",
        )
    return RandomPoolIdentity(config.pool_size, rng=rng)
