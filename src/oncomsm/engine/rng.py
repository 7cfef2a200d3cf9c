"""Explicit, hierarchical seed derivation.

Every stochastic routine receives a master seed and derives its own
stream from it plus a fixed key (replicate index, chain index, group
index, ...).  No routine touches global generator state, so results do
not depend on call order or on how work is spread over threads.
"""

from __future__ import annotations

import numpy as np

Seed = int | np.random.SeedSequence


def child_seed(seed: Seed, *key: int) -> np.random.SeedSequence:
    """Return the seed sequence at ``seed / key[0] / key[1] / ...``.

    Unlike :meth:`numpy.random.SeedSequence.spawn`, the result depends
    only on the arguments, never on how many children were spawned
    before.
    """
    if isinstance(seed, np.random.SeedSequence):
        return np.random.SeedSequence(
            seed.entropy, spawn_key=tuple(seed.spawn_key) + tuple(int(k) for k in key),
        )
    return np.random.SeedSequence(int(seed), spawn_key=tuple(int(k) for k in key))


def make_rng(seed: Seed, *key: int) -> np.random.Generator:
    """Generator for the stream ``seed / key``."""
    return np.random.default_rng(child_seed(seed, *key))
