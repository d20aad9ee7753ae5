"""Explicit seed threading for randomized fold assignment."""

import numpy as np

MAX_SEED = 2**32 - 1


def derive_seed(seed: int, repeat: int) -> int:
    """Sub-seed for one repeat, a pure function of (seed, repeat).

    Uses numpy's `SeedSequence` spawn keys, so every repeat gets an
    independent stream and repeat k's seed does not depend on how many
    repeats are requested.
    """
    if seed < 0 or repeat < 0:
        raise ValueError("seed and repeat must be non-negative")
    ss = np.random.SeedSequence(entropy=seed, spawn_key=(repeat,))
    return int(ss.generate_state(1, dtype=np.uint32)[0])


def fresh_seed() -> int:
    """Draw a new top-level seed from OS entropy (never global state)."""
    return int(np.random.SeedSequence().generate_state(1, dtype=np.uint32)[0])
