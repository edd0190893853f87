"""Generic backend utilities."""

import numpy as np

# Server seeds are uint32
SEED_MAX = 2**32 - 1


def gen_seed() -> int:
    return int(np.random.randint(0, SEED_MAX + 1, dtype=np.int64))
