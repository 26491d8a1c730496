from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass
class RNG:
    """
    Seeded bit source, so fixtures and replays get reproducible visitor/session ids.
    """

    seed: int

    def __post_init__(self) -> None:
        self._r = random.Random(self.seed)

    def getrandbits(self, k: int) -> int:
        return self._r.getrandbits(k)
