from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Protocol

from pulse.core.rng import RNG

_UUID_TEMPLATE = "xxxxxxxx-xxxx-4xxx-yxxx-xxxxxxxxxxxx"


class IdGenerator(Protocol):
    def new_id(self) -> str: ...


@dataclass(slots=True)
class UuidGenerator:
    """
    Random v4-style identifiers for visitors and sessions.
    - Without an RNG: uuid.uuid4().
    - With a seeded RNG: the v4 template filled from the RNG, so a replay with
      the same seed yields the same ids.
    """

    rng: RNG | None = None

    def new_id(self) -> str:
        if self.rng is None:
            return str(uuid.uuid4())

        out = []
        for c in _UUID_TEMPLATE:
            if c == "x":
                out.append(format(self.rng.getrandbits(4), "x"))
            elif c == "y":
                out.append(format((self.rng.getrandbits(4) & 0x3) | 0x8, "x"))
            else:
                out.append(c)
        return "".join(out)


@dataclass(slots=True)
class CounterIdGenerator:
    """
    Deterministic, monotonic ids: "<prefix>_00000001", "<prefix>_00000002", ...
    """

    prefix: str
    _counter: int = field(default=0, init=False, repr=False)

    def new_id(self) -> str:
        self._counter += 1
        return f"{self.prefix}_{self._counter:08d}"
