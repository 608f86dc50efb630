"""Mixed-radix enumeration of branch combinations."""

from __future__ import annotations

from typing import Iterator, Sequence, Tuple

import numpy as np


class MixedRadixCounter:
    """Odometer over digit tuples ``d`` with ``0 <= d[j] < radices[j]``.

    The first digit is the most significant one and the last digit varies
    fastest, so combination ``i`` is the base-``radices`` representation of
    ``i``.

    >>> list(MixedRadixCounter([2, 2]))
    [(0, 0), (0, 1), (1, 0), (1, 1)]
    """

    def __init__(self, radices: Sequence[int]) -> None:
        radices = tuple(int(r) for r in radices)
        if not radices or any(r < 1 for r in radices):
            raise ValueError(f"Radices must be a non-empty sequence of positive integers, got {radices}.")
        self.radices = radices
        strides = [1] * len(radices)
        for j in range(len(radices) - 2, -1, -1):
            strides[j] = strides[j + 1] * radices[j + 1]
        self.strides = tuple(strides)

    def __len__(self) -> int:
        return int(np.prod(self.radices, dtype=np.int64))

    def __iter__(self) -> Iterator[Tuple[int, ...]]:
        digits = [0] * len(self.radices)
        for _ in range(len(self)):
            yield tuple(digits)
            # increment, carrying from the last digit
            for j in range(len(digits) - 1, -1, -1):
                digits[j] += 1
                if digits[j] < self.radices[j]:
                    break
                digits[j] = 0

    def digits(self, index: int) -> Tuple[int, ...]:
        if not 0 <= index < len(self):
            raise IndexError(f"Combination index {index} out of range [0, {len(self)}).")
        return tuple((index // s) % r for s, r in zip(self.strides, self.radices))

    def index(self, digits: Sequence[int]) -> int:
        return int(sum(int(d) * s for d, s in zip(digits, self.strides)))

    def table(self) -> np.ndarray:
        """All combinations as a ``(len(self), n_digits)`` int64 array, row ``i`` = ``digits(i)``."""
        idx = np.arange(len(self), dtype=np.int64)[:, None]
        strides = np.asarray(self.strides, dtype=np.int64)[None, :]
        radices = np.asarray(self.radices, dtype=np.int64)[None, :]
        return (idx // strides) % radices
