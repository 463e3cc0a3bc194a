from __future__ import annotations

from typing import Any, Iterable, List, Sequence


def batched(seq: Sequence[Any], n: int) -> Iterable[List[Any]]:
    n = max(1, int(n))
    for i in range(0, len(seq), n):
        yield list(seq[i : i + n])
