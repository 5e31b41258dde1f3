"""
Tagged processing results and index reconciliation.

Processing APIs (mostly an LLM) answer a sub-batch with a list of entries
that reference the input by position. Each entry is parsed into exactly one
of:

    Matched(index, value)  - output for sub_batch[index]
    Unmatched(index)       - provider explicitly skipped the item
    Malformed(raw)         - entry we cannot attribute to any item

reconcile() then sorts the sub-batch into commit / retry / dead-letter.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Matched:
    index: int
    value: Any = None


@dataclass(frozen=True)
class Unmatched:
    index: int
    reason: str = "skipped by provider"


@dataclass(frozen=True)
class Malformed:
    raw: Any
    reason: str = "unparseable entry"


ProcessingResult = Union[Matched, Unmatched, Malformed]


@dataclass
class Reconciliation:
    matched: List[Tuple[Any, Any]] = field(default_factory=list)
    unmatched: List[Any] = field(default_factory=list)
    malformed: List[Malformed] = field(default_factory=list)

    @property
    def any_matched(self) -> bool:
        return bool(self.matched)


def reconcile(sub_batch: Sequence[T], results: Sequence[ProcessingResult]) -> Reconciliation:
    """
    Attribute results to sub-batch items by index.

    - The first Matched per index wins; later duplicates are Malformed
    - Out-of-range indexes are Malformed
    - Items with no Matched entry (including explicit Unmatched) are unmatched
    """
    out = Reconciliation()
    by_index: Dict[int, Any] = {}

    for result in results:
        if isinstance(result, Malformed):
            out.malformed.append(result)
        elif isinstance(result, Matched):
            if not 0 <= result.index < len(sub_batch):
                out.malformed.append(Malformed(raw=result.value, reason=f"index {result.index} out of range"))
            elif result.index in by_index:
                out.malformed.append(Malformed(raw=result.value, reason=f"duplicate index {result.index}"))
            else:
                by_index[result.index] = result.value

    for index, item in enumerate(sub_batch):
        if index in by_index:
            out.matched.append((item, by_index[index]))
        else:
            out.unmatched.append(item)
    return out


def _coerce_index(entry: Dict[str, Any], keys: Sequence[str]) -> Optional[int]:
    for key in keys:
        value = entry.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
    return None


def parse_indexed(
    entries: Sequence[Any],
    build: Callable[[Dict[str, Any]], Any],
    index_keys: Sequence[str] = ("i", "index"),
) -> List[ProcessingResult]:
    """
    Turn raw model entries into tagged results.

    build(entry) produces the committed value and may raise ValueError or
    KeyError to flag the entry as Malformed. An entry with "skip": true is
    Unmatched.
    """
    results: List[ProcessingResult] = []
    for entry in entries:
        if not isinstance(entry, dict):
            results.append(Malformed(raw=entry, reason="entry is not an object"))
            continue
        index = _coerce_index(entry, index_keys)
        if index is None:
            results.append(Malformed(raw=entry, reason="missing index"))
            continue
        if entry.get("skip") is True:
            results.append(Unmatched(index=index))
            continue
        try:
            results.append(Matched(index=index, value=build(entry)))
        except (KeyError, ValueError, TypeError) as e:
            results.append(Malformed(raw=entry, reason=str(e) or type(e).__name__))
    return results
