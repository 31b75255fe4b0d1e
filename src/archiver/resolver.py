"""Disambiguated name generation: "photo.jpg" -> "photo [1].jpg"."""

from typing import Dict, Set, Tuple

from archiver.models import Hash, Name


def strip_idx(base: str) -> str:
    """Remove a trailing " [<digits>]" suffix, if the name ends with one.

    >>> strip_idx("photo [12]")
    'photo'
    >>> strip_idx("photo [x]")
    'photo [x]'
    """
    i = len(base) - 1
    if i < 0 or base[i] != "]":
        return base
    i -= 1
    digits = 0
    while i >= 0 and base[i].isascii() and base[i].isdigit():
        digits += 1
        i -= 1
    if digits == 0 or i < 1 or base[i] != "[" or base[i - 1] != " ":
        return base
    return base[: i - 1]


def with_idx(base: str, idx: int) -> str:
    """Insert a disambiguation index before the last extension."""
    parts = base.split(".")
    if len(parts) == 1:
        return f"{strip_idx(base)} [{idx}]"
    parts[-2] = f"{strip_idx(parts[-2])} [{idx}]"
    return ".".join(parts)


def unique_name(
    all_names: Set[str],
    renamings: Dict[Tuple[str, Hash], Name],
    name: Name,
    hash: Hash,
) -> Name:
    """
    Find the first name of the form "<base> [<idx>]" not in all_names.

    The chosen name is added to all_names immediately, so several calls in one
    resolution pass never hand out the same name twice. Results are memoized
    per (name, hash) in renamings, which makes repeated calls deterministic.
    """
    key = (str(name), hash)
    if key in renamings:
        return renamings[key]

    idx = 1
    while True:
        candidate = Name(name.path, with_idx(name.base, idx))
        if str(candidate) not in all_names:
            all_names.add(str(candidate))
            renamings[key] = candidate
            return candidate
        idx += 1
