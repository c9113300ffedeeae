from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping


@dataclass(frozen=True)
class EnvPolicy:
    allow_list: List[str] = field(default_factory=list)


def build_env(allow_list: Iterable[str], source: Mapping[str, str]) -> Dict[str, str]:
    """Project the allow-listed keys of ``source`` into a new dict.

    Exact key match only; keys missing from ``source`` are omitted.
    """
    out: Dict[str, str] = {}
    for key in allow_list:
        if key in source:
            out[key] = source[key]
    return out


def filter_env(policy: EnvPolicy, source: Mapping[str, str]) -> Dict[str, str]:
    return build_env(policy.allow_list, source)
