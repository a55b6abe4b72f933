from __future__ import annotations

import time
from dataclasses import dataclass
from typing import List, Optional


def now_ms() -> int:
    return int(time.time() * 1000)


def parent_name(domain: str) -> Optional[str]:
    """Strip the leftmost label: ``foo.sub.example.com`` -> ``sub.example.com``.

    Returns None when there is nothing left above the name (single label,
    empty string or the root).
    """
    labels = [x for x in domain.strip().rstrip(".").split(".")]
    if len(labels) < 2 or not all(labels):
        return None
    return ".".join(labels[1:])


def csv_list(s: Optional[str]) -> List[str]:
    if not s:
        return []
    return [x.strip() for x in s.split(",") if x.strip()]


@dataclass
class QueryMeta:
    server: str
    qname: str
    qtype: str
    tcp: bool
    rcode: str
    elapsed_ms: int
    truncated: bool = False
    retries: int = 0
