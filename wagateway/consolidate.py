from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .config import DEFAULT_TENANT_PREFIX
from .registry import SessionRecord


LOGGER = logging.getLogger("wagateway.consolidate")


@dataclass(slots=True)
class ConsolidationResult:
    kept: List[str] = field(default_factory=list)
    cleaned: List[str] = field(default_factory=list)


def tenant_key(name: str, prefix: str = DEFAULT_TENANT_PREFIX) -> Optional[str]:
    match = re.search(rf"{re.escape(prefix)}(\d+)", name)
    if not match:
        return None
    return match.group(1)


def _rank(item: Tuple[str, SessionRecord]) -> Tuple[int, float, str]:
    name, record = item
    return (0 if record.is_live else 1, -(record.connected_at or 0.0), name)


def group_by_tenant(
    sessions: List[Tuple[str, SessionRecord]], prefix: str = DEFAULT_TENANT_PREFIX
) -> Dict[str, List[Tuple[str, SessionRecord]]]:
    groups: Dict[str, List[Tuple[str, SessionRecord]]] = {}
    for name, record in sessions:
        key = tenant_key(name, prefix)
        if key is None:
            continue
        groups.setdefault(key, []).append((name, record))
    return groups


async def consolidate(manager: Any, *, prefix: str = DEFAULT_TENANT_PREFIX) -> ConsolidationResult:
    """Keep the best session per tenant id and evict the rest along with their credentials."""

    result = ConsolidationResult()
    groups = group_by_tenant(manager.registry.list(), prefix)
    for tenant, members in groups.items():
        ranked = sorted(members, key=_rank)
        keep_name, _ = ranked[0]
        result.kept.append(keep_name)
        if len(ranked) == 1:
            continue
        LOGGER.info(
            "stage=cleanup_group tenant=%s instances=%s keep=%s",
            tenant,
            len(ranked),
            keep_name,
        )
        for name, record in ranked[1:]:
            if manager.registry.get(name) is record:
                manager.remove(name)
            await manager.purge_credentials(name)
            result.cleaned.append(name)
            LOGGER.info("stage=cleanup_removed instance=%s tenant=%s", name, tenant)
    return result


__all__ = ["ConsolidationResult", "consolidate", "group_by_tenant", "tenant_key"]
