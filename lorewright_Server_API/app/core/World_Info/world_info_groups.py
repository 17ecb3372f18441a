# world_info_groups.py
# Description: Inclusion-group resolution for world-info candidates.
#
"""
Entries sharing a group name compete; at most one member of each group
activates per scan. The pick is deterministic for a given scan seed so that
re-running a resolution with the same seed yields the same winner.
"""
#
# Imports
import hashlib
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set

#
# Local Imports
from lorewright_Server_API.app.core.World_Info.world_info_types import (
    PreparedWorldInfoEntry,
    WorldInfoSettings,
)

_UNIT_MAX = 0xFFFFFFFFFFFF

#######################################################################################################################
#
# Types


@dataclass
class GroupCandidate:
    entry: PreparedWorldInfoEntry
    score: int = 0
    sticky_active: bool = False
    cooldown_active: bool = False
    delayed: bool = False


@dataclass
class GroupResolution:
    selected: List[GroupCandidate] = field(default_factory=list)
    activated_groups: Set[str] = field(default_factory=set)


#######################################################################################################################
#
# Functions


def split_groups(group: str) -> List[str]:
    return [name.strip() for name in (group or "").split(",") if name.strip()]


def hash_to_unit_interval(seed: str) -> float:
    digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()[:12]
    return max(0.0, min(1.0, int(digest, 16) / _UNIT_MAX))


def pick_weighted_candidate(candidates: Sequence[GroupCandidate], seed: str) -> GroupCandidate:
    total_weight = sum(max(0, c.entry.group_weight) for c in candidates)
    if total_weight <= 0:
        return candidates[0]
    target = hash_to_unit_interval(seed) * total_weight
    cumulative = 0
    for candidate in candidates:
        cumulative += max(0, candidate.entry.group_weight)
        if target <= cumulative:
            return candidate
    return candidates[-1]


def apply_inclusion_groups(
    candidates: Sequence[GroupCandidate],
    settings: WorldInfoSettings,
    scan_seed: str,
    already_activated_groups: Optional[Set[str]] = None,
) -> GroupResolution:
    """
    Reduce ``candidates`` to at most one winner per group.

    Ungrouped candidates pass through. Groups already resolved earlier in the
    scan are skipped. Within a group: sticky members take precedence,
    otherwise cooling-down and delayed members are dropped; optional scoring
    keeps only the top-scoring members; an override member with the highest
    ``order`` wins outright, else a weighted pick seeded by
    ``"{scan_seed}:{group}"`` decides.
    """
    resolution = GroupResolution(activated_groups=set(already_activated_groups or ()))
    selected_hashes: Set[str] = set()
    by_group: Dict[str, List[GroupCandidate]] = {}

    def select(candidate: GroupCandidate) -> None:
        if candidate.entry.hash not in selected_hashes:
            resolution.selected.append(candidate)
            selected_hashes.add(candidate.entry.hash)

    for candidate in candidates:
        groups = split_groups(candidate.entry.group)
        if not groups:
            select(candidate)
            continue
        for name in groups:
            by_group.setdefault(name, []).append(candidate)

    for name, members in by_group.items():
        if name in resolution.activated_groups or not members:
            continue

        active = [c for c in members if c.sticky_active]
        if not active:
            active = [c for c in members if not c.cooldown_active and not c.delayed]
            if not active:
                continue

        if settings.use_group_scoring or any(c.entry.use_group_scoring is True for c in active):
            best = max(c.score for c in active)
            active = [c for c in active if c.score == best]

        overrides = [c for c in active if c.entry.group_override]
        if overrides:
            # sorted() is stable, so equal orders keep insertion order
            select(sorted(overrides, key=lambda c: c.entry.order, reverse=True)[0])
        else:
            select(pick_weighted_candidate(active, f"{scan_seed}:{name}"))
        resolution.activated_groups.add(name)

    return resolution

#
# End of world_info_groups.py
#######################################################################################################################
