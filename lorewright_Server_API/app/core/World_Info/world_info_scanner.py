# world_info_scanner.py
# Description: Multi-pass world-info scan (matching, groups, probability, budget, recursion).
#
"""
The scanner decides which prepared entries activate for one generation.

A scan is a sequence of passes driven by a small state machine:

    INITIAL  --(new recursable content)-->  RECURSION  --(...)--> RECURSION
       |                                        |
       +--(too few activations, deeper history)--+--> MIN_ACTIVATIONS

Each pass filters eligible entries, matches them against scan text, resolves
inclusion groups, then admits winners through the probability roll and the
token budget. All bookkeeping lives in a ``_ScanRun`` created per call, so
concurrent scans never share state. The only non-determinism is the
probability roll, drawn from ``WorldInfoScanInput.random_source``.
"""
#
# Imports
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Set

#
# 3rd-party Libraries
from loguru import logger

#
# Local Imports
from lorewright_Server_API.app.core.Utils.tokenizer import estimate_tokens
from lorewright_Server_API.app.core.World_Info.world_info_groups import GroupCandidate, apply_inclusion_groups
from lorewright_Server_API.app.core.World_Info.world_info_matcher import match_entry_against_text
from lorewright_Server_API.app.core.World_Info.world_info_timed_effects import is_entry_delayed
from lorewright_Server_API.app.core.World_Info.world_info_types import (
    SCAN_HARD_LIMIT_WARNING,
    SCAN_HARD_LOOP_LIMIT,
    PreparedWorldInfoEntry,
    ScanSkip,
    ScanSkipReason,
    WorldInfoScanDebug,
    WorldInfoSettings,
)

#######################################################################################################################
#
# Types


class ScanState(str, Enum):
    INITIAL = "INITIAL"
    RECURSION = "RECURSION"
    MIN_ACTIVATIONS = "MIN_ACTIVATIONS"


@dataclass
class WorldInfoScanInput:
    entries: Sequence[PreparedWorldInfoEntry]
    settings: WorldInfoSettings
    history: Sequence[Mapping[str, str]]
    trigger: str = "normal"
    message_index: int = 0
    scan_seed: str = ""
    dry_run: bool = False
    active_sticky_hashes: Set[str] = field(default_factory=set)
    active_cooldown_hashes: Set[str] = field(default_factory=set)
    persona_description: str = ""
    character_description: str = ""
    character_personality: str = ""
    character_depth_prompt: str = ""
    scenario: str = ""
    creator_notes: str = ""
    char_name: str = ""
    char_tags: Sequence[str] = ()
    chars_per_token: Optional[int] = None
    random_source: Optional[Callable[[], float]] = None


@dataclass
class WorldInfoScanOutput:
    activated_entries: List[PreparedWorldInfoEntry]
    debug: WorldInfoScanDebug


#######################################################################################################################
#
# Helper Functions


def resolve_budget_limit(settings: WorldInfoSettings) -> int:
    base = max(1, round(settings.budget_percent * settings.context_window_tokens / 100))
    if settings.budget_cap_tokens > 0:
        return min(base, settings.budget_cap_tokens)
    return base


def resolve_delay_until_recursion_level(entry: PreparedWorldInfoEntry) -> int:
    value = entry.delay_until_recursion
    if isinstance(value, bool):
        return 1 if value else 0
    return max(0, int(value))


def character_filter_mismatch(entry: PreparedWorldInfoEntry, char_name: str, char_tags: Sequence[str]) -> bool:
    """True when the entry's character filter rules out the current character."""
    char_filter = entry.character_filter
    if not char_filter.names and not char_filter.tags:
        return False
    name = char_name.lower()
    tags = {tag.lower() for tag in char_tags}
    matched = any(n.lower() == name for n in char_filter.names) or any(t.lower() in tags for t in char_filter.tags)
    return matched if char_filter.is_exclude else not matched


def build_history_text(history: Sequence[Mapping[str, str]], scan_depth: int) -> str:
    depth = max(0, scan_depth)
    if depth == 0:
        return ""
    return "\n".join(str(item.get("content") or "") for item in history[-depth:])


#######################################################################################################################
#
# Scan


class _ScanRun:
    """State of one scan invocation."""

    def __init__(self, scan_input: WorldInfoScanInput):
        self.input = scan_input
        self.settings = scan_input.settings
        self.random = scan_input.random_source or random.random
        self.debug = WorldInfoScanDebug()
        self.debug.budget.limit = resolve_budget_limit(self.settings)
        self.entries = sorted(scan_input.entries, key=lambda e: (-e.order, e.uid))
        self.activated: Dict[str, PreparedWorldInfoEntry] = {}
        self.failed_probability: Set[str] = set()
        self.resolved_groups: Set[str] = set()
        self.recursion_buffer = ""
        self.recursion_level = 0
        self.state = ScanState.INITIAL
        self.min_activation_depth = self.settings.scan_depth

    def skip(self, entry: PreparedWorldInfoEntry, reason: ScanSkipReason) -> None:
        self.debug.skips.append(ScanSkip(hash=entry.hash, reason=reason.value))

    def eligibility_skip(self, entry: PreparedWorldInfoEntry, sticky: bool, cooldown: bool) -> Optional[ScanSkipReason]:
        if entry.hash in self.activated:
            return ScanSkipReason.ALREADY_ACTIVATED
        if entry.hash in self.failed_probability:
            return ScanSkipReason.PROBABILITY_FAILED_PRIOR_LOOP
        if entry.disable:
            return ScanSkipReason.ENTRY_DISABLED
        if entry.triggers and self.input.trigger not in entry.triggers:
            return ScanSkipReason.TRIGGER_MISMATCH
        if character_filter_mismatch(entry, self.input.char_name, self.input.char_tags):
            return ScanSkipReason.CHARACTER_FILTER_MISMATCH
        if is_entry_delayed(entry, self.input.message_index) and not sticky:
            return ScanSkipReason.DELAY_SKIP
        if cooldown and not sticky:
            return ScanSkipReason.COOLDOWN_SKIP
        if not sticky:
            level_needed = resolve_delay_until_recursion_level(entry)
            if self.state == ScanState.INITIAL and level_needed > 0:
                return ScanSkipReason.DELAY_UNTIL_RECURSION
            if self.state == ScanState.RECURSION:
                if self.recursion_level < level_needed:
                    return ScanSkipReason.RECURSION_LEVEL_SKIP
                if entry.exclude_recursion:
                    return ScanSkipReason.EXCLUDE_RECURSION
        return None

    def scan_text(self, entry: PreparedWorldInfoEntry) -> str:
        scan_input = self.input
        depth = entry.scan_depth if entry.scan_depth is not None else self.min_activation_depth
        chunks = [build_history_text(scan_input.history, depth)]
        for enabled, text in (
            (entry.match_persona_description, scan_input.persona_description),
            (entry.match_character_description, scan_input.character_description),
            (entry.match_character_personality, scan_input.character_personality),
            (entry.match_character_depth_prompt, scan_input.character_depth_prompt),
            (entry.match_scenario, scan_input.scenario),
            (entry.match_creator_notes, scan_input.creator_notes),
        ):
            if enabled and text:
                chunks.append(text)
        if self.state != ScanState.MIN_ACTIVATIONS and self.recursion_buffer.strip():
            chunks.append(self.recursion_buffer)
        return "\n".join(chunk for chunk in chunks if chunk)

    def collect_candidates(self) -> List[GroupCandidate]:
        candidates: List[GroupCandidate] = []
        for entry in self.entries:
            sticky = entry.hash in self.input.active_sticky_hashes
            cooldown = entry.hash in self.input.active_cooldown_hashes

            reason = self.eligibility_skip(entry, sticky, cooldown)
            if reason is not None:
                self.skip(entry, reason)
                continue

            matched_keys: List[str] = []
            if entry.decorators.activate:
                matched = True
            elif entry.decorators.dont_activate:
                self.skip(entry, ScanSkipReason.DECORATOR_DONT_ACTIVATE)
                continue
            elif entry.constant or sticky:
                matched = True
            elif not entry.key:
                self.skip(entry, ScanSkipReason.NO_PRIMARY_KEYS)
                continue
            else:
                result = match_entry_against_text(entry, self.scan_text(entry), self.settings)
                matched = result.matched
                matched_keys = result.primary_matched + result.secondary_matched

            if not matched:
                self.skip(entry, ScanSkipReason.KEY_MATCH_FAILED)
                continue
            if matched_keys:
                self.debug.matched_keys[entry.hash] = matched_keys

            candidates.append(
                GroupCandidate(
                    entry=entry,
                    score=len(matched_keys),
                    sticky_active=sticky,
                    cooldown_active=cooldown,
                    delayed=is_entry_delayed(entry, self.input.message_index),
                )
            )

        candidates.sort(key=lambda c: (not c.sticky_active, -c.entry.order, c.entry.uid))
        return candidates

    def admit(self, candidates: Sequence[GroupCandidate]) -> bool:
        """Run probability and budget gates. Returns True if recursable content was admitted."""
        budget = self.debug.budget
        activated_now: List[PreparedWorldInfoEntry] = []
        recursable = False

        for candidate in candidates:
            entry = candidate.entry
            if entry.use_probability and entry.probability < 100 and not candidate.sticky_active:
                if self.random() * 100 > entry.probability:
                    self.failed_probability.add(entry.hash)
                    self.skip(entry, ScanSkipReason.PROBABILITY_FAILED)
                    continue

            tokens = estimate_tokens(entry.content, self.input.chars_per_token)
            if not entry.ignore_budget and budget.used + tokens > budget.limit:
                budget.overflowed = True
                self.skip(entry, ScanSkipReason.BUDGET_OVERFLOW)
                continue

            budget.used += tokens
            if entry.hash not in self.activated:
                self.activated[entry.hash] = entry
                activated_now.append(entry)
            if not entry.prevent_recursion:
                recursable = True

        if activated_now:
            chunk = "\n".join(entry.content for entry in activated_now)
            self.recursion_buffer = f"{self.recursion_buffer}\n{chunk}" if self.recursion_buffer else chunk
        return recursable

    def next_state(self, recursable: bool) -> Optional[ScanState]:
        """Pick the state of the next pass, or None to stop."""
        settings = self.settings
        max_reached = settings.max_recursion_steps > 0 and self.recursion_level >= settings.max_recursion_steps
        state_allows = self.state in (ScanState.INITIAL, ScanState.RECURSION) or bool(self.recursion_buffer.strip())
        if settings.recursive and recursable and not max_reached and state_allows:
            self.recursion_level += 1
            return ScanState.RECURSION

        if len(self.activated) < settings.min_activations:
            depth_cap = settings.min_depth_max
            can_deepen = depth_cap <= 0 or self.min_activation_depth < depth_cap
            if can_deepen and self.min_activation_depth < len(self.input.history):
                self.min_activation_depth += 1
                return ScanState.MIN_ACTIVATIONS
        return None

    def run(self) -> WorldInfoScanOutput:
        for pass_index in range(1, SCAN_HARD_LOOP_LIMIT + 1):
            candidates = self.collect_candidates()
            groups = apply_inclusion_groups(
                candidates,
                self.settings,
                f"{self.input.scan_seed}:{pass_index}",
                self.resolved_groups,
            )
            self.resolved_groups |= groups.activated_groups
            recursable = self.admit(groups.selected)

            next_state = self.next_state(recursable)
            if next_state is None:
                break
            self.state = next_state
        else:
            logger.warning(f"World-info scan hit the hard limit of {SCAN_HARD_LOOP_LIMIT} passes")
            self.debug.warnings.append(SCAN_HARD_LIMIT_WARNING)

        return WorldInfoScanOutput(activated_entries=list(self.activated.values()), debug=self.debug)


def scan_world_info_entries(scan_input: WorldInfoScanInput) -> WorldInfoScanOutput:
    """Scan prepared entries and return the activated ones in activation order."""
    output = _ScanRun(scan_input).run()
    logger.debug(
        f"World-info scan activated {len(output.activated_entries)}/{len(scan_input.entries)} entries, "
        f"budget {output.debug.budget.used}/{output.debug.budget.limit}"
    )
    return output

#
# End of world_info_scanner.py
#######################################################################################################################
