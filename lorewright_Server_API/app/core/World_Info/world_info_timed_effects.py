# world_info_timed_effects.py
# Description: Sticky / cooldown / delay bookkeeping across chat turns.
#
"""
Timed effects are windows of message indices attached to an entry hash
within one (chat, branch):

- sticky: the entry stays active without re-matching until the window ends
- cooldown: the entry cannot re-activate by matching until the window ends
- delay: the entry cannot activate before a given message index (stateless)

Effects are loaded before a scan and written after it. The store is a
synchronous collaborator (see ``WorldInfoDB``); calls are moved off the event
loop with ``asyncio.to_thread`` and awaited one after another.
"""
#
# Imports
import asyncio
from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Protocol, Sequence, Set

#
# 3rd-party Libraries
from loguru import logger

#
# Local Imports
from lorewright_Server_API.app.core.World_Info.world_info_types import (
    PreparedWorldInfoEntry,
    TimedEffectType,
    TimedEffectUpsert,
    WorldInfoEntry,
    WorldInfoTimedEffect,
)

#######################################################################################################################
#
# Types


class TimedEffectStore(Protocol):
    def list_timed_effects(self, owner_id: str, chat_id: str, branch_id: str) -> List[WorldInfoTimedEffect]: ...

    def delete_timed_effects_by_ids(self, ids: Sequence[str]) -> int: ...

    def upsert_timed_effect(self, effect: TimedEffectUpsert) -> WorldInfoTimedEffect: ...


@dataclass
class TimedEffectsState:
    active_sticky: Set[str] = field(default_factory=set)
    active_cooldown: Set[str] = field(default_factory=set)
    warnings: List[str] = field(default_factory=list)


#######################################################################################################################
#
# Functions


def is_entry_delayed(entry: WorldInfoEntry, message_index: int) -> bool:
    return entry.delay is not None and entry.delay > 0 and message_index < entry.delay


async def load_timed_effects_state(
    store: TimedEffectStore,
    owner_id: str,
    chat_id: str,
    branch_id: str,
    message_index: int,
    entries_by_hash: Mapping[str, PreparedWorldInfoEntry],
    dry_run: bool = False,
) -> TimedEffectsState:
    """
    Read the persisted effects for a (chat, branch) and expire stale ones.

    An expired sticky whose entry still declares a positive cooldown is
    handed off to a protected cooldown window starting at ``message_index``.
    Dry runs touch nothing and report no active effects.
    """
    state = TimedEffectsState()
    if dry_run:
        return state

    rows = await asyncio.to_thread(store.list_timed_effects, owner_id, chat_id, branch_id)
    delete_ids: List[str] = []
    handoffs: List[PreparedWorldInfoEntry] = []

    for row in rows:
        if row.end_message_index < message_index:
            delete_ids.append(row.id)
            if row.effect_type == TimedEffectType.STICKY.value:
                entry = entries_by_hash.get(row.entry_hash)
                if entry is not None and entry.cooldown and entry.cooldown > 0:
                    handoffs.append(entry)
            continue

        if row.effect_type == TimedEffectType.STICKY.value:
            state.active_sticky.add(row.entry_hash)
        elif row.effect_type == TimedEffectType.COOLDOWN.value:
            state.active_cooldown.add(row.entry_hash)

    for entry in handoffs:
        handoff = await asyncio.to_thread(
            store.upsert_timed_effect,
            TimedEffectUpsert(
                owner_id=owner_id,
                chat_id=chat_id,
                branch_id=branch_id,
                entry_hash=entry.hash,
                book_id=entry.book_id,
                entry_uid=entry.uid,
                effect_type=TimedEffectType.COOLDOWN.value,
                start_message_index=message_index,
                end_message_index=message_index + entry.cooldown,
                protected=True,
            ),
        )
        # The upsert may have reused an expired cooldown row of the same hash
        if handoff.id in delete_ids:
            delete_ids.remove(handoff.id)
        state.active_cooldown.add(entry.hash)
        logger.debug(f"World-info sticky expired for {entry.hash[:12]}; cooldown until {handoff.end_message_index}")

    if delete_ids:
        await asyncio.to_thread(store.delete_timed_effects_by_ids, delete_ids)

    return state


async def apply_timed_effects_for_activated_entries(
    store: TimedEffectStore,
    owner_id: str,
    chat_id: str,
    branch_id: str,
    message_index: int,
    activated_entries: Iterable[PreparedWorldInfoEntry],
    sticky_hashes: Iterable[str] = (),
    dry_run: bool = False,
) -> int:
    """
    Open or refresh sticky/cooldown windows for activated entries. Returns rows written.

    Entries in ``sticky_hashes`` are active through a live sticky window; their
    windows are left unchanged until the sticky expires.
    """
    if dry_run:
        return 0

    carried = set(sticky_hashes)
    written = 0
    for entry in activated_entries:
        if entry.hash in carried:
            continue
        for effect_type, length in (
            (TimedEffectType.STICKY, entry.sticky),
            (TimedEffectType.COOLDOWN, entry.cooldown),
        ):
            if not length or length <= 0:
                continue
            await asyncio.to_thread(
                store.upsert_timed_effect,
                TimedEffectUpsert(
                    owner_id=owner_id,
                    chat_id=chat_id,
                    branch_id=branch_id,
                    entry_hash=entry.hash,
                    book_id=entry.book_id,
                    entry_uid=entry.uid,
                    effect_type=effect_type.value,
                    start_message_index=message_index,
                    end_message_index=message_index + length,
                ),
            )
            written += 1
    return written

#
# End of world_info_timed_effects.py
#######################################################################################################################
