# world_info_bindings.py
# Description: Resolve which world-info books apply to a chat and in what order.
#
"""
Books reach a chat through bindings at four scopes: chat, persona,
entity profile (the character) and global. Resolution order is

    chat  ->  persona  ->  merge(entity, global by character strategy)

and each book appears once, at its first position.
"""
#
# Imports
import asyncio
from datetime import datetime, timezone
from typing import List, NamedTuple, Optional, Protocol, Sequence

#
# 3rd-party Libraries
from loguru import logger

#
# Local Imports
from lorewright_Server_API.app.core.World_Info.world_info_types import (
    BindingScope,
    CharacterStrategy,
    WorldInfoBinding,
    WorldInfoBook,
    WorldInfoSettings,
)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class BindingStore(Protocol):
    def list_bindings(self, owner_id: str, scope: str, scope_id: Optional[str]) -> List[WorldInfoBinding]: ...

    def get_books_by_ids(self, owner_id: str, ids: Sequence[str]) -> List[WorldInfoBook]: ...


class ActiveWorldInfoBooks(NamedTuple):
    ordered_books: List[WorldInfoBook]
    ordered_bindings: List[WorldInfoBinding]


#######################################################################################################################
#
# Ordering


def _created_key(binding: WorldInfoBinding) -> datetime:
    created = binding.created_at
    if created is None:
        return _EPOCH
    return created if created.tzinfo else created.replace(tzinfo=timezone.utc)


def sort_bindings(bindings: Sequence[WorldInfoBinding]) -> List[WorldInfoBinding]:
    """Enabled bindings ordered by display order, then creation time, then id."""
    return sorted(
        (b for b in bindings if b.enabled),
        key=lambda b: (b.display_order, _created_key(b), b.id),
    )


def interleave_bindings(first: Sequence[WorldInfoBinding], second: Sequence[WorldInfoBinding]) -> List[WorldInfoBinding]:
    result: List[WorldInfoBinding] = []
    for i in range(max(len(first), len(second))):
        if i < len(first):
            result.append(first[i])
        if i < len(second):
            result.append(second[i])
    return result


def merge_entity_and_global_bindings(
    entity: Sequence[WorldInfoBinding],
    global_: Sequence[WorldInfoBinding],
    strategy: int,
) -> List[WorldInfoBinding]:
    if strategy == CharacterStrategy.GLOBAL_FIRST:
        return [*global_, *entity]
    if strategy == CharacterStrategy.ENTITY_FIRST:
        return [*entity, *global_]
    return interleave_bindings(entity, global_)


def order_world_info_bindings(
    chat: Sequence[WorldInfoBinding],
    persona: Sequence[WorldInfoBinding],
    entity: Sequence[WorldInfoBinding],
    global_: Sequence[WorldInfoBinding],
    strategy: int,
) -> List[WorldInfoBinding]:
    ordered = [
        *sort_bindings(chat),
        *sort_bindings(persona),
        *merge_entity_and_global_bindings(sort_bindings(entity), sort_bindings(global_), strategy),
    ]
    seen = set()
    deduped: List[WorldInfoBinding] = []
    for binding in ordered:
        if binding.book_id in seen:
            continue
        seen.add(binding.book_id)
        deduped.append(binding)
    return deduped


#######################################################################################################################
#
# Resolution


async def resolve_active_world_info_books(
    store: BindingStore,
    owner_id: str,
    chat_id: str,
    entity_profile_id: Optional[str],
    persona_id: Optional[str],
    settings: WorldInfoSettings,
) -> ActiveWorldInfoBooks:
    """Load bindings for every scope, order them, and fetch the bound books."""

    async def load(scope: BindingScope, scope_id: Optional[str]) -> List[WorldInfoBinding]:
        if scope != BindingScope.GLOBAL and not scope_id:
            return []
        return await asyncio.to_thread(store.list_bindings, owner_id, scope.value, scope_id)

    global_bindings = await load(BindingScope.GLOBAL, None)
    entity_bindings = await load(BindingScope.ENTITY_PROFILE, entity_profile_id)
    chat_bindings = await load(BindingScope.CHAT, chat_id)
    persona_bindings = await load(BindingScope.PERSONA, persona_id)

    ordered = order_world_info_bindings(
        chat_bindings, persona_bindings, entity_bindings, global_bindings, settings.character_strategy
    )
    books = await asyncio.to_thread(store.get_books_by_ids, owner_id, [b.book_id for b in ordered])
    logger.debug(f"World-info bindings resolved {len(books)} book(s) for chat {chat_id}")
    return ActiveWorldInfoBooks(ordered_books=books, ordered_bindings=ordered)

#
# End of world_info_bindings.py
#######################################################################################################################
