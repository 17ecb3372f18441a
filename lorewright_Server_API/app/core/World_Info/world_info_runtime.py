# world_info_runtime.py
# Description: End-to-end world-info resolution for one chat turn.
#
"""
Runtime orchestration for world info.

``resolve_world_info_runtime`` wires the stages together:

    settings/persona/character -> bound books -> prepared entries
    -> timed-effect state -> scan -> prompt assembly -> timed-effect writes

Collaborators are synchronous (SQLite store, chat lookups) and are called
through ``asyncio.to_thread``. A ``dry_run`` resolution reads but never
writes, so previews do not disturb sticky/cooldown state.
"""
#
# Imports
import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

#
# 3rd-party Libraries
from loguru import logger

#
# Local Imports
from lorewright_Server_API.app.core.config import load_world_info_config
from lorewright_Server_API.app.core.Logging.log_context import log_context, new_request_id
from lorewright_Server_API.app.core.Metrics.metrics_manager import (
    increment_counter,
    observe_histogram,
    time_operation,
)
from lorewright_Server_API.app.core.World_Info.world_info_bindings import (
    BindingStore,
    resolve_active_world_info_books,
)
from lorewright_Server_API.app.core.World_Info.world_info_normalizer import (
    build_world_info_entry_hash,
    normalize_trigger,
    normalize_world_info_book_entries,
    parse_leading_decorators,
)
from lorewright_Server_API.app.core.World_Info.world_info_prompt_assembly import assemble_world_info_prompt_output
from lorewright_Server_API.app.core.World_Info.world_info_scanner import WorldInfoScanInput, scan_world_info_entries
from lorewright_Server_API.app.core.World_Info.world_info_timed_effects import (
    TimedEffectStore,
    apply_timed_effects_for_activated_entries,
    load_timed_effects_state,
)
from lorewright_Server_API.app.core.World_Info.world_info_types import (
    SCAN_HARD_LIMIT_WARNING,
    BudgetTrace,
    EntryDecorators,
    PreparedWorldInfoEntry,
    WorldInfoBook,
    WorldInfoResolveResult,
    WorldInfoScanDebug,
    WorldInfoSettings,
)

#######################################################################################################################
#
# Collaborators


class WorldInfoStore(TimedEffectStore, BindingStore, Protocol):
    def get_settings(self, owner_id: str) -> WorldInfoSettings: ...


@dataclass
class ChatRef:
    id: str
    active_branch_id: Optional[str] = None
    entity_profile_id: Optional[str] = None


@dataclass
class PersonaRef:
    id: str
    prefix: str = ""


class WorldInfoChatContext(Protocol):
    """Lookups into chat storage the engine needs but does not own."""

    def get_chat(self, chat_id: str) -> Optional[ChatRef]: ...

    def get_entity_profile(self, entity_profile_id: str) -> Optional[Mapping[str, Any]]: ...

    def get_selected_persona(self, owner_id: str) -> Optional[PersonaRef]: ...

    def get_branch_message_index(self, chat_id: str, branch_id: str) -> int: ...


#######################################################################################################################
#
# Helper Functions


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def extract_character_fields(spec: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Pull the match-source texts, name and tags out of a character card spec."""
    spec = spec if isinstance(spec, Mapping) else {}
    extensions = spec.get("extensions") if isinstance(spec.get("extensions"), Mapping) else {}
    depth_prompt = extensions.get("depth_prompt")
    if isinstance(depth_prompt, Mapping):
        depth_prompt = depth_prompt.get("prompt")
    tags = spec.get("tags")
    return {
        "character_description": _text(spec.get("description")),
        "character_personality": _text(spec.get("personality")),
        "scenario": _text(spec.get("scenario")),
        "creator_notes": _text(spec.get("creator_notes")) or _text(spec.get("creatorcomment")),
        "character_depth_prompt": _text(spec.get("system_prompt")) or _text(depth_prompt),
        "char_name": _text(spec.get("name")),
        "char_tags": [t for t in tags if isinstance(t, str)] if isinstance(tags, list) else [],
    }


def prepare_world_info_entries(books: Iterable[WorldInfoBook]) -> List[PreparedWorldInfoEntry]:
    """
    Normalize every entry of every book, strip leading decorators and attach
    book identity plus a content hash. Book order, then entry order, is kept.
    """
    prepared: List[PreparedWorldInfoEntry] = []
    for book in books:
        for entry in normalize_world_info_book_entries(book.data).values():
            decorators = parse_leading_decorators(entry.content)
            stripped = entry.model_copy(update={"content": decorators.clean_content})
            prepared.append(
                PreparedWorldInfoEntry(
                    **stripped.model_dump(),
                    book_id=book.id,
                    book_name=book.name,
                    hash=build_world_info_entry_hash(book.id, stripped.uid, stripped),
                    decorators=EntryDecorators(
                        activate=decorators.activate,
                        dont_activate=decorators.dont_activate,
                    ),
                )
            )
    return prepared


def build_empty_world_info_result(warning: Optional[str] = None) -> WorldInfoResolveResult:
    return WorldInfoResolveResult(
        debug=WorldInfoScanDebug(warnings=[warning] if warning else [], budget=BudgetTrace(limit=1)),
    )


def _record_metrics(result: WorldInfoResolveResult, trigger: str, dry_run: bool) -> None:
    increment_counter(
        "world_info_resolutions_total",
        labels={"trigger": trigger, "dry_run": str(dry_run).lower(), "outcome": "resolved"},
    )
    observe_histogram("world_info_activated_entries", len(result.activated_entries))
    if result.debug.budget.overflowed:
        increment_counter("world_info_budget_overflow_total")
    if SCAN_HARD_LIMIT_WARNING in result.debug.warnings:
        increment_counter("world_info_scan_hard_limit_total")


#######################################################################################################################
#
# Resolution


async def resolve_world_info_runtime(
    store: WorldInfoStore,
    chat_context: WorldInfoChatContext,
    owner_id: str,
    chat_id: str,
    branch_id: str,
    entity_profile_id: Optional[str],
    trigger: str,
    history: Sequence[Mapping[str, str]],
    scan_seed: Optional[str] = None,
    dry_run: bool = False,
) -> WorldInfoResolveResult:
    """
    Resolve world info for one generation in (chat, branch).

    ``history`` is the chat as ``{"role", "content"}`` mappings, oldest first.
    ``trigger`` is the generation kind; unknown kinds count as ``normal``.
    A missing ``scan_seed`` gets a fresh random seed, which makes group picks
    non-reproducible; pass one to replay a resolution.
    """
    runtime_trigger = normalize_trigger(trigger) or "normal"
    scan_seed = scan_seed or new_request_id()

    with log_context(owner_id=owner_id, chat_id=chat_id, branch_id=branch_id, ps_component="world_info") as log:
        with time_operation("world_info_resolve_duration_seconds"):
            settings = await asyncio.to_thread(store.get_settings, owner_id)
            persona = await asyncio.to_thread(chat_context.get_selected_persona, owner_id)
            profile = (
                await asyncio.to_thread(chat_context.get_entity_profile, entity_profile_id)
                if entity_profile_id
                else None
            )

            active = await resolve_active_world_info_books(
                store,
                owner_id=owner_id,
                chat_id=chat_id,
                entity_profile_id=entity_profile_id,
                persona_id=persona.id if persona else None,
                settings=settings,
            )
            entries = prepare_world_info_entries(active.ordered_books)
            message_index = await asyncio.to_thread(chat_context.get_branch_message_index, chat_id, branch_id)

            timed_state = await load_timed_effects_state(
                store,
                owner_id=owner_id,
                chat_id=chat_id,
                branch_id=branch_id,
                message_index=message_index,
                entries_by_hash={entry.hash: entry for entry in entries},
                dry_run=dry_run,
            )

            scanned = scan_world_info_entries(
                WorldInfoScanInput(
                    entries=entries,
                    settings=settings,
                    history=history,
                    trigger=runtime_trigger,
                    message_index=message_index,
                    scan_seed=scan_seed,
                    dry_run=dry_run,
                    active_sticky_hashes=timed_state.active_sticky,
                    active_cooldown_hashes=timed_state.active_cooldown,
                    persona_description=_text(persona.prefix) if persona else "",
                    chars_per_token=load_world_info_config().token_chars_per_token,
                    **extract_character_fields(profile),
                )
            )
            prompt = assemble_world_info_prompt_output(scanned.activated_entries, settings)

            await apply_timed_effects_for_activated_entries(
                store,
                owner_id=owner_id,
                chat_id=chat_id,
                branch_id=branch_id,
                message_index=message_index,
                activated_entries=scanned.activated_entries,
                sticky_hashes=timed_state.active_sticky,
                dry_run=dry_run,
            )

        debug = scanned.debug.model_copy(update={"warnings": [*scanned.debug.warnings, *timed_state.warnings]})
        result = WorldInfoResolveResult(
            **prompt.model_dump(),
            activated_entries=scanned.activated_entries,
            debug=debug,
        )
        _record_metrics(result, runtime_trigger, dry_run)
        log.info(
            f"World info resolved: {len(result.activated_entries)} of {len(entries)} entries from "
            f"{len(active.ordered_books)} book(s) at message {message_index}"
            + (" (dry run)" if dry_run else "")
        )
        return result


async def resolve_world_info_runtime_for_chat(
    store: WorldInfoStore,
    chat_context: WorldInfoChatContext,
    owner_id: str,
    chat_id: str,
    trigger: str,
    history: Sequence[Mapping[str, str]],
    branch_id: Optional[str] = None,
    entity_profile_id: Optional[str] = None,
    scan_seed: Optional[str] = None,
    dry_run: bool = False,
) -> WorldInfoResolveResult:
    """
    Like ``resolve_world_info_runtime`` but derives branch and character from
    the chat. An unknown chat or branch yields an empty result carrying a
    ``chat_not_found`` / ``branch_not_found`` warning instead of raising.
    """
    chat = await asyncio.to_thread(chat_context.get_chat, chat_id)
    if chat is None:
        logger.warning(f"World-info resolution skipped: chat {chat_id} not found")
        increment_counter("world_info_resolutions_total", labels={"trigger": str(trigger), "dry_run": str(dry_run).lower(), "outcome": "chat_not_found"})
        return build_empty_world_info_result("chat_not_found")

    resolved_branch = branch_id or chat.active_branch_id
    if not resolved_branch:
        logger.warning(f"World-info resolution skipped: no branch for chat {chat_id}")
        increment_counter("world_info_resolutions_total", labels={"trigger": str(trigger), "dry_run": str(dry_run).lower(), "outcome": "branch_not_found"})
        return build_empty_world_info_result("branch_not_found")

    return await resolve_world_info_runtime(
        store,
        chat_context,
        owner_id=owner_id,
        chat_id=chat.id,
        branch_id=resolved_branch,
        entity_profile_id=entity_profile_id or chat.entity_profile_id,
        trigger=trigger,
        history=history,
        scan_seed=scan_seed,
        dry_run=dry_run,
    )

#
# End of world_info_runtime.py
#######################################################################################################################
