# world_info_normalizer.py
# Description: Untyped payload -> typed world-info entries, books and settings.
#
"""
Normalization boundary for world info.

Everything that arrives from storage or from a client passes through here
exactly once. Downstream stages (matcher, groups, scanner, assembler) only
ever see the typed models from ``world_info_types`` and never re-check types.

Normalizing an already-normalized payload returns an equal payload.
"""
#
# Imports
import hashlib
import json
import math
import re
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Union

#
# 3rd-party Libraries
from loguru import logger

#
# Local Imports
from lorewright_Server_API.app.core.World_Info.world_info_types import (
    DEFAULT_WORLD_INFO_SETTINGS,
    TRIGGER_ALIASES,
    WORLD_INFO_TRIGGERS,
    CharacterFilter,
    CharacterStrategy,
    WorldInfoBookData,
    WorldInfoEntry,
    WorldInfoSettings,
)

#######################################################################################################################
#
# Coercion helpers


def _is_record(value: Any) -> bool:
    return isinstance(value, Mapping)


def _as_bool(value: Any, fallback: bool) -> bool:
    return value if isinstance(value, bool) else fallback


def _as_str(value: Any, fallback: str = "") -> str:
    return value if isinstance(value, str) else fallback


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _as_int(value: Any, fallback: int) -> int:
    return math.floor(value) if _is_number(value) else fallback


def _as_nullable_int(value: Any) -> Optional[int]:
    """Floors numbers; anything else (or a negative value) means "unset"."""
    if not _is_number(value):
        return None
    floored = math.floor(value)
    return floored if floored >= 0 else None


def _as_str_list(value: Any) -> List[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [item for item in value if isinstance(item, str)]


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _pick(src: Mapping[str, Any], camel: str, snake: Optional[str] = None) -> Any:
    if camel in src:
        return src[camel]
    if snake and snake in src:
        return src[snake]
    return None


def normalize_trigger(value: Any) -> Optional[str]:
    """Map a trigger name onto the runtime trigger set; unknown names map to None."""
    if not isinstance(value, str):
        return None
    name = value.strip().lower()
    name = TRIGGER_ALIASES.get(name, name)
    return name if name in WORLD_INFO_TRIGGERS else None


def normalize_triggers(value: Any) -> List[str]:
    result: List[str] = []
    for item in _as_str_list(value):
        trigger = normalize_trigger(item)
        if trigger and trigger not in result:
            result.append(trigger)
    return result


#######################################################################################################################
#
# Entries


def normalize_character_filter(value: Any) -> CharacterFilter:
    if isinstance(value, CharacterFilter):
        return value
    if not _is_record(value):
        return CharacterFilter()
    return CharacterFilter(
        is_exclude=_as_bool(_pick(value, "isExclude", "is_exclude"), False),
        names=_as_str_list(value.get("names")),
        tags=_as_str_list(value.get("tags")),
    )


def _normalize_delay_until_recursion(value: Any) -> Union[bool, int]:
    if isinstance(value, bool):
        return value
    if _is_number(value):
        return max(0, math.floor(value))
    return False


def normalize_world_info_entry(raw: Any, fallback_uid: int) -> WorldInfoEntry:
    """
    Coerce an arbitrary mapping into a ``WorldInfoEntry``.

    Wrong-typed fields fall back to defaults; numeric fields are floored and
    clamped to their valid ranges. Accepts camelCase (wire) or snake_case keys.
    """
    if isinstance(raw, WorldInfoEntry):
        raw = raw.model_dump(by_alias=True)
    src: Mapping[str, Any] = raw if _is_record(raw) else {}

    def get(camel: str, snake: Optional[str] = None) -> Any:
        return _pick(src, camel, snake)

    uid_raw = get("uid")
    uid = max(0, math.floor(uid_raw)) if _is_number(uid_raw) else fallback_uid

    def opt_bool(camel: str, snake: str) -> Optional[bool]:
        value = get(camel, snake)
        return value if isinstance(value, bool) else None

    return WorldInfoEntry(
        uid=uid,
        key=_as_str_list(get("key")),
        keysecondary=_as_str_list(get("keysecondary")),
        comment=_as_str(get("comment")),
        content=_as_str(get("content")),
        constant=_as_bool(get("constant"), False),
        vectorized=_as_bool(get("vectorized"), False),
        selective=_as_bool(get("selective"), True),
        selective_logic=_clamp(_as_int(get("selectiveLogic", "selective_logic"), 0), 0, 3),
        add_memo=_as_bool(get("addMemo", "add_memo"), False),
        order=_as_int(get("order"), 100),
        position=_as_int(get("position"), 0),
        disable=_as_bool(get("disable"), False),
        ignore_budget=_as_bool(get("ignoreBudget", "ignore_budget"), False),
        exclude_recursion=_as_bool(get("excludeRecursion", "exclude_recursion"), False),
        prevent_recursion=_as_bool(get("preventRecursion", "prevent_recursion"), False),
        match_persona_description=_as_bool(get("matchPersonaDescription", "match_persona_description"), False),
        match_character_description=_as_bool(get("matchCharacterDescription", "match_character_description"), False),
        match_character_personality=_as_bool(get("matchCharacterPersonality", "match_character_personality"), False),
        match_character_depth_prompt=_as_bool(get("matchCharacterDepthPrompt", "match_character_depth_prompt"), False),
        match_scenario=_as_bool(get("matchScenario", "match_scenario"), False),
        match_creator_notes=_as_bool(get("matchCreatorNotes", "match_creator_notes"), False),
        delay_until_recursion=_normalize_delay_until_recursion(get("delayUntilRecursion", "delay_until_recursion")),
        probability=_clamp(_as_int(get("probability"), 100), 0, 100),
        use_probability=_as_bool(get("useProbability", "use_probability"), True),
        depth=max(0, _as_int(get("depth"), 4)),
        outlet_name=_as_str(get("outletName", "outlet_name")),
        group=_as_str(get("group")),
        group_override=_as_bool(get("groupOverride", "group_override"), False),
        group_weight=max(0, _as_int(get("groupWeight", "group_weight"), 100)),
        scan_depth=_as_nullable_int(get("scanDepth", "scan_depth")),
        case_sensitive=opt_bool("caseSensitive", "case_sensitive"),
        match_whole_words=opt_bool("matchWholeWords", "match_whole_words"),
        use_group_scoring=opt_bool("useGroupScoring", "use_group_scoring"),
        automation_id=_as_str(get("automationId", "automation_id")),
        role=_clamp(_as_int(get("role"), 0), 0, 2),
        sticky=_as_nullable_int(get("sticky")),
        cooldown=_as_nullable_int(get("cooldown")),
        delay=_as_nullable_int(get("delay")),
        triggers=normalize_triggers(get("triggers")),
        character_filter=normalize_character_filter(get("characterFilter", "character_filter")),
        extensions=dict(get("extensions")) if _is_record(get("extensions")) else {},
    )


#######################################################################################################################
#
# Books


def normalize_world_info_book_data(raw: Any) -> WorldInfoBookData:
    if isinstance(raw, WorldInfoBookData):
        return raw
    if not _is_record(raw):
        return WorldInfoBookData()
    entries = raw.get("entries")
    extensions = raw.get("extensions")
    return WorldInfoBookData(
        name=_as_str(raw.get("name")),
        entries={str(k): dict(v) if _is_record(v) else {} for k, v in entries.items()} if _is_record(entries) else {},
        extensions=dict(extensions) if _is_record(extensions) else {},
    )


def normalize_world_info_book_entries(data: WorldInfoBookData) -> Dict[str, WorldInfoEntry]:
    """Normalize every entry of a book, assigning increasing fallback uids."""
    normalized: Dict[str, WorldInfoEntry] = {}
    next_uid = 0
    for key, raw_entry in data.entries.items():
        entry = normalize_world_info_entry(raw_entry, next_uid)
        normalized[key] = entry
        next_uid = max(next_uid, entry.uid + 1)
    return normalized


def normalize_world_info_book_payload(raw: Any) -> WorldInfoBookData:
    """Book payload with every entry replaced by its normalized wire form."""
    data = normalize_world_info_book_data(raw)
    entries = normalize_world_info_book_entries(data)
    return WorldInfoBookData(
        name=data.name,
        entries={key: entry.model_dump(by_alias=True, mode="json") for key, entry in entries.items()},
        extensions=data.extensions,
    )


_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify_world_info_name(name: str) -> str:
    slug = _SLUG_RE.sub("-", (name or "").lower().strip()).strip("-")
    return slug or "world-info-book"


#######################################################################################################################
#
# Decorators & hashing


class ParsedDecorators(NamedTuple):
    clean_content: str
    activate: bool
    dont_activate: bool


def parse_leading_decorators(content: str) -> ParsedDecorators:
    """
    Strip ``@@`` directives from the head of an entry's content.

    ``@@activate`` / ``@@dont_activate`` set flags, ``@@@x`` is an escaped
    literal ``@@x`` line that ends the header, other ``@@`` lines are dropped.
    The first ordinary line ends the header.
    """
    kept: List[str] = []
    activate = False
    dont_activate = False
    in_header = True

    for line in re.split(r"\r?\n", content or ""):
        stripped = line.strip()
        if in_header:
            if stripped.startswith("@@@"):
                kept.append(line.replace("@@@", "@@", 1))
                in_header = False
                continue
            if stripped == "@@activate":
                activate = True
                continue
            if stripped == "@@dont_activate":
                dont_activate = True
                continue
            if stripped.startswith("@@"):
                continue
            in_header = False
        kept.append(line)

    return ParsedDecorators("\n".join(kept).strip(), activate, dont_activate)


def build_world_info_entry_hash(book_id: str, uid: int, entry: WorldInfoEntry) -> str:
    payload = json.dumps(
        entry.model_dump(by_alias=True, mode="json"),
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return hashlib.sha256(f"{book_id}:{uid}:{payload}".encode("utf-8")).hexdigest()


#######################################################################################################################
#
# Settings

_SETTINGS_INT_FIELDS = {
    # snake name: (camel name, low, high)
    "scan_depth": ("scanDepth", 0, 1000),
    "min_activations": ("minActivations", 0, 10000),
    "min_depth_max": ("minDepthMax", 0, 1000),
    "min_activations_depth_max": ("minActivationsDepthMax", 0, 1000),
    "budget_percent": ("budgetPercent", 0, 100),
    "budget_cap_tokens": ("budgetCapTokens", 0, 10_000_000),
    "context_window_tokens": ("contextWindowTokens", 1, 10_000_000),
    "max_recursion_steps": ("maxRecursionSteps", 0, 1000),
}
_SETTINGS_BOOL_FIELDS = {
    "include_names": "includeNames",
    "recursive": "recursive",
    "overflow_alert": "overflowAlert",
    "case_sensitive": "caseSensitive",
    "match_whole_words": "matchWholeWords",
    "use_group_scoring": "useGroupScoring",
}
_VALID_STRATEGIES = {strategy.value for strategy in CharacterStrategy}


def _strategy(value: Any) -> Optional[int]:
    if not _is_number(value):
        return None
    floored = math.floor(value)
    return floored if floored in _VALID_STRATEGIES else None


def normalize_world_info_settings(
    raw: Any,
    current: Optional[WorldInfoSettings] = None,
) -> WorldInfoSettings:
    """
    Apply a (possibly partial) settings payload on top of ``current``.

    Out-of-range numbers are clamped, wrong-typed values are ignored.
    ``min_activations`` and ``max_recursion_steps`` are mutually exclusive:
    whichever the payload sets positive zeroes the other (``min_activations``
    wins when both are set). ``min_depth_max`` and its legacy alias
    ``min_activations_depth_max`` are kept equal.
    """
    if isinstance(raw, WorldInfoSettings):
        raw = raw.model_dump(by_alias=True)
    src: Mapping[str, Any] = raw if _is_record(raw) else {}
    base = current.model_dump() if current is not None else {"owner_id": "", **DEFAULT_WORLD_INFO_SETTINGS}
    values = dict(base)

    for name, (camel, low, high) in _SETTINGS_INT_FIELDS.items():
        value = _pick(src, camel, name)
        if _is_number(value):
            values[name] = _clamp(math.floor(value), low, high)
        elif value is not None:
            logger.debug(f"Ignoring non-numeric world-info setting {camel}={value!r}")

    for name, camel in _SETTINGS_BOOL_FIELDS.items():
        value = _pick(src, camel, name)
        if isinstance(value, bool):
            values[name] = value

    character = _strategy(_pick(src, "characterStrategy", "character_strategy"))
    insertion = _strategy(_pick(src, "insertionStrategy", "insertion_strategy"))
    strategy = character if character is not None else insertion
    if strategy is None:
        strategy = _strategy(values.get("character_strategy"))
    if strategy is None:
        strategy = CharacterStrategy.ENTITY_FIRST.value
    values["character_strategy"] = strategy
    values["insertion_strategy"] = strategy

    depth_max = _pick(src, "minDepthMax", "min_depth_max")
    legacy_depth_max = _pick(src, "minActivationsDepthMax", "min_activations_depth_max")
    if _is_number(depth_max) or not _is_number(legacy_depth_max):
        values["min_activations_depth_max"] = values["min_depth_max"]
    else:
        values["min_depth_max"] = values["min_activations_depth_max"]

    patch_min = _is_number(_pick(src, "minActivations", "min_activations")) and values["min_activations"] > 0
    patch_steps = _is_number(_pick(src, "maxRecursionSteps", "max_recursion_steps")) and values["max_recursion_steps"] > 0
    if patch_min:
        values["max_recursion_steps"] = 0
    elif patch_steps:
        values["min_activations"] = 0
    elif values["min_activations"] > 0 and values["max_recursion_steps"] > 0:
        values["max_recursion_steps"] = 0

    owner_id = _pick(src, "ownerId", "owner_id")
    if isinstance(owner_id, str) and owner_id:
        values["owner_id"] = owner_id
    meta = src.get("meta")
    if _is_record(meta):
        values["meta"] = dict(meta)
    values.setdefault("meta", {})

    return WorldInfoSettings(**values)

#
# End of world_info_normalizer.py
#######################################################################################################################
