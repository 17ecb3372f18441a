# world_info_types.py
# Description: Data models, defaults and limits for the world-info activation engine.
#
"""
Typed shapes shared by every stage of the world-info pipeline.

Models use snake_case attributes with camelCase aliases so that
``model_dump(by_alias=True)`` reproduces the lorebook wire format
(``selectiveLogic``, ``keysecondary``, ``characterFilter``...).
"""
#
# Imports
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

#
# 3rd-party Libraries
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

#######################################################################################################################
#
# Limits & Enumerations

MAX_WORLD_INFO_BOOK_BYTES = 5 * 1024 * 1024
MAX_WORLD_INFO_ENTRIES_PER_BOOK = 10000
MAX_WORLD_INFO_ENTRY_CONTENT_CHARS = 20000

SCAN_HARD_LOOP_LIMIT = 64
SCAN_HARD_LIMIT_WARNING = "scan loop stopped by hard limit"


class SelectiveLogic(int, Enum):
    AND_ANY = 0
    NOT_ALL = 1
    NOT_ANY = 2
    AND_ALL = 3


class WorldInfoPosition(int, Enum):
    BEFORE = 0
    AFTER = 1
    AN_TOP = 2
    AN_BOTTOM = 3
    AT_DEPTH = 4
    EM_TOP = 5
    EM_BOTTOM = 6
    OUTLET = 7


class WorldInfoRole(int, Enum):
    SYSTEM = 0
    USER = 1
    ASSISTANT = 2


class CharacterStrategy(int, Enum):
    INTERLEAVE = 0
    ENTITY_FIRST = 1
    GLOBAL_FIRST = 2


class BindingScope(str, Enum):
    GLOBAL = "global"
    CHAT = "chat"
    ENTITY_PROFILE = "entity_profile"
    PERSONA = "persona"


class BindingRole(str, Enum):
    PRIMARY = "primary"
    ADDITIONAL = "additional"


class BookSource(str, Enum):
    NATIVE = "native"
    IMPORTED = "imported"
    CONVERTED = "converted"


class TimedEffectType(str, Enum):
    STICKY = "sticky"
    COOLDOWN = "cooldown"


WORLD_INFO_TRIGGERS = ("normal", "continue", "impersonate", "swipe", "regenerate", "quiet")
TRIGGER_ALIASES = {
    "generate": "normal",
    "continue_generation": "continue",
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


#######################################################################################################################
#
# Entries


class CharacterFilter(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    is_exclude: bool = False
    names: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)


class WorldInfoEntry(_CamelModel):
    """A single normalized lore entry. Produced only by the normalizer."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    uid: int = 0
    key: List[str] = Field(default_factory=list)
    keysecondary: List[str] = Field(default_factory=list)
    comment: str = ""
    content: str = ""
    constant: bool = False
    vectorized: bool = False
    selective: bool = True
    selective_logic: int = SelectiveLogic.AND_ANY.value
    add_memo: bool = False
    order: int = 100
    position: int = WorldInfoPosition.BEFORE.value
    disable: bool = False
    ignore_budget: bool = False
    exclude_recursion: bool = False
    prevent_recursion: bool = False
    match_persona_description: bool = False
    match_character_description: bool = False
    match_character_personality: bool = False
    match_character_depth_prompt: bool = False
    match_scenario: bool = False
    match_creator_notes: bool = False
    delay_until_recursion: Union[bool, int] = False
    probability: int = 100
    use_probability: bool = True
    depth: int = 4
    outlet_name: str = ""
    group: str = ""
    group_override: bool = False
    group_weight: int = 100
    scan_depth: Optional[int] = None
    case_sensitive: Optional[bool] = None
    match_whole_words: Optional[bool] = None
    use_group_scoring: Optional[bool] = None
    automation_id: str = ""
    role: int = WorldInfoRole.SYSTEM.value
    sticky: Optional[int] = None
    cooldown: Optional[int] = None
    delay: Optional[int] = None
    triggers: List[str] = Field(default_factory=list)
    character_filter: CharacterFilter = Field(default_factory=CharacterFilter)
    extensions: Dict[str, Any] = Field(default_factory=dict)


class EntryDecorators(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    activate: bool = False
    dont_activate: bool = False


class PreparedWorldInfoEntry(WorldInfoEntry):
    """An entry bound to its book with a stable identity hash."""

    book_id: str
    book_name: str = ""
    hash: str
    decorators: EntryDecorators = Field(default_factory=EntryDecorators)


#######################################################################################################################
#
# Settings


class WorldInfoSettings(_CamelModel):
    owner_id: str = ""
    scan_depth: int = 2
    min_activations: int = 0
    min_depth_max: int = 0
    min_activations_depth_max: int = 0
    budget_percent: int = 25
    budget_cap_tokens: int = 0
    context_window_tokens: int = 8192
    include_names: bool = True
    recursive: bool = False
    overflow_alert: bool = False
    case_sensitive: bool = False
    match_whole_words: bool = False
    use_group_scoring: bool = False
    insertion_strategy: int = CharacterStrategy.ENTITY_FIRST.value
    character_strategy: int = CharacterStrategy.ENTITY_FIRST.value
    max_recursion_steps: int = 0
    meta: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


DEFAULT_WORLD_INFO_SETTINGS: Dict[str, Any] = WorldInfoSettings().model_dump(
    exclude={"owner_id", "created_at", "updated_at"}
)


def build_default_world_info_settings(
    owner_id: str,
    overrides: Optional[Dict[str, Any]] = None,
) -> WorldInfoSettings:
    """Fresh default settings for an owner, optionally seeded from configuration."""
    values = dict(DEFAULT_WORLD_INFO_SETTINGS)
    for name, value in (overrides or {}).items():
        if name in values and value is not None:
            values[name] = value
    values["meta"] = {}
    return WorldInfoSettings(owner_id=owner_id, **values)


#######################################################################################################################
#
# Books, bindings, timed effects


class WorldInfoBookData(_CamelModel):
    name: str = ""
    entries: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    extensions: Dict[str, Any] = Field(default_factory=dict)


class WorldInfoBook(_CamelModel):
    id: str
    owner_id: str
    slug: str
    name: str
    description: Optional[str] = None
    data: WorldInfoBookData = Field(default_factory=WorldInfoBookData)
    extensions: Dict[str, Any] = Field(default_factory=dict)
    source: str = BookSource.NATIVE.value
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None


class WorldInfoBinding(_CamelModel):
    id: str
    owner_id: str
    scope: str
    scope_id: Optional[str] = None
    book_id: str
    binding_role: str = BindingRole.ADDITIONAL.value
    display_order: int = 0
    enabled: bool = True
    meta: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class WorldInfoBindingInput(_CamelModel):
    book_id: str
    binding_role: str = BindingRole.ADDITIONAL.value
    display_order: int = 0
    enabled: bool = True
    meta: Dict[str, Any] = Field(default_factory=dict)


class WorldInfoTimedEffect(_CamelModel):
    id: str
    owner_id: str
    chat_id: str
    branch_id: str
    entry_hash: str
    book_id: str
    entry_uid: int
    effect_type: str
    start_message_index: int
    end_message_index: int
    protected: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TimedEffectUpsert(_CamelModel):
    owner_id: str
    chat_id: str
    branch_id: str
    entry_hash: str
    book_id: str
    entry_uid: int
    effect_type: str
    start_message_index: int
    end_message_index: int
    protected: bool = False


#######################################################################################################################
#
# Scan & resolve results


class ScanSkipReason(str, Enum):
    ALREADY_ACTIVATED = "already_activated"
    PROBABILITY_FAILED_PRIOR_LOOP = "probability_failed_prior_loop"
    ENTRY_DISABLED = "entry_disabled"
    TRIGGER_MISMATCH = "trigger_mismatch"
    CHARACTER_FILTER_MISMATCH = "character_filter_mismatch"
    DELAY_SKIP = "delay_skip"
    COOLDOWN_SKIP = "cooldown_skip"
    DELAY_UNTIL_RECURSION = "delay_until_recursion"
    RECURSION_LEVEL_SKIP = "recursion_level_skip"
    EXCLUDE_RECURSION = "exclude_recursion"
    DECORATOR_DONT_ACTIVATE = "decorator_dont_activate"
    NO_PRIMARY_KEYS = "no_primary_keys"
    KEY_MATCH_FAILED = "key_match_failed"
    PROBABILITY_FAILED = "probability_failed"
    BUDGET_OVERFLOW = "budget_overflow"


class ScanSkip(_CamelModel):
    hash: str
    reason: str


class BudgetTrace(_CamelModel):
    limit: int = 1
    used: int = 0
    overflowed: bool = False


class WorldInfoScanDebug(_CamelModel):
    warnings: List[str] = Field(default_factory=list)
    matched_keys: Dict[str, List[str]] = Field(default_factory=dict)
    skips: List[ScanSkip] = Field(default_factory=list)
    budget: BudgetTrace = Field(default_factory=BudgetTrace)


class DepthEntry(_CamelModel):
    depth: int
    role: int
    content: str
    book_id: str
    uid: int


class WorldInfoPromptOutput(_CamelModel):
    world_info_before: str = ""
    world_info_after: str = ""
    depth_entries: List[DepthEntry] = Field(default_factory=list)
    outlet_entries: Dict[str, List[str]] = Field(default_factory=dict)
    an_top: List[str] = Field(default_factory=list)
    an_bottom: List[str] = Field(default_factory=list)
    em_top: List[str] = Field(default_factory=list)
    em_bottom: List[str] = Field(default_factory=list)


class WorldInfoResolveResult(WorldInfoPromptOutput):
    activated_entries: List[PreparedWorldInfoEntry] = Field(default_factory=list)
    debug: WorldInfoScanDebug = Field(default_factory=WorldInfoScanDebug)

#
# End of world_info_types.py
#######################################################################################################################
