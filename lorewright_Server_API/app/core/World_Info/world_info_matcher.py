# world_info_matcher.py
# Description: Key matching (plain and /regex/flags) for world-info entries.
#
# Imports
import re
from functools import lru_cache
from typing import List, NamedTuple, Optional, Sequence, Tuple

#
# 3rd-party Libraries
from loguru import logger

#
# Local Imports
from lorewright_Server_API.app.core.World_Info.world_info_types import (
    SelectiveLogic,
    WorldInfoEntry,
    WorldInfoSettings,
)

#######################################################################################################################
#
# Types


class MatcherOptions(NamedTuple):
    case_sensitive: bool
    whole_words: bool


class EntryMatchResult(NamedTuple):
    matched: bool
    primary_matched: List[str]
    secondary_matched: List[str]


# Lorebook keys use JavaScript-style flags. g/y/u/d have no meaning for a
# single containment test.
_REGEX_FLAG_MAP = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}
_IGNORED_REGEX_FLAGS = frozenset("gyud")

#######################################################################################################################
#
# Functions


@lru_cache(maxsize=2048)
def compile_regex_key(key: str) -> Tuple[bool, Optional[re.Pattern]]:
    """
    Parse a ``/body/flags`` key.

    Returns ``(is_regex, pattern)``. A regex-shaped key that cannot be
    compiled yields ``(True, None)`` so it never matches.
    """
    if not key.startswith("/") or len(key) < 2:
        return False, None
    last_slash = key.rfind("/")
    if last_slash <= 0:
        return False, None

    body = key[1:last_slash]
    flags = 0
    for flag in key[last_slash + 1:]:
        if flag in _REGEX_FLAG_MAP:
            flags |= _REGEX_FLAG_MAP[flag]
        elif flag not in _IGNORED_REGEX_FLAGS:
            logger.debug(f"World-info regex key {key!r} has unsupported flag {flag!r}; it will never match")
            return True, None
    try:
        return True, re.compile(body, flags)
    except re.error as e:
        logger.debug(f"World-info regex key {key!r} failed to compile: {e}")
        return True, None


def match_text_by_key(text: str, key: str, options: MatcherOptions) -> bool:
    is_regex, pattern = compile_regex_key(key)
    if is_regex:
        return bool(pattern and pattern.search(text))

    haystack = text if options.case_sensitive else text.lower()
    needle = key if options.case_sensitive else key.lower()
    if not needle.strip():
        return False

    if not options.whole_words or re.search(r"\s", needle):
        return needle in haystack

    word = re.compile(rf"(?:^|\W)({re.escape(needle)})(?:$|\W)", 0 if options.case_sensitive else re.IGNORECASE)
    return word.search(haystack) is not None


def resolve_entry_matcher_options(entry: WorldInfoEntry, settings: WorldInfoSettings) -> MatcherOptions:
    return MatcherOptions(
        case_sensitive=entry.case_sensitive if entry.case_sensitive is not None else settings.case_sensitive,
        whole_words=entry.match_whole_words if entry.match_whole_words is not None else settings.match_whole_words,
    )


def count_matched_keys(text: str, keys: Sequence[str], options: MatcherOptions) -> Tuple[List[str], List[str]]:
    """Split ``keys`` into (matched, failed), preserving order."""
    matched: List[str] = []
    failed: List[str] = []
    for key in keys:
        (matched if match_text_by_key(text, key, options) else failed).append(key)
    return matched, failed


def evaluate_secondary_logic(matched_count: int, total: int, logic: int) -> bool:
    if total == 0:
        return True
    if logic == SelectiveLogic.AND_ALL:
        return matched_count == total
    if logic == SelectiveLogic.NOT_ALL:
        return matched_count < total
    if logic == SelectiveLogic.NOT_ANY:
        return matched_count == 0
    return matched_count > 0


def match_entry_against_text(entry: WorldInfoEntry, text: str, settings: WorldInfoSettings) -> EntryMatchResult:
    """
    Match an entry's keys against ``text``.

    At least one primary key must match. When the entry is selective its
    secondary keys are then gated by ``selective_logic``.
    """
    options = resolve_entry_matcher_options(entry, settings)
    primary, _ = count_matched_keys(text, entry.key, options)
    if not primary:
        return EntryMatchResult(False, [], [])

    secondary, _ = count_matched_keys(text, entry.keysecondary, options)
    if not entry.selective:
        return EntryMatchResult(True, primary, secondary)

    ok = evaluate_secondary_logic(len(secondary), len(entry.keysecondary), entry.selective_logic)
    return EntryMatchResult(ok, primary, secondary)

#
# End of world_info_matcher.py
#######################################################################################################################
