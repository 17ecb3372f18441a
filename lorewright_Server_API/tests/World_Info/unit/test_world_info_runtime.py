"""
End-to-end tests for world-info runtime resolution.

Runs the full pipeline against the SQLite store and an in-memory chat
context: bindings -> prepared entries -> timed effects -> scan -> prompt.
"""

import pytest

from lorewright_Server_API.app.core.Metrics.metrics_manager import get_metrics_registry
from lorewright_Server_API.app.core.World_Info.world_info_runtime import (
    PersonaRef,
    build_empty_world_info_result,
    extract_character_fields,
    prepare_world_info_entries,
    resolve_world_info_runtime,
    resolve_world_info_runtime_for_chat,
)
from lorewright_Server_API.app.core.World_Info.world_info_types import (
    TimedEffectType,
    WorldInfoBindingInput,
    WorldInfoPosition,
)
from lorewright_Server_API.tests.World_Info.world_info_helpers import raw_entry, user_turns


def bind_book(db, scope, scope_id, name, entries):
    book = db.create_book("owner-1", name, data={"name": name, "entries": {str(e["uid"]): e for e in entries}})
    db.replace_bindings("owner-1", scope, scope_id, [WorldInfoBindingInput(book_id=book.id)])
    return book


async def resolve(db, context, text, message_index=0, **kwargs):
    context.message_index[("chat-1", "branch-1")] = message_index
    return await resolve_world_info_runtime_for_chat(
        db,
        context,
        owner_id="owner-1",
        chat_id="chat-1",
        trigger=kwargs.pop("trigger", "normal"),
        history=user_turns(text),
        scan_seed=kwargs.pop("scan_seed", "seed"),
        **kwargs,
    )


def uids(result):
    return [entry.uid for entry in result.activated_entries]

# ========================================================================
# Helpers
# ========================================================================

class TestRuntimeHelpers:

    @pytest.mark.unit
    def test_extract_character_fields(self):
        fields = extract_character_fields(
            {
                "name": "Aria",
                "description": "A bard.",
                "personality": "curious",
                "scenario": "A tavern.",
                "creatorcomment": "notes",
                "tags": ["fantasy", 3],
                "extensions": {"depth_prompt": {"prompt": "Stay in character."}},
            }
        )
        assert fields["char_name"] == "Aria"
        assert fields["character_description"] == "A bard."
        assert fields["creator_notes"] == "notes"
        assert fields["character_depth_prompt"] == "Stay in character."
        assert fields["char_tags"] == ["fantasy"]

    @pytest.mark.unit
    def test_extract_character_fields_from_nothing(self):
        fields = extract_character_fields(None)
        assert fields["char_name"] == ""
        assert fields["char_tags"] == []

    @pytest.mark.unit
    def test_prepare_entries_strips_decorators_and_hashes(self, world_info_db):
        book = world_info_db.create_book(
            "owner-1",
            "Lore",
            data={"entries": {"0": raw_entry(0, [], "@@activate\nAlways."), "1": raw_entry(1, ["k"], "plain")}},
        )
        first = prepare_world_info_entries([book])
        second = prepare_world_info_entries([book])

        assert [e.uid for e in first] == [0, 1]
        assert first[0].content == "Always."
        assert first[0].decorators.activate is True
        assert first[0].book_id == book.id
        assert first[0].book_name == "Lore"
        assert [e.hash for e in first] == [e.hash for e in second]
        assert first[0].hash != first[1].hash

    @pytest.mark.unit
    def test_empty_result(self):
        result = build_empty_world_info_result("chat_not_found")
        assert result.activated_entries == []
        assert result.world_info_before == ""
        assert result.debug.warnings == ["chat_not_found"]
        assert result.debug.budget.limit == 1


# ========================================================================
# Resolution
# ========================================================================

class TestResolveRuntime:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_character_book_activates_on_keyword(self, world_info_db, chat_context):
        bind_book(
            world_info_db,
            "entity_profile",
            "char-1",
            "Bestiary",
            [
                raw_entry(0, ["dragon"], "Dragons hoard gold.", comment="Dragons"),
                raw_entry(1, ["kraken"], "Krakens sink ships."),
                raw_entry(2, ["dragon"], "Fire.", position=WorldInfoPosition.AT_DEPTH.value, depth=1),
            ],
        )

        result = await resolve(world_info_db, chat_context, "A dragon circles the tower.")

        assert uids(result) == [0, 2]
        assert result.world_info_before == "Dragons: Dragons hoard gold."
        assert [d.content for d in result.depth_entries] == ["Bestiary: Fire."]
        assert result.debug.warnings == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_character_profile_feeds_filters_and_sources(self, world_info_db, chat_context):
        bind_book(
            world_info_db,
            "global",
            None,
            "World",
            [
                raw_entry(0, ["isles"], "Cold seas.", matchCharacterDescription=True),
                raw_entry(1, ["dragon"], "Only for Bob.", characterFilter={"names": ["Bob"]}),
                raw_entry(2, ["dragon"], "Fantasy only.", characterFilter={"tags": ["fantasy"]}),
            ],
        )

        result = await resolve(world_info_db, chat_context, "a dragon")

        assert uids(result) == [0, 2]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_persona_book_and_description(self, world_info_db, chat_context):
        chat_context.personas["owner-1"] = PersonaRef(id="persona-1", prefix="A travelling cartographer.")
        bind_book(
            world_info_db,
            "persona",
            "persona-1",
            "Persona",
            [raw_entry(0, ["cartographer"], "Maps everywhere.", matchPersonaDescription=True)],
        )

        result = await resolve(world_info_db, chat_context, "hello")

        assert uids(result) == [0]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_trigger_counts_as_normal(self, world_info_db, chat_context):
        bind_book(world_info_db, "chat", "chat-1", "Chat", [raw_entry(0, ["dragon"], "x", triggers=["normal"])])

        result = await resolve(world_info_db, chat_context, "dragon", trigger="something-else")

        assert uids(result) == [0]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_same_seed_same_group_winner(self, world_info_db, chat_context):
        bind_book(
            world_info_db,
            "chat",
            "chat-1",
            "Chat",
            [raw_entry(i, ["dragon"], f"variant {i}", group="dragons") for i in range(6)],
        )

        first = await resolve(world_info_db, chat_context, "dragon", scan_seed="replay", dry_run=True)
        second = await resolve(world_info_db, chat_context, "dragon", scan_seed="replay", dry_run=True)

        assert len(first.activated_entries) == 1
        assert uids(first) == uids(second)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_settings_are_read_from_the_store(self, world_info_db, chat_context):
        bind_book(world_info_db, "chat", "chat-1", "Chat", [raw_entry(0, ["dragon"], "x")])
        world_info_db.patch_settings("owner-1", {"scanDepth": 0})

        result = await resolve(world_info_db, chat_context, "dragon")

        assert uids(result) == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_single_entry_without_names(self, world_info_db, chat_context):
        bind_book(world_info_db, "chat", "chat-1", "Lore", [raw_entry(0, ["dragon"], "Dragons are ancient.")])
        world_info_db.patch_settings("owner-1", {"includeNames": False})

        result = await resolve(world_info_db, chat_context, "dragon attack")

        assert uids(result) == [0]
        assert result.world_info_before == "Dragons are ancient."
        assert result.world_info_after == ""
        assert result.depth_entries == []


# ========================================================================
# Missing chat / branch
# ========================================================================

class TestMissingChat:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_chat(self, world_info_db, chat_context):
        get_metrics_registry().reset()

        result = await resolve_world_info_runtime_for_chat(
            world_info_db, chat_context, owner_id="owner-1", chat_id="missing", trigger="normal", history=[]
        )

        assert result.debug.warnings == ["chat_not_found"]
        assert result.activated_entries == []
        stats = get_metrics_registry().get_metric_stats("world_info_resolutions_total", labels={"outcome": "chat_not_found"})
        assert stats["count"] == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_chat_without_branch(self, world_info_db, chat_context):
        chat_context.add_chat("chat-2", branch_id=None)

        result = await resolve_world_info_runtime_for_chat(
            world_info_db, chat_context, owner_id="owner-1", chat_id="chat-2", trigger="normal", history=[]
        )

        assert result.debug.warnings == ["branch_not_found"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_explicit_branch_is_used(self, world_info_db, chat_context):
        bind_book(world_info_db, "chat", "chat-1", "Chat", [raw_entry(0, ["dragon"], "x", sticky=3)])

        await resolve_world_info_runtime(
            world_info_db,
            chat_context,
            owner_id="owner-1",
            chat_id="chat-1",
            branch_id="side-branch",
            entity_profile_id=None,
            trigger="normal",
            history=user_turns("dragon"),
            scan_seed="seed",
        )

        assert world_info_db.list_timed_effects("owner-1", "chat-1", "branch-1") == []
        assert len(world_info_db.list_timed_effects("owner-1", "chat-1", "side-branch")) == 1


# ========================================================================
# Timed effects across turns
# ========================================================================

class TestTimedEffectsAcrossTurns:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_dry_run_leaves_no_effects(self, world_info_db, chat_context):
        bind_book(world_info_db, "chat", "chat-1", "Chat", [raw_entry(0, ["dragon"], "x", sticky=2, cooldown=2)])

        result = await resolve(world_info_db, chat_context, "dragon", dry_run=True)

        assert uids(result) == [0]
        assert world_info_db.list_timed_effects("owner-1", "chat-1", "branch-1") == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_sticky_keeps_entry_active_without_match(self, world_info_db, chat_context):
        bind_book(world_info_db, "chat", "chat-1", "Chat", [raw_entry(0, ["dragon"], "x", sticky=2)])

        first = await resolve(world_info_db, chat_context, "dragon", message_index=0)
        second = await resolve(world_info_db, chat_context, "calm seas", message_index=1)

        assert uids(first) == [0]
        assert uids(second) == [0]
        effects = world_info_db.list_timed_effects("owner-1", "chat-1", "branch-1")
        assert [e.effect_type for e in effects] == [TimedEffectType.STICKY.value]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cooldown_blocks_then_releases(self, world_info_db, chat_context):
        bind_book(world_info_db, "chat", "chat-1", "Chat", [raw_entry(0, ["dragon"], "x", cooldown=2)])

        first = await resolve(world_info_db, chat_context, "dragon", message_index=0)
        blocked = await resolve(world_info_db, chat_context, "dragon", message_index=1)
        released = await resolve(world_info_db, chat_context, "dragon", message_index=3)

        assert uids(first) == [0]
        assert uids(blocked) == []
        assert uids(released) == [0]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_sticky_hands_off_to_cooldown(self, world_info_db, chat_context):
        bind_book(world_info_db, "chat", "chat-1", "Chat", [raw_entry(0, ["dragon"], "x", sticky=1, cooldown=3)])

        await resolve(world_info_db, chat_context, "dragon", message_index=0)
        # sticky window ends at 1, so by message 2 it has expired
        result = await resolve(world_info_db, chat_context, "dragon", message_index=2)

        assert uids(result) == []
        effects = world_info_db.list_timed_effects("owner-1", "chat-1", "branch-1")
        assert [(e.effect_type, e.protected) for e in effects] == [(TimedEffectType.COOLDOWN.value, True)]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_sticky_runs_out_when_resolved_every_turn(self, world_info_db, chat_context):
        bind_book(world_info_db, "chat", "chat-1", "Chat", [raw_entry(0, ["dragon"], "x", sticky=2, cooldown=3)])

        turns = []
        effects_at = {}
        for index, text in enumerate(["dragon"] + ["calm seas"] * 7):
            turns.append(uids(await resolve(world_info_db, chat_context, text, message_index=index)))
            effects_at[index] = [
                (e.effect_type, e.start_message_index, e.end_message_index, e.protected)
                for e in world_info_db.list_timed_effects("owner-1", "chat-1", "branch-1")
            ]

        assert turns == [[0], [0], [0], [], [], [], [], []]
        assert (TimedEffectType.STICKY.value, 0, 2, False) in effects_at[2]
        assert effects_at[3] == [(TimedEffectType.COOLDOWN.value, 3, 6, True)]
        assert effects_at[7] == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_handoff_blocks_a_match_on_the_same_turn(self, world_info_db, chat_context):
        bind_book(world_info_db, "chat", "chat-1", "Chat", [raw_entry(0, ["dragon"], "x", sticky=3, cooldown=1)])

        turns = [
            uids(await resolve(world_info_db, chat_context, "dragon", message_index=index))
            for index in range(7)
        ]

        # sticky ends at 3; the cooldown handed off at 4 covers 4..5
        assert turns == [[0], [0], [0], [0], [], [], [0]]
