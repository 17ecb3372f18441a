"""
Tests for sticky / cooldown / delay bookkeeping.

Uses the real SQLite store; dry-run paths use a Mock store to prove nothing
is touched.
"""

from unittest.mock import Mock

import pytest

from lorewright_Server_API.app.core.World_Info.world_info_timed_effects import (
    apply_timed_effects_for_activated_entries,
    is_entry_delayed,
    load_timed_effects_state,
)
from lorewright_Server_API.app.core.World_Info.world_info_types import TimedEffectType
from lorewright_Server_API.tests.World_Info.world_info_helpers import build_entry

SCOPE = {"owner_id": "owner-1", "chat_id": "chat-1", "branch_id": "branch-1"}


async def apply(store, entries, message_index, dry_run=False):
    return await apply_timed_effects_for_activated_entries(
        store, message_index=message_index, activated_entries=entries, dry_run=dry_run, **SCOPE
    )


async def load(store, entries, message_index, dry_run=False):
    return await load_timed_effects_state(
        store,
        message_index=message_index,
        entries_by_hash={entry.hash: entry for entry in entries},
        dry_run=dry_run,
        **SCOPE,
    )


def rows_by_type(store):
    return {row.effect_type: row for row in store.list_timed_effects(**SCOPE)}

# ========================================================================
# Delay
# ========================================================================

class TestDelay:

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "delay,message_index,expected",
        [(None, 0, False), (0, 0, False), (3, 2, True), (3, 3, False), (3, 10, False)],
    )
    def test_is_entry_delayed(self, delay, message_index, expected):
        fields = {} if delay is None else {"delay": delay}
        assert is_entry_delayed(build_entry(**fields), message_index) is expected


# ========================================================================
# Writing effects
# ========================================================================

class TestApplyTimedEffects:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_opens_sticky_and_cooldown_windows(self, world_info_db):
        entry = build_entry(uid=1, key=["k"], content="x", sticky=2, cooldown=3)

        written = await apply(world_info_db, [entry], message_index=5)

        assert written == 2
        rows = rows_by_type(world_info_db)
        assert rows[TimedEffectType.STICKY.value].start_message_index == 5
        assert rows[TimedEffectType.STICKY.value].end_message_index == 7
        assert rows[TimedEffectType.COOLDOWN.value].end_message_index == 8
        assert rows[TimedEffectType.COOLDOWN.value].entry_hash == entry.hash
        assert rows[TimedEffectType.COOLDOWN.value].protected is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_entries_without_windows_write_nothing(self, world_info_db):
        entry = build_entry(uid=1, key=["k"], content="x", sticky=0)
        assert await apply(world_info_db, [entry], message_index=1) == 0
        assert world_info_db.list_timed_effects(**SCOPE) == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reactivation_refreshes_window(self, world_info_db):
        entry = build_entry(uid=1, key=["k"], content="x", sticky=2)
        await apply(world_info_db, [entry], message_index=1)
        first_id = rows_by_type(world_info_db)[TimedEffectType.STICKY.value].id

        await apply(world_info_db, [entry], message_index=4)

        rows = world_info_db.list_timed_effects(**SCOPE)
        assert len(rows) == 1
        assert rows[0].id == first_id
        assert rows[0].end_message_index == 6

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_sticky_carried_entries_keep_their_window(self, world_info_db):
        entry = build_entry(uid=1, key=["k"], content="x", sticky=2, cooldown=3)
        await apply(world_info_db, [entry], message_index=0)

        written = await apply_timed_effects_for_activated_entries(
            world_info_db,
            message_index=1,
            activated_entries=[entry],
            sticky_hashes={entry.hash},
            **SCOPE,
        )

        assert written == 0
        rows = rows_by_type(world_info_db)
        assert rows[TimedEffectType.STICKY.value].end_message_index == 2
        assert rows[TimedEffectType.COOLDOWN.value].end_message_index == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self):
        store = Mock()
        entry = build_entry(uid=1, key=["k"], content="x", sticky=2, cooldown=3)
        assert await apply(store, [entry], message_index=1, dry_run=True) == 0
        store.upsert_timed_effect.assert_not_called()


# ========================================================================
# Loading effects
# ========================================================================

class TestLoadTimedEffects:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_empty_store(self, world_info_db):
        state = await load(world_info_db, [], message_index=0)
        assert state.active_sticky == set()
        assert state.active_cooldown == set()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_live_windows_are_reported(self, world_info_db):
        entry = build_entry(uid=1, key=["k"], content="x", sticky=2, cooldown=3)
        await apply(world_info_db, [entry], message_index=5)

        state = await load(world_info_db, [entry], message_index=7)

        assert state.active_sticky == {entry.hash}
        assert state.active_cooldown == {entry.hash}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_expired_cooldown_is_deleted(self, world_info_db):
        entry = build_entry(uid=1, key=["k"], content="x", cooldown=1)
        await apply(world_info_db, [entry], message_index=0)

        state = await load(world_info_db, [entry], message_index=2)

        assert state.active_cooldown == set()
        assert world_info_db.list_timed_effects(**SCOPE) == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_expired_sticky_hands_off_to_cooldown(self, world_info_db):
        entry = build_entry(uid=1, key=["k"], content="x", sticky=1, cooldown=2)
        await apply(world_info_db, [entry], message_index=0)

        state = await load(world_info_db, [entry], message_index=2)

        assert state.active_sticky == set()
        assert state.active_cooldown == {entry.hash}
        rows = world_info_db.list_timed_effects(**SCOPE)
        assert [row.effect_type for row in rows] == [TimedEffectType.COOLDOWN.value]
        assert rows[0].start_message_index == 2
        assert rows[0].end_message_index == 4
        assert rows[0].protected is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_handoff_survives_when_old_cooldown_also_expired(self, world_info_db):
        entry = build_entry(uid=1, key=["k"], content="x", sticky=1, cooldown=2)
        await apply(world_info_db, [entry], message_index=0)
        old_cooldown_id = rows_by_type(world_info_db)[TimedEffectType.COOLDOWN.value].id

        state = await load(world_info_db, [entry], message_index=5)

        assert state.active_cooldown == {entry.hash}
        rows = world_info_db.list_timed_effects(**SCOPE)
        assert len(rows) == 1
        assert rows[0].id == old_cooldown_id
        assert rows[0].effect_type == TimedEffectType.COOLDOWN.value
        assert rows[0].end_message_index == 7

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_expired_sticky_of_removed_entry_is_dropped(self, world_info_db):
        entry = build_entry(uid=1, key=["k"], content="x", sticky=1, cooldown=2)
        await apply(world_info_db, [entry], message_index=0)
        world_info_db.delete_timed_effects_by_ids(
            [rows_by_type(world_info_db)[TimedEffectType.COOLDOWN.value].id]
        )

        state = await load(world_info_db, [], message_index=3)

        assert state.active_cooldown == set()
        assert world_info_db.list_timed_effects(**SCOPE) == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_effects_are_scoped_to_branch(self, world_info_db):
        entry = build_entry(uid=1, key=["k"], content="x", sticky=5)
        await apply(world_info_db, [entry], message_index=0)

        state = await load_timed_effects_state(
            world_info_db,
            owner_id="owner-1",
            chat_id="chat-1",
            branch_id="other-branch",
            message_index=1,
            entries_by_hash={entry.hash: entry},
        )

        assert state.active_sticky == set()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dry_run_reads_nothing(self):
        store = Mock()
        state = await load(store, [], message_index=3, dry_run=True)
        assert state.active_sticky == set()
        store.list_timed_effects.assert_not_called()
        store.delete_timed_effects_by_ids.assert_not_called()
