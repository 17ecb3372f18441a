"""
Unit tests for inclusion-group resolution.
"""

import pytest

from lorewright_Server_API.app.core.World_Info.world_info_groups import (
    GroupCandidate,
    apply_inclusion_groups,
    hash_to_unit_interval,
    pick_weighted_candidate,
    split_groups,
)
from lorewright_Server_API.tests.World_Info.world_info_helpers import build_entry, build_settings


def candidate(uid, group="g", **fields):
    flags = {k: fields.pop(k) for k in ("score", "sticky_active", "cooldown_active", "delayed") if k in fields}
    return GroupCandidate(entry=build_entry(uid=uid, group=group, content=f"entry {uid}", **fields), **flags)


def selected_uids(resolution):
    return [c.entry.uid for c in resolution.selected]

# ========================================================================
# Helpers
# ========================================================================

class TestGroupHelpers:

    @pytest.mark.unit
    def test_split_groups(self):
        assert split_groups(" a, b ,,c ") == ["a", "b", "c"]
        assert split_groups("") == []

    @pytest.mark.unit
    def test_unit_interval_is_deterministic_and_bounded(self):
        value = hash_to_unit_interval("seed:1:g")
        assert value == hash_to_unit_interval("seed:1:g")
        assert 0.0 <= value <= 1.0

    @pytest.mark.unit
    def test_zero_total_weight_picks_first(self):
        members = [candidate(1, groupWeight=0), candidate(2, groupWeight=0)]
        assert pick_weighted_candidate(members, "anything").entry.uid == 1

    @pytest.mark.unit
    def test_zero_weight_member_is_never_picked(self):
        members = [candidate(1, groupWeight=0), candidate(2, groupWeight=10)]
        for seed in ("a", "b", "c", "d", "e", "f"):
            assert pick_weighted_candidate(members, seed).entry.uid == 2


# ========================================================================
# Resolution
# ========================================================================

class TestApplyInclusionGroups:

    @pytest.mark.unit
    def test_ungrouped_candidates_pass_through(self):
        members = [candidate(1, group=""), candidate(2, group="")]
        resolution = apply_inclusion_groups(members, build_settings(), "seed")
        assert selected_uids(resolution) == [1, 2]
        assert resolution.activated_groups == set()

    @pytest.mark.unit
    def test_one_winner_per_group(self):
        members = [candidate(1), candidate(2), candidate(3)]
        resolution = apply_inclusion_groups(members, build_settings(), "seed")
        assert len(resolution.selected) == 1
        assert resolution.activated_groups == {"g"}

    @pytest.mark.unit
    def test_pick_is_reproducible_for_a_seed(self):
        members = [candidate(i) for i in range(5)]
        first = apply_inclusion_groups(members, build_settings(), "fixed-seed")
        again = apply_inclusion_groups(members, build_settings(), "fixed-seed")
        assert selected_uids(first) == selected_uids(again)

    @pytest.mark.unit
    def test_override_with_highest_order_wins(self):
        members = [
            candidate(1, order=500),
            candidate(2, order=10, groupOverride=True),
            candidate(3, order=20, groupOverride=True),
        ]
        resolution = apply_inclusion_groups(members, build_settings(), "seed")
        assert selected_uids(resolution) == [3]

    @pytest.mark.unit
    def test_override_tie_keeps_first(self):
        members = [candidate(1, order=20, groupOverride=True), candidate(2, order=20, groupOverride=True)]
        assert selected_uids(apply_inclusion_groups(members, build_settings(), "seed")) == [1]

    @pytest.mark.unit
    def test_sticky_member_takes_precedence(self):
        members = [candidate(1, groupOverride=True, order=900), candidate(2, sticky_active=True)]
        assert selected_uids(apply_inclusion_groups(members, build_settings(), "seed")) == [2]

    @pytest.mark.unit
    def test_cooling_and_delayed_members_are_dropped(self):
        members = [candidate(1, cooldown_active=True), candidate(2, delayed=True), candidate(3)]
        assert selected_uids(apply_inclusion_groups(members, build_settings(), "seed")) == [3]

    @pytest.mark.unit
    def test_group_with_no_eligible_members_is_not_activated(self):
        members = [candidate(1, cooldown_active=True)]
        resolution = apply_inclusion_groups(members, build_settings(), "seed")
        assert resolution.selected == []
        assert "g" not in resolution.activated_groups

    @pytest.mark.unit
    def test_scoring_keeps_top_scorers(self):
        members = [candidate(1, score=1), candidate(2, score=3), candidate(3, score=2)]
        resolution = apply_inclusion_groups(members, build_settings(useGroupScoring=True), "seed")
        assert selected_uids(resolution) == [2]

    @pytest.mark.unit
    def test_entry_level_scoring_flag(self):
        members = [candidate(1, score=1), candidate(2, score=3, useGroupScoring=True)]
        assert selected_uids(apply_inclusion_groups(members, build_settings(), "seed")) == [2]

    @pytest.mark.unit
    def test_already_activated_group_is_skipped(self):
        members = [candidate(1), candidate(2, group="other")]
        resolution = apply_inclusion_groups(members, build_settings(), "seed", already_activated_groups={"g"})
        assert selected_uids(resolution) == [2]
        assert resolution.activated_groups == {"g", "other"}

    @pytest.mark.unit
    def test_member_of_two_groups_is_selected_once(self):
        members = [candidate(1, group="a,b", groupOverride=True)]
        resolution = apply_inclusion_groups(members, build_settings(), "seed")
        assert selected_uids(resolution) == [1]
        assert resolution.activated_groups == {"a", "b"}
