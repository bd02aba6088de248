"""Tests for tree comparison and reconciliation plans."""

from datetime import timedelta

import pytest

from pycloudsync.models import (
    ConflictPolicy,
    EntryKind,
    FileEntry,
    SyncDirection,
    SyncedFile,
    SyncState,
)
from pycloudsync.sync.comparator import (
    PlanAction,
    TreeDiffer,
    directories_to_create,
)

from .conftest import BASE_TIME

S2D = SyncDirection.SOURCE_TO_DESTINATION
D2S = SyncDirection.DESTINATION_TO_SOURCE
BIDI = SyncDirection.BIDIRECTIONAL


def f(rel, size=100, offset=0, checksum=None):
    """A file entry modified ``offset`` seconds after BASE_TIME."""
    return (
        FileEntry(
            id=rel,
            name=rel.rsplit("/", 1)[-1],
            kind=EntryKind.FILE,
            path=rel,
            size=size,
            modified_at=BASE_TIME + timedelta(seconds=offset),
            checksum=checksum,
        ),
        rel,
    )


def d(rel):
    return (FileEntry(rel, rel.rsplit("/", 1)[-1], EntryKind.FOLDER, rel), rel)


def actions(plan):
    return {item.path: item.action for item in plan.items}


class TestIdentity:
    """Tests for unchanged detection."""

    def test_identical_trees_produce_empty_plan(self):
        tree = [d("/docs"), f("/docs/a.txt"), f("/b.txt", size=5)]
        plan = TreeDiffer(BIDI).diff(tree, list(tree))
        assert plan.items == []
        assert plan.unchanged == 3
        assert plan.is_empty

    def test_mtime_within_tolerance_is_equal(self):
        plan = TreeDiffer(S2D).diff([f("/a", offset=1)], [f("/a")])
        assert plan.items == []

    def test_checksums_decide_when_both_present(self):
        plan = TreeDiffer(S2D).diff(
            [f("/a", offset=600, checksum="x")], [f("/a", checksum="x")]
        )
        assert plan.items == []
        plan = TreeDiffer(S2D).diff(
            [f("/a", checksum="x")], [f("/a", checksum="y")]
        )
        assert actions(plan) == {"/a": PlanAction.COPY_TO_DESTINATION}

    def test_plan_is_idempotent_after_applying(self):
        """Re-planning after applying all copies yields nothing to do."""
        source = [f("/a", offset=100), f("/new")]
        destination = [f("/a"), f("/old")]
        differ = TreeDiffer(BIDI)
        plan = differ.diff(source, destination)
        assert len(plan.actions) == 3

        merged = {rel: (e, rel) for e, rel in source + destination}
        merged["/a"] = f("/a", offset=100)
        both = list(merged.values())
        assert differ.diff(both, list(both)).is_empty


class TestNewestPolicy:
    """Tests for the newest tiebreak order."""

    def test_newer_source_wins(self):
        plan = TreeDiffer(BIDI).diff([f("/a", offset=60)], [f("/a")])
        assert actions(plan) == {"/a": PlanAction.COPY_TO_DESTINATION}

    def test_newer_destination_wins(self):
        plan = TreeDiffer(BIDI).diff([f("/a")], [f("/a", offset=60)])
        assert actions(plan) == {"/a": PlanAction.COPY_TO_SOURCE}

    def test_equal_mtime_falls_back_to_size(self):
        plan = TreeDiffer(BIDI).diff([f("/a", size=10)], [f("/a", size=20)])
        assert actions(plan) == {"/a": PlanAction.COPY_TO_SOURCE}

    def test_full_tie_source_wins(self):
        plan = TreeDiffer(BIDI).diff(
            [f("/a", checksum="1")], [f("/a", checksum="2")]
        )
        item = plan.items[0]
        assert item.action == PlanAction.COPY_TO_DESTINATION
        assert "Tie" in item.reason

    def test_winner_against_direction_is_skipped(self):
        plan = TreeDiffer(S2D).diff([f("/a")], [f("/a", offset=60)])
        assert actions(plan) == {"/a": PlanAction.SKIP}


class TestLargestPolicy:
    """Tests for the largest tiebreak order."""

    def test_size_beats_mtime(self):
        plan = TreeDiffer(BIDI, ConflictPolicy.LARGEST).diff(
            [f("/a", size=500)], [f("/a", size=10, offset=3600)]
        )
        assert actions(plan) == {"/a": PlanAction.COPY_TO_DESTINATION}

    def test_equal_size_falls_back_to_mtime(self):
        plan = TreeDiffer(BIDI, ConflictPolicy.LARGEST).diff(
            [f("/a")], [f("/a", offset=3600)]
        )
        assert actions(plan) == {"/a": PlanAction.COPY_TO_SOURCE}


class TestUnresolvedConflicts:
    """Tests for skip and manual policies and type mismatches."""

    def test_skip_policy_leaves_both_sides(self):
        plan = TreeDiffer(BIDI, ConflictPolicy.SKIP).diff(
            [f("/a", offset=60)], [f("/a")]
        )
        item = plan.items[0]
        assert item.action == PlanAction.CONFLICT
        assert not item.requires_resolution
        assert plan.actions == []
        assert plan.unresolved == []

    def test_manual_policy_flags_resolution(self):
        plan = TreeDiffer(BIDI, ConflictPolicy.MANUAL).diff(
            [f("/a", offset=60)], [f("/a")]
        )
        assert [i.path for i in plan.unresolved] == ["/a"]
        assert not plan.is_empty

    def test_file_folder_mismatch_always_needs_resolution(self):
        plan = TreeDiffer(S2D).diff([f("/x")], [d("/x")])
        item = plan.items[0]
        assert item.action == PlanAction.CONFLICT
        assert item.requires_resolution


class TestOrphans:
    """Tests for entries present on one side only."""

    def test_one_way_copies_new_entries(self):
        plan = TreeDiffer(S2D).diff([f("/new")], [])
        assert actions(plan) == {"/new": PlanAction.COPY_TO_DESTINATION}

    def test_one_way_skips_destination_only_without_delete(self):
        plan = TreeDiffer(S2D).diff([], [f("/old")])
        assert actions(plan) == {"/old": PlanAction.SKIP}

    def test_delete_orphaned_on_destination(self):
        plan = TreeDiffer(S2D, delete_orphaned=True).diff([], [f("/old")])
        assert actions(plan) == {"/old": PlanAction.DELETE_ON_DESTINATION}

    def test_delete_orphaned_on_source(self):
        plan = TreeDiffer(D2S, delete_orphaned=True).diff([f("/old")], [])
        assert actions(plan) == {"/old": PlanAction.DELETE_ON_SOURCE}

    def test_bidirectional_never_deletes(self):
        plan = TreeDiffer(BIDI, delete_orphaned=True).diff([f("/s")], [f("/d")])
        assert actions(plan) == {
            "/d": PlanAction.COPY_TO_SOURCE,
            "/s": PlanAction.COPY_TO_DESTINATION,
        }

    def test_deleted_folder_hides_descendants(self):
        destination = [d("/old"), f("/old/a"), d("/old/sub"), f("/old/sub/b")]
        plan = TreeDiffer(S2D, delete_orphaned=True).diff([], destination)
        assert actions(plan) == {"/old": PlanAction.DELETE_ON_DESTINATION}

    def test_skip_hidden(self):
        plan = TreeDiffer(S2D, skip_hidden=True).diff(
            [f("/.cache/x"), f("/.env"), f("/ok")], []
        )
        assert list(actions(plan)) == ["/ok"]

    def test_summary_counts(self):
        plan = TreeDiffer(S2D, delete_orphaned=True).diff(
            [f("/a"), f("/same")], [f("/b"), f("/same")]
        )
        summary = plan.summary()
        assert summary["copy_to_destination"] == 1
        assert summary["delete_on_destination"] == 1
        assert summary["unchanged"] == 1



DAY = 86400


def synced(path, size=100, src=0, dst=DAY, src_sum=None, dst_sum=None):
    """State holding one record; mtimes are offsets from BASE_TIME."""
    return SyncState(
        {
            path: SyncedFile(
                size,
                BASE_TIME + timedelta(seconds=src),
                BASE_TIME + timedelta(seconds=dst),
                src_sum,
                dst_sum,
            )
        }
    )


class TestSyncState:
    """Tests for comparing against what the previous run synced."""

    def test_copies_matching_record_are_unchanged(self):
        source, destination = [f("/a")], [f("/a", offset=DAY)]

        plan = TreeDiffer(S2D, ConflictPolicy.MANUAL).diff(source, destination)
        assert actions(plan) == {"/a": PlanAction.CONFLICT}

        differ = TreeDiffer(S2D, ConflictPolicy.MANUAL, state=synced("/a"))
        plan = differ.diff(source, destination)
        assert plan.is_empty
        assert plan.unchanged == 1
        assert list(plan.in_sync) == ["/a"]

    def test_source_edit_wins_over_newer_destination(self):
        differ = TreeDiffer(BIDI, ConflictPolicy.NEWEST, state=synced("/a"))
        plan = differ.diff([f("/a", size=120, offset=3600)], [f("/a", offset=DAY)])
        assert actions(plan) == {"/a": PlanAction.COPY_TO_DESTINATION}
        assert plan.items[0].reason == "Changed on source since last sync"

    def test_destination_edit_wins_over_larger_source(self):
        differ = TreeDiffer(BIDI, ConflictPolicy.LARGEST, state=synced("/a"))
        plan = differ.diff([f("/a")], [f("/a", size=50, offset=2 * DAY)])
        assert actions(plan) == {"/a": PlanAction.COPY_TO_SOURCE}
        assert plan.items[0].reason == "Changed on destination since last sync"

    def test_checksum_change_counts_as_edit(self):
        state = synced("/a", src_sum="x", dst_sum="z")
        source = [f("/a", checksum="y")]
        destination = [f("/a", offset=DAY, checksum="z")]

        plan = TreeDiffer(BIDI).diff(source, destination)
        assert actions(plan) == {"/a": PlanAction.COPY_TO_SOURCE}

        plan = TreeDiffer(BIDI, state=state).diff(source, destination)
        assert actions(plan) == {"/a": PlanAction.COPY_TO_DESTINATION}

    def test_direction_still_limits_one_sided_edits(self):
        differ = TreeDiffer(S2D, ConflictPolicy.NEWEST, state=synced("/a"))
        plan = differ.diff([f("/a")], [f("/a", size=50, offset=2 * DAY)])
        assert actions(plan) == {"/a": PlanAction.SKIP}

    def test_both_sides_edited_needs_resolution(self):
        differ = TreeDiffer(BIDI, ConflictPolicy.MANUAL, state=synced("/a"))
        plan = differ.diff([f("/a", size=10)], [f("/a", size=20)])
        assert actions(plan) == {"/a": PlanAction.CONFLICT}
        assert plan.unresolved

    def test_skip_policy_keeps_one_sided_edit_diverged(self):
        differ = TreeDiffer(BIDI, ConflictPolicy.SKIP, state=synced("/a"))
        plan = differ.diff([f("/a", size=120)], [f("/a", offset=DAY)])
        assert actions(plan) == {"/a": PlanAction.CONFLICT}
        assert not plan.unresolved


class TestDirectoriesToCreate:
    """Tests for directories_to_create."""

    @pytest.mark.parametrize(
        "paths,expected",
        [
            ([], []),
            (["/a.txt"], []),
            (["/a/b/c.txt", "/a/d.txt"], ["/a", "/a/b"]),
            (["/z/1", "/b/c/2"], ["/b", "/z", "/b/c"]),
        ],
    )
    def test_parents_before_children(self, paths, expected):
        assert directories_to_create(paths) == expected
