"""Tests for recursive tree scanning."""

import pytest

from pycloudsync.exceptions import NotFoundError
from pycloudsync.sync.scanner import TreeScanner, files_only, snapshot_map

from .conftest import InMemoryProvider


@pytest.fixture
def tree():
    adapter = InMemoryProvider({})
    adapter.add_file("/root/a.txt", b"a")
    adapter.add_file("/root/docs/b.txt", b"bb")
    adapter.add_file("/root/docs/deep/c.txt", b"ccc")
    adapter.add_file("/root/.hidden/secret.txt", b"s")
    adapter.add_file("/root/.env", b"x")
    return adapter


class TestTreeScanner:
    """Tests for TreeScanner.scan."""

    def test_relative_paths_and_parent_order(self, tree):
        snapshot = TreeScanner(tree).scan("/root")
        rels = [rel for _, rel in snapshot]
        assert set(rels) == {
            "/.env",
            "/.hidden",
            "/.hidden/secret.txt",
            "/a.txt",
            "/docs",
            "/docs/b.txt",
            "/docs/deep",
            "/docs/deep/c.txt",
        }
        assert rels.index("/docs") < rels.index("/docs/deep")
        assert rels.index("/docs/deep") < rels.index("/docs/deep/c.txt")

    def test_entries_carry_full_provider_paths(self, tree):
        index = snapshot_map(TreeScanner(tree).scan("/root"))
        assert index["/docs/b.txt"].path == "/root/docs/b.txt"
        assert index["/docs/b.txt"].size == 2

    def test_skip_hidden_drops_hidden_subtrees(self, tree):
        rels = [rel for _, rel in TreeScanner(tree, skip_hidden=True).scan("/root")]
        assert not any("/." in rel for rel in rels)
        assert "/docs/deep/c.txt" in rels

    def test_max_depth_stops_descent(self, tree):
        rels = [rel for _, rel in TreeScanner(tree, max_depth=1).scan("/root")]
        assert "/docs/deep" in rels
        assert "/docs/deep/c.txt" not in rels

    def test_missing_root_raises(self, tree):
        with pytest.raises(NotFoundError):
            TreeScanner(tree).scan("/nope")

    def test_missing_root_ok(self, tree):
        assert TreeScanner(tree).scan("/nope", missing_ok=True) == []

    def test_vanished_subfolder_is_skipped(self, tree):
        tree.fail("list_files", "/root/docs", NotFoundError("gone"))
        rels = [rel for _, rel in TreeScanner(tree).scan("/root")]
        assert "/docs" in rels
        assert "/docs/b.txt" not in rels
        assert "/a.txt" in rels

    def test_files_only(self, tree):
        snapshot = TreeScanner(tree).scan("/root/docs")
        assert [rel for _, rel in files_only(snapshot)] == ["/b.txt", "/deep/c.txt"]
