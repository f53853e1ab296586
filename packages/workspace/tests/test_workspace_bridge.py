import os

import pytest

from protocol.errors import DirectoryNotEmpty, FileNotFoundInWorkspace, FilesystemError, SecurityViolation
from workspace import WorkspaceFS


@pytest.fixture
def fs(tmp_path):
    return WorkspaceFS(tmp_path / "ws")


@pytest.fixture
def secret(tmp_path):
    path = tmp_path / "secret.txt"
    path.write_text("top secret")
    return path


class TestReadWrite:
    def test_round_trip(self, fs):
        fs.write_text("hello.txt", "hi there")
        assert fs.read_text("hello.txt") == "hi there"
        assert fs.read_text("/workspace/hello.txt") == "hi there"

    def test_append(self, fs):
        fs.write_text("log.txt", "a\n")
        fs.write_text("log.txt", "b\n", append=True)
        assert fs.read_text("log.txt") == "a\nb\n"

    def test_create_parents(self, fs):
        fs.write_text("deep/er/file.txt", "x", create_parents=True)
        assert fs.is_file("deep/er/file.txt")

    def test_missing_parent_fails(self, fs):
        with pytest.raises(FileNotFoundInWorkspace, match="/workspace/nope/file.txt"):
            fs.write_text("nope/file.txt", "x")

    def test_read_missing_names_virtual_path(self, fs):
        with pytest.raises(FileNotFoundInWorkspace) as exc_info:
            fs.read_text("missing.txt")
        assert "/workspace/missing.txt" in exc_info.value.message
        assert str(fs.root) not in exc_info.value.message

    def test_relative_to_cwd(self, fs):
        fs.mkdir("sub")
        fs.write_text("a.txt", "in sub", cwd="/workspace/sub")
        assert fs.read_text("sub/a.txt") == "in sub"


class TestEscapes:
    @pytest.mark.parametrize("path", ["../secret.txt", "/etc/passwd", "a/../../secret.txt"])
    def test_every_operation_rejects_escape(self, fs, path):
        operations = [
            lambda: fs.read_text(path),
            lambda: fs.write_text(path, "pwned"),
            lambda: fs.list_dir(path),
            lambda: fs.delete(path),
            lambda: fs.mkdir(path),
            lambda: fs.exists(path),
        ]
        for operation in operations:
            with pytest.raises(SecurityViolation):
                operation()

    def test_escaping_symlink_is_not_followed(self, fs, secret):
        os.symlink(secret, fs.root / "link")
        with pytest.raises(SecurityViolation, match="security violation"):
            fs.read_text("link")
        with pytest.raises(SecurityViolation):
            fs.write_text("link", "overwrite")
        assert secret.read_text() == "top secret"

    def test_symlinked_directory_escape(self, fs, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        os.symlink(outside, fs.root / "out")
        with pytest.raises(SecurityViolation):
            fs.write_text("out/new.txt", "x")
        assert not (outside / "new.txt").exists()

    def test_link_swapped_after_first_access(self, fs, secret):
        fs.write_text("target.txt", "fine")
        fs.symlink("link", "/workspace/target.txt")
        assert fs.read_text("link") == "fine"

        os.unlink(fs.root / "link")
        os.symlink(secret, fs.root / "link")
        with pytest.raises(SecurityViolation):
            fs.read_text("link")

    def test_symlink_created_through_bridge_is_checked_on_access(self, fs):
        fs.symlink("py-created-link", "/etc/passwd")
        assert os.readlink(fs.root / "py-created-link") == "/etc/passwd"
        with pytest.raises(SecurityViolation):
            fs.read_text("py-created-link")

    def test_symlink_location_must_be_inside(self, fs):
        with pytest.raises(SecurityViolation):
            fs.symlink("../link", "/workspace")


class TestListing:
    def test_sorted_entries(self, fs):
        fs.write_text("b.txt", "bb")
        fs.write_text("a.txt", "a")
        fs.mkdir("dir")
        entries = fs.list_dir()
        assert [e.name for e in entries] == ["a.txt", "b.txt", "dir"]
        assert entries[0].size == 1
        assert entries[2].is_directory

    def test_listing_is_idempotent(self, fs):
        fs.write_text("x.txt", "x")
        assert fs.list_dir("/workspace") == fs.list_dir("/workspace")

    def test_escaping_link_listed_without_following(self, fs, secret):
        os.symlink(secret, fs.root / "link")
        [entry] = fs.list_dir()
        assert entry.name == "link"
        assert entry.is_directory is False
        assert entry.size == os.lstat(fs.root / "link").st_size

    def test_list_file_is_error(self, fs):
        fs.write_text("f.txt", "")
        with pytest.raises(FilesystemError, match="Not a directory"):
            fs.list_dir("f.txt")


class TestDelete:
    def test_delete_file(self, fs):
        fs.write_text("f.txt", "x")
        fs.delete("f.txt")
        assert not fs.exists("f.txt")

    def test_delete_empty_directory(self, fs):
        fs.mkdir("empty")
        fs.delete("empty")
        assert not fs.exists("empty")

    def test_delete_non_empty_directory_fails(self, fs):
        fs.write_text("full/f.txt", "x", create_parents=True)
        with pytest.raises(DirectoryNotEmpty):
            fs.delete("full")
        assert fs.exists("full/f.txt")

    def test_delete_root_fails(self, fs):
        with pytest.raises(FilesystemError, match="workspace root"):
            fs.delete("/workspace")

    def test_delete_missing(self, fs):
        with pytest.raises(FileNotFoundInWorkspace):
            fs.delete("ghost.txt")

    def test_delete_escaping_link_removes_only_link(self, fs, secret):
        os.symlink(secret, fs.root / "link")
        fs.delete("link")
        assert not os.path.lexists(fs.root / "link")
        assert secret.exists()

    def test_delete_tree(self, fs):
        fs.write_text("tree/a/b.txt", "x", create_parents=True)
        fs.delete_tree("tree")
        assert not fs.exists("tree")


class TestTreeAndWalk:
    def test_tree(self, fs):
        fs.write_text("src/main.py", "print(1)", create_parents=True)
        fs.write_text("README", "hi")
        tree = fs.tree()
        assert tree.path == "/workspace"
        assert [c.name for c in tree.children] == ["README", "src"]
        assert list(tree.iter_paths()) == [
            "/workspace",
            "/workspace/README",
            "/workspace/src",
            "/workspace/src/main.py",
        ]

    def test_tree_max_depth(self, fs):
        fs.write_text("a/b/c.txt", "x", create_parents=True)
        tree = fs.tree(max_depth=1)
        [a] = tree.children
        assert a.children == []

    def test_walk_yields_virtual_paths(self, fs):
        fs.write_text("a/b.txt", "x", create_parents=True)
        walked = list(fs.walk())
        assert walked[0] == ("/workspace", ["a"], [])
        assert walked[1] == ("/workspace/a", [], ["b.txt"])


class TestOpen:
    def test_open_returns_file_object(self, fs):
        with fs.open("data.txt", "w") as fh:
            fh.write("abc")
        with fs.open("/workspace/data.txt") as fh:
            assert fh.read() == "abc"

    def test_open_missing_keeps_builtin_error_type(self, fs):
        with pytest.raises(FileNotFoundError) as exc_info:
            fs.open("missing.txt")
        assert exc_info.value.filename == "/workspace/missing.txt"
