import os

import pytest

from pysandbox.audit import AuditPolicy, default_read_roots


@pytest.fixture
def policy(tmp_path):
    workspace = tmp_path / "ws"
    library = tmp_path / "lib"
    workspace.mkdir()
    library.mkdir()
    return AuditPolicy(workspace, [library.resolve()])


class TestAuditPolicy:
    @pytest.mark.parametrize(
        "event,args",
        [
            ("subprocess.Popen", ("/bin/sh", ["sh"], None, None)),
            ("os.system", (b"id",)),
            ("os.exec", ("/bin/sh", ["sh"], None)),
            ("socket.connect", (None, ("127.0.0.1", 80))),
            ("ctypes.dlopen", ("libc.so.6",)),
            ("os.putenv", (b"KEY", b"VALUE")),
            ("os.chdir", ("/",)),
            ("sys.addaudithook", ()),
        ],
    )
    def test_denied_events(self, policy, event, args):
        with pytest.raises(PermissionError, match="not permitted"):
            policy.check(event, args)

    def test_workspace_reads_and_writes(self, policy):
        target = str(policy.workspace_root / "file.txt")
        policy.check("open", (target, "w", os.O_WRONLY))
        policy.check("open", (target, "r", os.O_RDONLY))
        policy.check("os.mkdir", (str(policy.workspace_root / "sub"), 0o777, None))

    def test_library_roots_are_read_only(self, policy):
        module = str(policy.read_roots[0] / "pkg.py")
        policy.check("open", (module, "rb", os.O_RDONLY))
        policy.check("os.listdir", (str(policy.read_roots[0]),))
        with pytest.raises(PermissionError):
            policy.check("open", (module, "wb", os.O_WRONLY | os.O_CREAT))

    def test_host_paths_denied(self, policy):
        with pytest.raises(PermissionError):
            policy.check("open", ("/etc/passwd", "r", os.O_RDONLY))
        with pytest.raises(PermissionError):
            policy.check("os.remove", ("/tmp/other", None))

    def test_low_level_open_flags(self, policy):
        with pytest.raises(PermissionError):
            policy.check("open", ("/etc/passwd", None, os.O_RDWR))

    def test_relative_paths_denied(self, policy):
        with pytest.raises(PermissionError, match="relative path"):
            policy.check("open", ("notes.txt", "r", os.O_RDONLY))

    def test_descriptors_pass(self, policy):
        policy.check("open", (3, "r", os.O_RDONLY))

    def test_symlink_to_outside_may_be_created_in_workspace(self, policy):
        link = str(policy.workspace_root / "etc_link")
        policy.check("os.symlink", ("/etc", link, None))

    def test_escaping_symlink_is_followed_on_open(self, policy):
        link = policy.workspace_root / "etc_link"
        os.symlink("/etc", link)
        with pytest.raises(PermissionError):
            policy.check("open", (str(link / "passwd"), "r", os.O_RDONLY))
        policy.check("os.remove", (str(link), None))

    def test_unrelated_events_pass(self, policy):
        policy.check("import", ("json", None, [], [], []))
        policy.check("exec", (None,))


def test_default_read_roots_include_site_dir(tmp_path):
    roots = default_read_roots([tmp_path])
    assert tmp_path.resolve() in roots
    assert all(str(root) != "/" for root in roots)
