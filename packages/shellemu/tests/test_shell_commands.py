import json

import pytest

from shellemu import ShellInterpreter
from workspace import WorkspaceFS

FRUIT = "apple\nbanana\ncherry\n"


@pytest.fixture
def fs(tmp_path):
    workspace = WorkspaceFS(tmp_path / "ws")
    workspace.write_text("fruit.txt", FRUIT)
    return workspace


@pytest.fixture
def sh(fs):
    shell = ShellInterpreter(fs)

    def run(script, expect=0):
        outcome = shell.run(script)
        assert outcome.exit_code == expect, outcome.stderr
        return outcome.stdout

    return run


class TestCoreCommands:
    def test_echo_flags(self, sh):
        assert sh("echo -n no-newline") == "no-newline"
        assert sh("echo -e 'a\\tb'") == "a\tb\n"
        assert sh("echo 'a\\tb'") == "a\\tb\n"

    def test_printf(self, sh):
        assert sh("printf '%s-%d\\n' a 5") == "a-5\n"
        assert sh("printf '%05.1f|%-4s|%x\\n' 3.14159 ab 255") == "003.1|ab  |ff\n"
        assert sh("printf '%s\\n' one two three") == "one\ntwo\nthree\n"
        assert sh("printf '[%*d]\\n' 4 7") == "[   7]\n"

    def test_printf_invalid_number(self, fs):
        outcome = ShellInterpreter(fs).run("printf '%d\\n' abc")
        assert outcome.exit_code == 1
        assert outcome.stdout == "0\n"
        assert outcome.stderr == "printf: abc: invalid number\n"

    def test_printf_width_is_bounded(self, fs):
        outcome = ShellInterpreter(fs).run("printf '%0*d' 99999999999 1")
        assert outcome.exit_code == 1
        assert "field width too large" in outcome.stderr
        assert len(outcome.stdout) < 100

    def test_seq(self, sh):
        assert sh("seq 3") == "1\n2\n3\n"
        assert sh("seq 1 2 7") == "1\n3\n5\n7\n"
        assert sh("seq 3 -1 1") == "3\n2\n1\n"

    def test_basename_dirname(self, sh):
        assert sh("basename /a/b/c.txt .txt") == "c\n"
        assert sh("dirname /a/b/c.txt") == "/a/b\n"
        assert sh("dirname file") == ".\n"

    def test_test_builtin(self, sh, fs):
        fs.mkdir("dir")
        assert sh("[ -f fruit.txt ] && echo file") == "file\n"
        assert sh("[ -d dir ] && echo dir") == "dir\n"
        assert sh("[ -e missing ] || echo missing") == "missing\n"
        assert sh('[ -z "" ] && [ -n x ] && echo strings') == "strings\n"
        assert sh("test 3 -lt 10 -a abc = abc && echo both") == "both\n"
        assert sh("[ ! -s fruit.txt ] || echo nonempty") == "nonempty\n"

    def test_test_reports_bad_integer(self, fs):
        outcome = ShellInterpreter(fs).run("[ abc -gt 1 ]")
        assert outcome.exit_code == 2
        assert "integer expression expected" in outcome.stderr

    def test_env_lists_exports(self, sh):
        listing = sh("export MY_VAR=1; env")
        assert "MY_VAR=1\n" in listing
        assert "HOME=/workspace\n" in listing


class TestFileCommands:
    def test_cat_and_number(self, sh):
        assert sh("cat fruit.txt") == FRUIT
        assert sh("cat -n fruit.txt").splitlines()[1] == "     2\tbanana"

    def test_cat_missing(self, fs):
        outcome = ShellInterpreter(fs).run("cat nope.txt")
        assert outcome.exit_code == 1
        assert outcome.stderr == "cat: nope.txt: No such file or directory\n"

    def test_mkdir_touch_ls(self, sh):
        sh("mkdir -p a/b && touch a/b/one a/two && touch a/.hidden")
        assert sh("ls a") == "b\ntwo\n"
        assert sh("ls -a a") == ".\n..\n.hidden\nb\ntwo\n"
        assert "drwxr-xr-x" in sh("ls -l a")

    def test_mkdir_existing_fails(self, fs):
        fs.mkdir("d")
        assert ShellInterpreter(fs).run("mkdir d").exit_code == 1

    def test_cp_mv_rm(self, sh, fs):
        sh("cp fruit.txt copy.txt && mv copy.txt moved.txt")
        assert fs.read_text("moved.txt") == FRUIT
        assert not fs.exists("copy.txt")
        sh("mkdir d && cp fruit.txt moved.txt d && mv d e")
        assert sh("ls e") == "fruit.txt\nmoved.txt\n"
        sh("rm -r e moved.txt")
        assert sh("ls") == "fruit.txt\n"

    def test_cp_directory_needs_recursive(self, fs):
        fs.mkdir("src")
        fs.write_text("src/a.txt", "A")
        shell = ShellInterpreter(fs)
        assert shell.run("cp src dst").exit_code == 1
        assert shell.run("cp -r src dst").exit_code == 0
        assert fs.read_text("dst/a.txt") == "A"

    def test_rm_directory_without_r(self, fs):
        fs.mkdir("d")
        outcome = ShellInterpreter(fs).run("rm d")
        assert outcome.exit_code == 1
        assert "Is a directory" in outcome.stderr

    def test_rm_force_ignores_missing(self, sh):
        sh("rm -f nothing-here")

    def test_rmdir(self, sh, fs):
        fs.mkdir("empty")
        sh("rmdir empty")
        assert not fs.exists("empty")

    def test_symlink_inside_workspace(self, sh, fs):
        sh("ln -s /workspace/fruit.txt alias && cat alias > via-link.txt")
        assert fs.read_text("via-link.txt") == FRUIT
        assert fs.readlink("alias") == "fruit.txt"

    def test_find(self, sh):
        sh("mkdir -p a/b && touch a/b/f.txt a/g.log")
        assert sh("find a -name '*.txt'") == "a/b/f.txt\n"
        assert sh("find a -type d") == "a\na/b\n"
        assert sh("find a -maxdepth 1 -type f") == "a/g.log\n"

    def test_head_tail(self, sh):
        assert sh("head -n 2 fruit.txt") == "apple\nbanana\n"
        assert sh("head -1 fruit.txt") == "apple\n"
        assert sh("tail -n 1 fruit.txt") == "cherry\n"
        assert sh("tail -n +2 fruit.txt") == "banana\ncherry\n"
        assert sh("head -c 3 fruit.txt") == "app"

    def test_wc(self, sh):
        assert sh("wc -l fruit.txt") == "3 fruit.txt\n"
        assert sh("cat fruit.txt | wc -w") == "3\n"
        assert sh("printf 'ab' | wc -c") == "2\n"

    def test_tee(self, sh, fs):
        assert sh("echo tee-me | tee out.txt") == "tee-me\n"
        assert fs.read_text("out.txt") == "tee-me\n"
        sh("echo again | tee -a out.txt > /dev/null")
        assert fs.read_text("out.txt") == "tee-me\nagain\n"


class TestTextCommands:
    def test_grep_basics(self, sh):
        assert sh("grep an fruit.txt") == "banana\n"
        assert sh("grep -c a fruit.txt") == "2\n"
        assert sh("grep -n ch fruit.txt") == "3:cherry\n"
        assert sh("grep -v a fruit.txt") == "cherry\n"
        assert sh("grep -i APPLE fruit.txt") == "apple\n"

    def test_grep_no_match_status(self, fs):
        assert ShellInterpreter(fs).run("grep zebra fruit.txt").exit_code == 1

    def test_grep_regex_flavours(self, sh):
        assert sh("grep -E 'ap|ch' fruit.txt") == "apple\ncherry\n"
        assert sh("grep 'ap\\|ch' fruit.txt") == "apple\ncherry\n"
        assert sh("grep -o 'an' fruit.txt") == "an\nan\n"
        assert sh("grep -F 'a.p' fruit.txt", expect=1) == ""

    def test_grep_recursive(self, sh):
        sh("mkdir -p src/pkg && echo 'TODO: one' > src/a.py && echo 'TODO: two' > src/pkg/b.py")
        assert sh("grep -r TODO src") == "src/a.py:TODO: one\nsrc/pkg/b.py:TODO: two\n"
        assert sh("grep -rl TODO src") == "src/a.py\nsrc/pkg/b.py\n"

    def test_sort_and_uniq(self, sh):
        assert sh("printf 'b\\na\\nc\\n' | sort") == "a\nb\nc\n"
        assert sh("printf 'b\\na\\nc\\n' | sort -r") == "c\nb\na\n"
        assert sh("printf '10\\n9\\n100\\n' | sort -n") == "9\n10\n100\n"
        assert sh("printf 'x 3\\ny 1\\nz 2\\n' | sort -k 2 -n") == "y 1\nz 2\nx 3\n"
        assert sh("printf 'a\\na\\nb\\n' | uniq -c") == "      2 a\n      1 b\n"
        assert sh("printf 'b\\na\\nb\\n' | sort -u") == "a\nb\n"

    def test_cut(self, sh):
        assert sh("printf 'a,b,c\\n1,2,3\\n' | cut -d, -f2") == "b\n2\n"
        assert sh("printf 'a,b,c\\n' | cut -d, -f1,3") == "a,c\n"
        assert sh("echo abcdef | cut -c2-4") == "bcd\n"

    def test_tr(self, sh):
        assert sh("echo hello | tr a-z A-Z") == "HELLO\n"
        assert sh("echo hello | tr -d l") == "heo\n"
        assert sh("echo 'a   b' | tr -s ' '") == "a b\n"
        assert sh("echo Hello | tr '[:upper:]' '[:lower:]'") == "hello\n"

    def test_rev(self, sh):
        assert sh("echo abc | rev") == "cba\n"

    def test_sed(self, sh, fs):
        assert sh("echo 'hello world' | sed 's/world/there/'") == "hello there\n"
        assert sh("echo 'a a a' | sed 's/a/b/g'") == "b b b\n"
        assert sh("sed -n '2p' fruit.txt") == "banana\n"
        assert sh("sed '/an/d' fruit.txt") == "apple\ncherry\n"
        assert sh("echo 'key=value' | sed -E 's/([a-z]+)=([a-z]+)/\\2=\\1/'") == "value=key\n"
        assert sh("echo path | sed 's|path|/usr/bin|'") == "/usr/bin\n"
        assert sh("sed '1d;$d' fruit.txt") == "banana\n"
        assert sh("echo abc | sed 's/b/[&]/'") == "a[b]c\n"

    def test_sed_in_place(self, sh, fs):
        sh("sed -i 's/cherry/date/' fruit.txt")
        assert fs.read_text("fruit.txt") == "apple\nbanana\ndate\n"

    def test_sed_invalid_group_reference(self, fs):
        shell = ShellInterpreter(fs)
        piped = shell.run("echo a | sed 's/a/\\9/'")
        assert piped.exit_code == 1
        assert piped.stderr.startswith("sed: -e expression #1:")
        in_place = shell.run("sed -i 's/apple/\\9/' fruit.txt")
        assert in_place.exit_code == 1
        assert fs.read_text("fruit.txt") == FRUIT
        assert shell.run("echo still-running").stdout == "still-running\n"


class TestJq:
    DOC = json.dumps({"name": "demo", "items": [{"id": 1, "n": 3}, {"id": 2, "n": 0}], "meta": {"ok": True}})

    @pytest.fixture(autouse=True)
    def doc(self, fs):
        fs.write_text("doc.json", self.DOC)

    def test_paths(self, sh):
        assert sh("jq '.name' doc.json") == '"demo"\n'
        assert sh("jq -r '.name' doc.json") == "demo\n"
        assert sh("jq '.items[1].id' doc.json") == "2\n"
        assert sh("jq '.meta.ok' doc.json") == "true\n"
        assert sh("jq '.missing' doc.json") == "null\n"

    def test_iteration_and_pipes(self, sh):
        assert sh("jq '.items[] | .id' doc.json") == "1\n2\n"
        assert sh("jq -c '.items[0]' doc.json") == '{"id":1,"n":3}\n'
        assert sh("jq '.items | length' doc.json") == "2\n"

    def test_builtins(self, sh):
        assert sh("jq -c 'keys' doc.json") == '["items","meta","name"]\n'
        assert sh("jq -c '[.items[] | select(.n > 0) | .id]' doc.json") == "[1]\n"
        assert sh("jq -c '.items | map(.id)' doc.json") == "[1,2]\n"

    def test_pretty_print(self, sh):
        assert sh("jq '.meta' doc.json") == '{\n  "ok": true\n}\n'

    def test_stdin_input(self, sh):
        assert sh("echo '[1, 2, 3]' | jq '.[]'") == "1\n2\n3\n"

    def test_errors(self, fs):
        shell = ShellInterpreter(fs)
        bad_filter = shell.run("jq '.name |' doc.json")
        assert bad_filter.exit_code == 3
        bad_input = shell.run("echo '{oops' | jq .")
        assert bad_input.exit_code == 2
        bad_index = shell.run("jq '.name.first' doc.json")
        assert bad_index.exit_code == 5
        assert "Cannot index string" in bad_index.stderr
