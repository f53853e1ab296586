"""Utilities that work on workspace files: cat, ls, cp, find and friends.

Every path goes through the command's ``WorkspaceFS``, so a path that would
leave the workspace fails the same way a missing file does, with the bridge's
message on stderr.
"""
from __future__ import annotations

import posixpath
import stat
from fnmatch import fnmatchcase
from typing import Iterator, List, Optional, Tuple

from protocol.errors import FileNotFoundInWorkspace, SandboxError
from shellemu.commands.registry import CommandContext, UsageError, command, getopt, join_lines, split_lines


def _describe(exc: SandboxError) -> str:
    if isinstance(exc, FileNotFoundInWorkspace):
        return "No such file or directory"
    return exc.message


def _is_link(ctx: CommandContext, path: str) -> bool:
    try:
        _, host = ctx.fs.resolve_link(path, ctx.cwd)
    except SandboxError:
        return False
    return host.is_symlink()


@command("cat")
def cat(ctx: CommandContext, args: List[str]) -> int:
    opts, paths = getopt(args, "n")
    status = 0
    number = 1
    for _, text in ctx.inputs(paths):
        if text is None:
            status = 1
            continue
        if opts.get("n"):
            lines = split_lines(text)
            trailing = text.endswith("\n")
            out = []
            for index, line in enumerate(lines):
                end = "\n" if index < len(lines) - 1 or trailing else ""
                out.append(f"{number:6d}\t{line}{end}")
                number += 1
            text = "".join(out)
        ctx.write(text)
    return status


def _mode_string(is_dir: bool, is_link: bool) -> str:
    if is_link:
        return "lrwxrwxrwx"
    return "drwxr-xr-x" if is_dir else "-rw-r--r--"


@command("ls")
def ls(ctx: CommandContext, args: List[str]) -> int:
    opts, paths = getopt(args, "laA1hF")
    show_all = bool(opts.get("a") or opts.get("A"))
    long_format = bool(opts.get("l"))
    status = 0
    targets = paths or ["."]
    file_operands: List[str] = []
    dir_operands: List[str] = []
    for path in targets:
        try:
            if ctx.fs.is_dir(path, ctx.cwd):
                dir_operands.append(path)
            elif ctx.fs.lexists(path, ctx.cwd):
                file_operands.append(path)
            else:
                ctx.error(f"cannot access '{path}': No such file or directory")
                status = 2
        except SandboxError as exc:
            ctx.error(f"cannot access '{path}': {_describe(exc)}")
            status = 2

    def render(name: str, full: str, is_dir: bool, size: int) -> str:
        suffix = "/" if opts.get("F") and is_dir else ""
        if not long_format:
            return name + suffix
        link = _is_link(ctx, full)
        line = f"{_mode_string(is_dir, link)} 1 sandbox sandbox {size:>8} {name}{suffix}"
        if link:
            line += f" -> {ctx.fs.readlink(full, ctx.cwd)}"
        return line

    lines: List[str] = []
    for path in file_operands:
        try:
            size = ctx.fs.stat(path, ctx.cwd).st_size
        except SandboxError:
            size = 0
        lines.append(render(path, path, False, size))
    for index, path in enumerate(dir_operands):
        if len(targets) > 1:
            if lines or index > 0:
                lines.append("")
            lines.append(f"{path}:")
        entries = ctx.fs.list_dir(path, ctx.cwd)
        if opts.get("a"):
            lines.append(render(".", path, True, 0))
            lines.append(render("..", posixpath.join(path, ".."), True, 0))
        for entry in entries:
            if entry.name.startswith(".") and not show_all:
                continue
            lines.append(render(entry.name, posixpath.join(path, entry.name), entry.is_directory, entry.size))
    ctx.write(join_lines(lines))
    return status


@command("mkdir")
def mkdir(ctx: CommandContext, args: List[str]) -> int:
    opts, paths = getopt(args, "pv")
    if not paths:
        raise UsageError("missing operand")
    status = 0
    for path in paths:
        try:
            if opts.get("p"):
                ctx.fs.mkdir(path, ctx.cwd, parents=True, exist_ok=True)
            else:
                if ctx.fs.lexists(path, ctx.cwd):
                    ctx.error(f"cannot create directory '{path}': File exists")
                    status = 1
                    continue
                ctx.fs.mkdir(path, ctx.cwd)
        except SandboxError as exc:
            ctx.error(f"cannot create directory '{path}': {_describe(exc)}")
            status = 1
    return status


@command("touch")
def touch(ctx: CommandContext, args: List[str]) -> int:
    _, paths = getopt(args, "c")
    if not paths:
        raise UsageError("missing file operand")
    status = 0
    for path in paths:
        try:
            ctx.fs.touch(path, ctx.cwd)
        except SandboxError as exc:
            ctx.error(f"cannot touch '{path}': {_describe(exc)}")
            status = 1
    return status


@command("rm")
def rm(ctx: CommandContext, args: List[str]) -> int:
    opts, paths = getopt(args, "rRfdv")
    recursive = bool(opts.get("r") or opts.get("R"))
    force = bool(opts.get("f"))
    if not paths and not force:
        raise UsageError("missing operand")
    status = 0
    for path in paths:
        try:
            if not ctx.fs.lexists(path, ctx.cwd):
                if not force:
                    ctx.error(f"cannot remove '{path}': No such file or directory")
                    status = 1
                continue
            if ctx.fs.is_dir(path, ctx.cwd) and not _is_link(ctx, path):
                if recursive:
                    ctx.fs.delete_tree(path, ctx.cwd)
                elif opts.get("d"):
                    ctx.fs.delete(path, ctx.cwd)
                else:
                    ctx.error(f"cannot remove '{path}': Is a directory")
                    status = 1
                continue
            ctx.fs.delete(path, ctx.cwd)
        except SandboxError as exc:
            ctx.error(f"cannot remove '{path}': {_describe(exc)}")
            status = 1
    return status


@command("rmdir")
def rmdir(ctx: CommandContext, args: List[str]) -> int:
    _, paths = getopt(args, "p")
    if not paths:
        raise UsageError("missing operand")
    status = 0
    for path in paths:
        try:
            if not ctx.fs.is_dir(path, ctx.cwd):
                reason = "Not a directory" if ctx.fs.lexists(path, ctx.cwd) else "No such file or directory"
                ctx.error(f"failed to remove '{path}': {reason}")
                status = 1
                continue
            ctx.fs.delete(path, ctx.cwd)
        except SandboxError as exc:
            ctx.error(f"failed to remove '{path}': {_describe(exc)}")
            status = 1
    return status


def _destination(ctx: CommandContext, src: str, dst: str) -> str:
    if ctx.fs.is_dir(dst, ctx.cwd):
        return posixpath.join(dst, posixpath.basename(src.rstrip("/")))
    return dst


def _copy_tree(ctx: CommandContext, src: str, dst: str) -> None:
    ctx.fs.mkdir(dst, ctx.cwd, parents=True, exist_ok=True)
    for entry in ctx.fs.list_dir(src, ctx.cwd):
        child_src = posixpath.join(src, entry.name)
        child_dst = posixpath.join(dst, entry.name)
        if entry.is_directory and not _is_link(ctx, child_src):
            _copy_tree(ctx, child_src, child_dst)
        else:
            ctx.fs.copy_file(child_src, child_dst, ctx.cwd)


@command("cp")
def cp(ctx: CommandContext, args: List[str]) -> int:
    opts, paths = getopt(args, "rRfpav")
    if len(paths) < 2:
        raise UsageError("missing destination file operand")
    recursive = bool(opts.get("r") or opts.get("R") or opts.get("a"))
    *sources, dst = paths
    if len(sources) > 1 and not ctx.fs.is_dir(dst, ctx.cwd):
        ctx.error(f"target '{dst}' is not a directory")
        return 1
    status = 0
    for src in sources:
        try:
            if not ctx.fs.exists(src, ctx.cwd):
                ctx.error(f"cannot stat '{src}': No such file or directory")
                status = 1
                continue
            target = _destination(ctx, src, dst)
            if ctx.fs.is_dir(src, ctx.cwd):
                if not recursive:
                    ctx.error(f"-r not specified; omitting directory '{src}'")
                    status = 1
                    continue
                _copy_tree(ctx, src, target)
            else:
                ctx.fs.copy_file(src, target, ctx.cwd)
        except SandboxError as exc:
            ctx.error(f"cannot copy '{src}': {_describe(exc)}")
            status = 1
    return status


@command("mv")
def mv(ctx: CommandContext, args: List[str]) -> int:
    _, paths = getopt(args, "fnv")
    if len(paths) < 2:
        raise UsageError("missing destination file operand")
    *sources, dst = paths
    if len(sources) > 1 and not ctx.fs.is_dir(dst, ctx.cwd):
        ctx.error(f"target '{dst}' is not a directory")
        return 1
    status = 0
    for src in sources:
        try:
            if not ctx.fs.lexists(src, ctx.cwd):
                ctx.error(f"cannot stat '{src}': No such file or directory")
                status = 1
                continue
            ctx.fs.rename(src, _destination(ctx, src, dst), ctx.cwd)
        except SandboxError as exc:
            ctx.error(f"cannot move '{src}': {_describe(exc)}")
            status = 1
    return status


@command("ln")
def ln(ctx: CommandContext, args: List[str]) -> int:
    opts, paths = getopt(args, "sfnv")
    if not opts.get("s"):
        ctx.error("hard links are not supported; use -s")
        return 1
    if not paths:
        raise UsageError("missing file operand")
    target = paths[0]
    link = paths[1] if len(paths) > 1 else posixpath.basename(target.rstrip("/"))
    try:
        if ctx.fs.is_dir(link, ctx.cwd) and not _is_link(ctx, link):
            link = posixpath.join(link, posixpath.basename(target.rstrip("/")))
        if opts.get("f") and ctx.fs.lexists(link, ctx.cwd):
            ctx.fs.delete(link, ctx.cwd)
        ctx.fs.symlink(link, target, ctx.cwd)
    except SandboxError as exc:
        ctx.error(f"failed to create symbolic link '{link}': {_describe(exc)}")
        return 1
    return 0


# ---------------------------------------------------------------------------
# find
# ---------------------------------------------------------------------------


def _parse_find(args: List[str]) -> Tuple[List[str], dict]:
    roots: List[str] = []
    i = 0
    while i < len(args) and not args[i].startswith("-") and args[i] not in ("!", "("):
        roots.append(args[i])
        i += 1
    criteria = {"name": None, "iname": None, "type": None, "maxdepth": None, "mindepth": 0, "path": None}
    while i < len(args):
        flag = args[i]
        if flag in ("-print", "-print0"):
            i += 1
            continue
        if flag.lstrip("-") not in criteria or i + 1 >= len(args):
            raise UsageError(f"unknown predicate `{flag}'")
        key, value = flag.lstrip("-"), args[i + 1]
        if key in ("maxdepth", "mindepth"):
            try:
                criteria[key] = int(value)
            except ValueError:
                raise UsageError(f"invalid argument `{value}' to `{flag}'") from None
        elif key == "type" and value not in ("f", "d", "l"):
            raise UsageError(f"unknown argument to -type: {value}")
        else:
            criteria[key] = value
        i += 2
    return roots or ["."], criteria


def _walk(ctx: CommandContext, path: str, depth: int, maxdepth: Optional[int]) -> Iterator[Tuple[str, int, str]]:
    link = _is_link(ctx, path)
    try:
        is_dir = ctx.fs.is_dir(path, ctx.cwd)
    except SandboxError:
        is_dir = False
    kind = "l" if link else ("d" if is_dir else "f")
    yield path, depth, kind
    if kind != "d" or (maxdepth is not None and depth >= maxdepth):
        return
    for entry in ctx.fs.list_dir(path, ctx.cwd):
        child = path + entry.name if path.endswith("/") else f"{path}/{entry.name}"
        yield from _walk(ctx, child, depth + 1, maxdepth)


@command("find")
def find(ctx: CommandContext, args: List[str]) -> int:
    roots, criteria = _parse_find(args)
    status = 0
    lines: List[str] = []
    for root in roots:
        try:
            if not ctx.fs.lexists(root, ctx.cwd):
                ctx.error(f"'{root}': No such file or directory")
                status = 1
                continue
            for path, depth, kind in _walk(ctx, root, 0, criteria["maxdepth"]):
                if depth < criteria["mindepth"]:
                    continue
                name = posixpath.basename(path.rstrip("/")) or path
                if criteria["name"] is not None and not fnmatchcase(name, criteria["name"]):
                    continue
                if criteria["iname"] is not None and not fnmatchcase(name.lower(), criteria["iname"].lower()):
                    continue
                if criteria["path"] is not None and not fnmatchcase(path, criteria["path"]):
                    continue
                if criteria["type"] is not None and kind != criteria["type"]:
                    continue
                lines.append(path)
        except SandboxError as exc:
            ctx.error(f"'{root}': {_describe(exc)}")
            status = 1
    ctx.write(join_lines(lines))
    return status


# ---------------------------------------------------------------------------
# head / tail / wc / tee
# ---------------------------------------------------------------------------


def _count_args(args: List[str]) -> List[str]:
    """Rewrite the historical ``-5`` form into ``-n 5``."""
    out = []
    for arg in args:
        if len(arg) > 1 and arg[0] == "-" and arg[1:].isdigit():
            out.extend(["-n", arg[1:]])
        else:
            out.append(arg)
    return out


def _head_tail(ctx: CommandContext, args: List[str], tail: bool) -> int:
    opts, paths = getopt(_count_args(args), "n:c:qv")
    raw = str(opts.get("c", opts.get("n", "10")))
    from_start = tail and raw.startswith("+")
    try:
        count = int(raw.lstrip("+"))
    except ValueError:
        ctx.error(f"invalid number of {'bytes' if 'c' in opts else 'lines'}: '{raw}'")
        return 1
    by_bytes = "c" in opts
    status = 0
    headers = (len(paths) > 1 or opts.get("v")) and not opts.get("q")
    for index, (name, text) in enumerate(ctx.inputs(paths)):
        if text is None:
            status = 1
            continue
        if headers:
            ctx.write(("\n" if index else "") + f"==> {name} <==\n")
        if by_bytes:
            data = text.encode("utf-8")
            if from_start:
                chunk = data[max(count - 1, 0):]
            elif tail:
                chunk = data[-count:] if count else b""
            else:
                chunk = data[:count]
            ctx.write(chunk.decode("utf-8", errors="replace"))
            continue
        lines = text.splitlines(keepends=True)
        if from_start:
            chunk_lines = lines[max(count - 1, 0):]
        elif tail:
            chunk_lines = lines[-count:] if count else []
        else:
            chunk_lines = lines[:count]
        ctx.write("".join(chunk_lines))
    return status


@command("head")
def head(ctx: CommandContext, args: List[str]) -> int:
    return _head_tail(ctx, args, tail=False)


@command("tail")
def tail(ctx: CommandContext, args: List[str]) -> int:
    return _head_tail(ctx, args, tail=True)


@command("wc")
def wc(ctx: CommandContext, args: List[str]) -> int:
    opts, paths = getopt(args, "lwcm")
    selected = [flag for flag in "lwmc" if opts.get(flag)] or ["l", "w", "c"]
    rows: List[Tuple[List[int], Optional[str]]] = []
    totals = [0] * len(selected)
    status = 0
    for name, text in ctx.inputs(paths):
        if text is None:
            status = 1
            continue
        counts = {
            "l": text.count("\n"),
            "w": len(text.split()),
            "m": len(text),
            "c": len(text.encode("utf-8")),
        }
        values = [counts[flag] for flag in selected]
        totals = [a + b for a, b in zip(totals, values)]
        rows.append((values, None if name == "-" else name))
    if len(rows) > 1:
        rows.append((totals, "total"))
    single = len(rows) == 1 and len(selected) == 1
    width = 0 if single else max(len(str(v)) for values, _ in rows for v in values) if rows else 0
    for values, name in rows:
        line = " ".join(str(v).rjust(width) for v in values)
        ctx.write(line + (f" {name}" if name else "") + "\n")
    return status


@command("tee")
def tee(ctx: CommandContext, args: List[str]) -> int:
    opts, paths = getopt(args, "a")
    data = ctx.stdin.read()
    status = 0
    for path in paths:
        try:
            ctx.fs.write_text(path, data, ctx.cwd, append=bool(opts.get("a")))
        except SandboxError as exc:
            ctx.error(f"{path}: {_describe(exc)}")
            status = 1
    ctx.write(data)
    return status


@command("stat")
def stat_cmd(ctx: CommandContext, args: List[str]) -> int:
    _, paths = getopt(args, "L")
    if not paths:
        raise UsageError("missing operand")
    status = 0
    for path in paths:
        try:
            info = ctx.fs.stat(path, ctx.cwd)
        except SandboxError as exc:
            ctx.error(f"cannot stat '{path}': {_describe(exc)}")
            status = 1
            continue
        kind = "directory" if stat.S_ISDIR(info.st_mode) else "regular file"
        ctx.write(f"  File: {path}\n  Size: {info.st_size}\t{kind}\n")
    return status
