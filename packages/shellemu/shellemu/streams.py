from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from workspace.bridge import WorkspaceFS


class OutputBuffer:
    """Collects a stream; stops accepting text once ``limit`` bytes are held."""

    def __init__(self, limit: Optional[int] = None) -> None:
        self._parts: List[str] = []
        self._size = 0
        self._limit = limit
        self.truncated = False

    def write(self, text: str) -> None:
        if not text:
            return
        if self._limit is not None and self._size > self._limit:
            self.truncated = True
            return
        self._parts.append(text)
        self._size += len(text.encode("utf-8"))

    def getvalue(self) -> str:
        return "".join(self._parts)

    def flush(self) -> None:
        pass


class NullSink(OutputBuffer):
    def write(self, text: str) -> None:
        pass


class FileSink(OutputBuffer):
    """Output redirected to a workspace file, written when the command ends.

    The file is created (or truncated) as soon as the redirection is set up.
    """

    def __init__(self, fs: WorkspaceFS, path: str, cwd: str, append: bool) -> None:
        super().__init__()
        self._fs = fs
        self._path = path
        self._cwd = cwd
        fs.write_text(path, "", cwd, append=append)

    def flush(self) -> None:
        data = self.getvalue()
        self._parts = []
        self._size = 0
        if data:
            self._fs.write_text(self._path, data, self._cwd, append=True)


class InputStream:
    """Standard input shared by every command reading from one source."""

    def __init__(self, text: str = "") -> None:
        self._text = text
        self._pos = 0

    def read(self) -> str:
        data = self._text[self._pos:]
        self._pos = len(self._text)
        return data

    def readline(self) -> Optional[str]:
        if self._pos >= len(self._text):
            return None
        end = self._text.find("\n", self._pos)
        if end == -1:
            line, self._pos = self._text[self._pos:], len(self._text)
        else:
            line, self._pos = self._text[self._pos:end + 1], end + 1
        return line


@dataclass
class IO:
    stdin: InputStream
    stdout: OutputBuffer
    stderr: OutputBuffer
