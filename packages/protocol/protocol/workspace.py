from __future__ import annotations

from typing import List

from pydantic import Field

from protocol.base import BaseModel


class FileEntry(BaseModel):
    name: str
    is_directory: bool
    size: int


class WorkspaceTreeNode(BaseModel):
    """Recursive view of the workspace, rooted at ``path`` (a virtual path)."""

    name: str
    path: str
    is_directory: bool
    size: int = 0
    children: List["WorkspaceTreeNode"] = Field(default_factory=list)

    def iter_paths(self):
        yield self.path
        for child in self.children:
            yield from child.iter_paths()


WorkspaceTreeNode.model_rebuild()
