"""HTTP routes over a ``SandboxCoordinator``: execution, packages and workspace files."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from protocol.errors import SandboxError
from protocol.execution import ExecutionResult, PackageInstallOutcome, ShellResult
from protocol.workspace import FileEntry, WorkspaceTreeNode
from runtime.coordinator import SandboxCoordinator

router = APIRouter(tags=["sandbox"])


def get_coordinator(request: Request) -> SandboxCoordinator:
    return request.app.state.coordinator


def _http_error(exc: SandboxError) -> HTTPException:
    return HTTPException(status_code=exc.http_status, detail=exc.to_reason())


class PythonBody(BaseModel):
    code: str
    packages: list[str] = Field(default_factory=list)


class PackagesBody(BaseModel):
    packages: list[str]


class ShellBody(BaseModel):
    command: str
    cwd: Optional[str] = None


class FileContentBody(BaseModel):
    path: str
    content: str


@router.post("/python/execute", response_model=ExecutionResult)
async def execute_python(body: PythonBody, coordinator: SandboxCoordinator = Depends(get_coordinator)):
    try:
        return await coordinator.execute_python(body.code, body.packages)
    except SandboxError as e:
        raise _http_error(e)


@router.post("/python/packages", response_model=list[PackageInstallOutcome])
async def install_packages(body: PackagesBody, coordinator: SandboxCoordinator = Depends(get_coordinator)):
    try:
        return await coordinator.install_packages(body.packages)
    except SandboxError as e:
        raise _http_error(e)


@router.post("/shell/execute", response_model=ShellResult)
async def execute_shell(body: ShellBody, coordinator: SandboxCoordinator = Depends(get_coordinator)):
    try:
        return await coordinator.execute_shell(body.command, body.cwd)
    except SandboxError as e:
        raise _http_error(e)


@router.get("/files", response_model=list[FileEntry])
def list_files(
    path: Optional[str] = Query(None, description="virtual directory, defaults to /workspace"),
    coordinator: SandboxCoordinator = Depends(get_coordinator),
):
    try:
        return coordinator.list_files(path)
    except SandboxError as e:
        raise _http_error(e)


@router.get("/files/content")
def read_file(path: str, coordinator: SandboxCoordinator = Depends(get_coordinator)) -> dict:
    try:
        return {"path": path, "content": coordinator.read_file(path)}
    except SandboxError as e:
        raise _http_error(e)


@router.put("/files/content")
def write_file(body: FileContentBody, coordinator: SandboxCoordinator = Depends(get_coordinator)) -> dict:
    try:
        coordinator.write_file(body.path, body.content)
    except SandboxError as e:
        raise _http_error(e)
    return {"path": body.path, "ok": True}


@router.delete("/files")
def delete_file(path: str, coordinator: SandboxCoordinator = Depends(get_coordinator)) -> dict:
    try:
        coordinator.delete_file(path)
    except SandboxError as e:
        raise _http_error(e)
    return {"path": path, "ok": True}


@router.get("/files/tree", response_model=WorkspaceTreeNode)
def file_tree(
    path: Optional[str] = None,
    max_depth: Optional[int] = Query(None, ge=0),
    coordinator: SandboxCoordinator = Depends(get_coordinator),
):
    try:
        return coordinator.file_tree(path, max_depth)
    except SandboxError as e:
        raise _http_error(e)
