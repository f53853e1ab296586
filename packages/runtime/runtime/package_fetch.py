"""Install pure-Python wheels from a PyPI-style JSON index into a session dir.

Only ``py3-none-any`` wheels are accepted: nothing is compiled and no
installer scripts run. Dependencies declared with ``Requires-Dist`` are
installed recursively; entries guarded by an environment marker are skipped.
"""
from __future__ import annotations

import asyncio
import hashlib
import io
import logging
import re
import zipfile
from email.parser import Parser
from pathlib import Path
from typing import Any, List, Optional, Protocol, Set

import httpx

from protocol.errors import PackageInstallError
from runtime.package_resolution import canonical_name, parse_requirement
from workspace.path_utils import is_within

logger = logging.getLogger(__name__)

REQUIRES_DIST_NAME_RE = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)")


class PackageFetcher(Protocol):
    async def install(self, requirement: str, target: Path, installed: Set[str]) -> List[str]:
        """Install ``requirement`` and its dependencies into ``target``.

        ``installed`` holds canonical names already present and is updated in
        place. Returns the canonical names newly installed.
        """
        ...


def is_pure_wheel(filename: str) -> bool:
    if not filename.endswith(".whl"):
        return False
    parts = filename[:-4].split("-")
    if len(parts) < 5:
        return False
    python_tag, abi_tag, platform_tag = parts[-3:]
    return "py3" in python_tag.split(".") and abi_tag == "none" and platform_tag == "any"


def wheel_dependencies(metadata_text: str) -> List[str]:
    """Unconditional ``Requires-Dist`` names from a wheel's METADATA file."""
    message = Parser().parsestr(metadata_text)
    names: List[str] = []
    for entry in message.get_all("Requires-Dist") or []:
        if ";" in entry:
            continue
        match = REQUIRES_DIST_NAME_RE.match(entry)
        if match and match.group(1) not in names:
            names.append(match.group(1))
    return names


def extract_wheel(data: bytes, target: Path, package: str) -> Optional[str]:
    """Unpack a wheel into ``target`` and return its METADATA text, if any."""
    root = target.resolve()
    metadata: Optional[str] = None
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as exc:
        raise PackageInstallError(package, f"corrupt wheel: {exc}") from exc
    with archive:
        for member in archive.infolist():
            destination = (root / member.filename).resolve()
            if not is_within(destination, root):
                raise PackageInstallError(package, f"unsafe path in wheel: {member.filename}")
        try:
            for member in archive.infolist():
                archive.extract(member, root)
                parts = member.filename.split("/")
                if len(parts) == 2 and parts[0].endswith(".dist-info") and parts[1] == "METADATA":
                    metadata = archive.read(member).decode("utf-8", errors="replace")
        except OSError as exc:
            raise PackageInstallError(package, f"could not extract wheel: {exc}") from exc
    return metadata


class PyPIWheelFetcher:
    def __init__(
        self,
        index_url: str = "https://pypi.org/pypi",
        *,
        timeout_s: float = 30.0,
        max_retries: int = 2,
        retry_backoff_s: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._index_url = index_url.rstrip("/")
        self._timeout_s = timeout_s
        self._max_retries = max_retries
        self._retry_backoff_s = retry_backoff_s
        self._transport = transport

    async def install(self, requirement: str, target: Path, installed: Set[str]) -> List[str]:
        target.mkdir(parents=True, exist_ok=True)
        async with httpx.AsyncClient(
            timeout=self._timeout_s, transport=self._transport, follow_redirects=True
        ) as client:
            new: List[str] = []
            await self._install_one(client, requirement, target, installed, new)
            return new

    async def _install_one(
        self,
        client: httpx.AsyncClient,
        requirement: str,
        target: Path,
        installed: Set[str],
        new: List[str],
    ) -> None:
        try:
            name, version = parse_requirement(requirement)
        except ValueError as exc:
            raise PackageInstallError(requirement.strip(), str(exc)) from None
        key = canonical_name(name)
        if key in installed:
            return
        path = f"{name}/{version}/json" if version else f"{name}/json"
        info = await self._get_json(client, f"{self._index_url}/{path}", name)
        wheel = self._pick_wheel(info, name)
        data = await self._download(client, wheel["url"], name)
        expected = (wheel.get("digests") or {}).get("sha256")
        if expected and hashlib.sha256(data).hexdigest() != expected:
            raise PackageInstallError(name, "sha256 mismatch for downloaded wheel")
        metadata = extract_wheel(data, target, name)
        installed.add(key)
        new.append(key)
        logger.info(f"Installed {wheel['filename']} into {target}")
        for dependency in wheel_dependencies(metadata or ""):
            try:
                await self._install_one(client, dependency, target, installed, new)
            except PackageInstallError as exc:
                raise PackageInstallError(name, f"dependency {dependency}: {exc.reason}") from exc

    def _pick_wheel(self, info: dict, name: str) -> dict:
        files = info.get("urls") or []
        for file_info in files:
            if file_info.get("packagetype") == "bdist_wheel" and is_pure_wheel(file_info.get("filename", "")):
                return file_info
        version = (info.get("info") or {}).get("version", "?")
        raise PackageInstallError(name, f"no pure-Python wheel available for version {version}")

    async def _get_json(self, client: httpx.AsyncClient, url: str, name: str) -> Any:
        response = await self._get_with_retry(client, url, name)
        if response.status_code == 404:
            raise PackageInstallError(name, "package not found in index")
        if response.status_code != 200:
            raise PackageInstallError(name, f"index request failed with status {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise PackageInstallError(name, "index response was not valid JSON") from exc

    async def _download(self, client: httpx.AsyncClient, url: str, name: str) -> bytes:
        response = await self._get_with_retry(client, url, name)
        if response.status_code != 200:
            raise PackageInstallError(name, f"download failed with status {response.status_code}")
        return response.content

    async def _get_with_retry(self, client: httpx.AsyncClient, url: str, name: str) -> httpx.Response:
        attempt = 0
        while True:
            try:
                response = await client.get(url)
            except httpx.TimeoutException:
                if attempt >= self._max_retries:
                    raise PackageInstallError(name, "index request timed out") from None
                await self._sleep_backoff(attempt)
                attempt += 1
                continue
            except httpx.HTTPError as exc:
                raise PackageInstallError(name, f"index request failed: {exc}") from exc

            if response.status_code == 429 or response.status_code >= 500:
                if attempt >= self._max_retries:
                    raise PackageInstallError(name, f"index request failed with status {response.status_code}")
                await self._sleep_backoff(attempt)
                attempt += 1
                continue
            return response

    async def _sleep_backoff(self, attempt: int) -> None:
        delay = self._retry_backoff_s * (2**attempt)
        if delay > 0:
            await asyncio.sleep(delay)
