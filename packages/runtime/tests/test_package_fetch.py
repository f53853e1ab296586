import asyncio
import hashlib
import io
import zipfile
from typing import Dict, List

import httpx
import pytest

from protocol.errors import PackageInstallError
from runtime.package_fetch import PyPIWheelFetcher, is_pure_wheel, wheel_dependencies

INDEX = "https://index.test/pypi"


def build_wheel(name: str, version: str, module_source: str, requires: List[str] = ()) -> bytes:
    buffer = io.BytesIO()
    dist_info = f"{name}-{version}.dist-info"
    metadata = ["Metadata-Version: 2.1", f"Name: {name}", f"Version: {version}"]
    metadata.extend(f"Requires-Dist: {req}" for req in requires)
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr(f"{name}.py", module_source)
        archive.writestr(f"{dist_info}/METADATA", "\n".join(metadata) + "\n")
        archive.writestr(f"{dist_info}/WHEEL", "Wheel-Version: 1.0\n")
    return buffer.getvalue()


class FakeIndex:
    def __init__(self) -> None:
        self.projects: Dict[str, dict] = {}
        self.files: Dict[str, bytes] = {}
        self.requests: List[str] = []

    def add(self, name: str, version: str, wheel: bytes, *, filename: str | None = None, sha256: str | None = None):
        filename = filename or f"{name}-{version}-py3-none-any.whl"
        url = f"https://files.test/{filename}"
        self.files[url] = wheel
        self.projects[name] = {
            "info": {"name": name, "version": version},
            "urls": [
                {
                    "filename": filename,
                    "packagetype": "bdist_wheel",
                    "url": url,
                    "digests": {"sha256": sha256 or hashlib.sha256(wheel).hexdigest()},
                }
            ],
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        if url in self.files:
            return httpx.Response(200, content=self.files[url])
        if url.startswith(INDEX):
            name = url[len(INDEX) + 1 :].split("/")[0]
            if name in self.projects:
                return httpx.Response(200, json=self.projects[name])
        return httpx.Response(404)

    def fetcher(self) -> PyPIWheelFetcher:
        return PyPIWheelFetcher(INDEX, retry_backoff_s=0.0, transport=httpx.MockTransport(self.handler))


class TestWheelHelpers:
    @pytest.mark.parametrize(
        "filename,expected",
        [
            ("six-1.16.0-py2.py3-none-any.whl", True),
            ("attrs-23.1.0-py3-none-any.whl", True),
            ("numpy-1.26.0-cp311-cp311-manylinux_2_17_x86_64.whl", False),
            ("legacy-1.0-py2-none-any.whl", False),
            ("thing-1.0.tar.gz", False),
        ],
    )
    def test_is_pure_wheel(self, filename, expected):
        assert is_pure_wheel(filename) is expected

    def test_wheel_dependencies_skip_marked_entries(self):
        text = (
            "Name: demo\n"
            "Requires-Dist: six (>=1.0)\n"
            "Requires-Dist: pytest ; extra == 'test'\n"
            "Requires-Dist: tomli ; python_version < '3.11'\n"
            "Requires-Dist: attrs>=20\n"
        )
        assert wheel_dependencies(text) == ["six", "attrs"]


def test_installs_wheel_and_dependencies(tmp_path) -> None:
    async def run_test() -> None:
        index = FakeIndex()
        index.add("alpha", "1.0", build_wheel("alpha", "1.0", "VALUE = 1\n", requires=["beta"]))
        index.add("beta", "2.0", build_wheel("beta", "2.0", "VALUE = 2\n"))
        installed = set()
        new = await index.fetcher().install("alpha", tmp_path, installed)
        assert new == ["alpha", "beta"]
        assert installed == {"alpha", "beta"}
        assert (tmp_path / "alpha.py").read_text() == "VALUE = 1\n"
        assert (tmp_path / "beta.py").exists()

    asyncio.run(run_test())


def test_already_installed_is_not_fetched(tmp_path) -> None:
    async def run_test() -> None:
        index = FakeIndex()
        new = await index.fetcher().install("Alpha", tmp_path, {"alpha"})
        assert new == []
        assert index.requests == []

    asyncio.run(run_test())


def test_pinned_version_uses_versioned_endpoint(tmp_path) -> None:
    async def run_test() -> None:
        index = FakeIndex()
        index.add("alpha", "1.0", build_wheel("alpha", "1.0", "VALUE = 1\n"))
        await index.fetcher().install("alpha==1.0", tmp_path, set())
        assert index.requests[0] == f"{INDEX}/alpha/1.0/json"

    asyncio.run(run_test())


def test_unknown_package_fails(tmp_path) -> None:
    async def run_test() -> None:
        with pytest.raises(PackageInstallError, match="not found"):
            await FakeIndex().fetcher().install("missing", tmp_path, set())

    asyncio.run(run_test())


def test_checksum_mismatch_fails(tmp_path) -> None:
    async def run_test() -> None:
        index = FakeIndex()
        index.add("alpha", "1.0", build_wheel("alpha", "1.0", "VALUE = 1\n"), sha256="0" * 64)
        with pytest.raises(PackageInstallError, match="sha256 mismatch"):
            await index.fetcher().install("alpha", tmp_path, set())
        assert not (tmp_path / "alpha.py").exists()

    asyncio.run(run_test())


def test_compiled_only_release_fails(tmp_path) -> None:
    async def run_test() -> None:
        index = FakeIndex()
        wheel = build_wheel("fast", "1.0", "")
        index.add("fast", "1.0", wheel, filename="fast-1.0-cp311-cp311-linux_x86_64.whl")
        with pytest.raises(PackageInstallError, match="no pure-Python wheel"):
            await index.fetcher().install("fast", tmp_path, set())

    asyncio.run(run_test())


def test_wheel_with_escaping_member_is_rejected(tmp_path) -> None:
    async def run_test() -> None:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:
            archive.writestr("../evil.py", "boom = True\n")
        index = FakeIndex()
        index.add("evil", "1.0", buffer.getvalue())
        target = tmp_path / "site"
        with pytest.raises(PackageInstallError, match="unsafe path"):
            await index.fetcher().install("evil", target, set())
        assert not (tmp_path / "evil.py").exists()

    asyncio.run(run_test())


def test_server_errors_are_retried(tmp_path) -> None:
    async def run_test() -> None:
        index = FakeIndex()
        index.add("alpha", "1.0", build_wheel("alpha", "1.0", "VALUE = 1\n"))
        calls = {"count": 0}

        def flaky(request: httpx.Request) -> httpx.Response:
            calls["count"] += 1
            if calls["count"] == 1:
                return httpx.Response(503)
            return index.handler(request)

        fetcher = PyPIWheelFetcher(INDEX, retry_backoff_s=0.0, transport=httpx.MockTransport(flaky))
        assert await fetcher.install("alpha", tmp_path, set()) == ["alpha"]
        assert calls["count"] == 3

    asyncio.run(run_test())
