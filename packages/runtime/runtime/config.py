from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from runtime.policy import ResourceLimitPolicy

DEFAULT_WORKSPACE = "./workspace"
DEFAULT_PACKAGE_INDEX_URL = "https://pypi.org/pypi"


def _read_bool_env(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"0", "false", "off", "no"}:
        return False
    if normalized in {"1", "true", "on", "yes"}:
        return True
    return default


@dataclass(frozen=True)
class SandboxConfig:
    workspace_root: Path = Path(DEFAULT_WORKSPACE)
    limits: ResourceLimitPolicy = field(default_factory=ResourceLimitPolicy)
    package_index_url: str = DEFAULT_PACKAGE_INDEX_URL
    site_packages_dir: Optional[Path] = None
    allow_package_install: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SandboxConfig":
        env = os.environ if environ is None else environ
        site_dir = env.get("HEIMDALL_SITE_PACKAGES", "").strip()
        return cls(
            workspace_root=Path(env.get("HEIMDALL_WORKSPACE", DEFAULT_WORKSPACE)).expanduser(),
            limits=ResourceLimitPolicy.from_env(env),
            package_index_url=env.get("HEIMDALL_PACKAGE_INDEX_URL", DEFAULT_PACKAGE_INDEX_URL).rstrip("/"),
            site_packages_dir=Path(site_dir).expanduser() if site_dir else None,
            allow_package_install=_read_bool_env(env, "HEIMDALL_ALLOW_PACKAGE_INSTALL", True),
        )
