from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from typing import Mapping, Optional

DEFAULT_MAX_LOOP_ITERATIONS = 10_000
DEFAULT_MAX_COMMAND_COUNT = 10_000
DEFAULT_WALL_CLOCK_TIMEOUT_MS = 30_000
DEFAULT_MAX_OUTPUT_BYTES = 1024 * 1024


def _read_int_env(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True)
class ResourceLimitPolicy:
    """Execution caps read by the controllers once per call.

    ``wall_clock_timeout_ms`` applies to Python execution; 0 disables it.
    ``max_loop_iterations`` and ``max_command_count`` are the shell circuit
    breakers. ``max_output_bytes`` caps each captured stream.
    """

    max_loop_iterations: int = DEFAULT_MAX_LOOP_ITERATIONS
    max_command_count: int = DEFAULT_MAX_COMMAND_COUNT
    wall_clock_timeout_ms: int = DEFAULT_WALL_CLOCK_TIMEOUT_MS
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES

    def __post_init__(self) -> None:
        for name, value in asdict(self).items():
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{name} must be an integer, got {value!r}")
            if value < 0:
                raise ValueError(f"{name} must be non-negative, got {value}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ResourceLimitPolicy":
        env = os.environ if environ is None else environ
        return cls(
            max_loop_iterations=_read_int_env(env, "HEIMDALL_MAX_LOOP_ITERATIONS", DEFAULT_MAX_LOOP_ITERATIONS),
            max_command_count=_read_int_env(env, "HEIMDALL_MAX_COMMAND_COUNT", DEFAULT_MAX_COMMAND_COUNT),
            wall_clock_timeout_ms=_read_int_env(
                env, "HEIMDALL_PYTHON_EXECUTION_TIMEOUT_MS", DEFAULT_WALL_CLOCK_TIMEOUT_MS
            ),
            max_output_bytes=_read_int_env(env, "HEIMDALL_MAX_OUTPUT_BYTES", DEFAULT_MAX_OUTPUT_BYTES),
        )

    @property
    def timeout_seconds(self) -> Optional[float]:
        if self.wall_clock_timeout_ms == 0:
            return None
        return self.wall_clock_timeout_ms / 1000

    def to_dict(self) -> dict:
        return asdict(self)


def truncate_output(text: str, max_bytes: int) -> str:
    """Cut ``text`` to at most ``max_bytes`` UTF-8 bytes, marking the cut."""
    data = text.encode("utf-8")
    if len(data) <= max_bytes:
        return text
    kept = data[:max_bytes].decode("utf-8", errors="ignore")
    return kept + f"\n... [output truncated at {max_bytes} bytes]\n"
