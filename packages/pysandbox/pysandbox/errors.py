from __future__ import annotations


class SandboxViolation(Exception):
    """Sandboxed code tried to reach something the sandbox does not expose."""


class ExecutionInterrupted(BaseException):
    """Raised at a safe point once the wall-clock interrupt has tripped.

    Derives from ``BaseException`` so ``except Exception`` in user code does
    not swallow it.
    """
