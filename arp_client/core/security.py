from __future__ import annotations

from pathlib import Path

from arp_client.core.errors import SandboxViolation

SANDBOX_ESCAPE_REASON = "Path escapes action cwd"


def is_within_root(path: str | Path, root: str | Path) -> bool:
    resolved = Path(path).resolve()
    base = Path(root).resolve()
    return base == resolved or base in resolved.parents


def resolve_within_root(path: str, root: str | Path) -> Path:
    base = Path(root).resolve()
    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = base / candidate
    resolved = candidate.resolve()
    if not is_within_root(resolved, base):
        raise SandboxViolation(SANDBOX_ESCAPE_REASON, path=str(resolved))
    return resolved
