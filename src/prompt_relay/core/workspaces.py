# src/prompt_relay/core/workspaces.py

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path

from .errors import WorkspaceNotFound


def parse_workspaces(raw: str | Iterable[str]) -> dict[str, Path]:
    """
    Parse "name=/path" pairs.

    Accepts a single string (comma or whitespace separated) or an iterable of pairs.
    Entries without "=" or with an empty name/path are ignored.
    """
    if isinstance(raw, str):
        parts = raw.replace(",", " ").split()
    else:
        parts = [str(p).strip() for p in raw]

    out: dict[str, Path] = {}
    for part in parts:
        name, sep, path = part.partition("=")
        name = name.strip().lower()
        path = path.strip()
        if not sep or not name or not path:
            continue
        out[name] = Path(path).expanduser()
    return out


class StaticWorkspaceResolver:
    """Maps workspace keys to directories from a fixed table."""

    def __init__(self, workspaces: Mapping[str, str | Path] | None = None) -> None:
        self._workspaces: dict[str, Path] = {
            str(k).strip().lower(): Path(v).expanduser() for k, v in (workspaces or {}).items()
        }

    def resolve(self, key: str) -> Path:
        path = self._workspaces.get((key or "").strip().lower())
        if path is None:
            raise WorkspaceNotFound(key)
        return path

    def keys(self) -> list[str]:
        return list(self._workspaces)

    def items(self) -> Iterator[tuple[str, Path]]:
        return iter(self._workspaces.items())

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.strip().lower() in self._workspaces

    def __len__(self) -> int:
        return len(self._workspaces)
