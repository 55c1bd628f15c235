from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List

from .time import iso_from_epoch


def atomic_write_text(path: Path, text: str, *, encoding: str = "utf-8") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=path.name + ".", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(text)
        os.replace(tmp, path)
    finally:
        try:
            if os.path.exists(tmp):
                os.unlink(tmp)
        except Exception:
            pass


def atomic_write_json(path: Path, obj: Dict[str, Any], *, indent: int = 2) -> None:
    atomic_write_text(path, json.dumps(obj, ensure_ascii=False, indent=indent) + "\n")


def read_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        doc = json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        return {}
    return doc if isinstance(doc, dict) else {}


def mtime_ms(path: Path) -> int:
    return int(path.stat().st_mtime * 1000)


def list_directory(path: Path, *, show_hidden: bool = False) -> List[Dict[str, Any]]:
    """List a directory for the file explorer.

    Directories come first, then files; both in case-insensitive name order.
    Unreadable directories yield an empty list.
    """
    items: List[Dict[str, Any]] = []
    try:
        entries = list(path.iterdir())
    except OSError:
        return items
    for entry in entries:
        if not show_hidden and entry.name.startswith("."):
            continue
        try:
            st = entry.stat()
        except OSError:
            continue
        items.append(
            {
                "name": entry.name,
                "path": str(entry),
                "isDirectory": entry.is_dir(),
                "size": int(st.st_size),
                "modified": iso_from_epoch(st.st_mtime),
            }
        )
    items.sort(key=lambda x: (not x["isDirectory"], str(x["name"]).lower(), str(x["name"])))
    return items
