# src/wallet_orchestrator/worker/script_loader.py

"""
Script resolution.

A script reference is either a path to a `.py` file (entrypoint `main`), optionally
suffixed with `:function`, or a dotted `package.module:function`.

`list_scripts()` never imports anything: it reads a module-level `METADATA = {...}`
literal with `ast`, so the parent process can list scripts without running their code.
"""

from __future__ import annotations

import ast
import importlib
import importlib.util
import logging
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..core.errors import ScriptLoadError

logger = logging.getLogger(__name__)

DEFAULT_ENTRYPOINT = "main"


@dataclass(frozen=True, slots=True)
class ScriptInfo:
    id: str
    name: str
    description: str
    version: str
    path: Path

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "path": str(self.path),
        }


def _split_ref(script_ref: str) -> tuple[str, str | None]:
    target, sep, func = script_ref.rpartition(":")
    # "C:\\x.py" style drive letters and plain paths have no function part.
    if not sep or not func or "/" in func or "\\" in func or func.endswith(".py"):
        return script_ref, None
    return target, func


def _load_file(path: Path) -> Any:
    module_name = f"wallet_script_{path.stem}_{abs(hash(str(path)))}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise ScriptLoadError(f"cannot load script file: {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        sys.modules.pop(module_name, None)
        raise ScriptLoadError(f"failed to import {path}: {e}") from e
    return module


def load_entrypoint(script_ref: str, *, base_dir: Path | None = None) -> Callable[..., Any]:
    """Resolve `script_ref` to a callable. Raises ScriptLoadError."""
    ref = (script_ref or "").strip()
    if not ref:
        raise ScriptLoadError("empty script reference")

    target, func_name = _split_ref(ref)

    path = Path(target).expanduser()
    if not path.is_absolute() and base_dir is not None and not path.exists():
        path = base_dir / path

    if target.endswith(".py") or path.is_file():
        if not path.is_file():
            raise ScriptLoadError(f"script file not found: {path}")
        module = _load_file(path.resolve())
    else:
        if func_name is None:
            raise ScriptLoadError(
                f"script reference must be a .py path or 'module:function', got {ref!r}"
            )
        try:
            module = importlib.import_module(target)
        except Exception as e:
            raise ScriptLoadError(f"failed to import module {target!r}: {e}") from e

    name = func_name or DEFAULT_ENTRYPOINT
    entry = getattr(module, name, None)
    if entry is None or not callable(entry):
        raise ScriptLoadError(f"{ref!r} has no callable {name!r}")
    return entry


def _read_metadata(path: Path) -> tuple[dict[str, Any], str | None]:
    tree = ast.parse(path.read_text("utf-8"), filename=str(path))
    meta: dict[str, Any] = {}
    for node in tree.body:
        if isinstance(node, ast.Assign):
            targets = [t.id for t in node.targets if isinstance(t, ast.Name)]
            value = node.value
        elif isinstance(node, ast.AnnAssign) and isinstance(node.target, ast.Name) and node.value:
            targets = [node.target.id]
            value = node.value
        else:
            continue
        if "METADATA" in targets:
            raw = ast.literal_eval(value)
            if isinstance(raw, dict):
                meta = raw
            break
    return meta, ast.get_docstring(tree)


def list_scripts(directory: str | Path) -> list[ScriptInfo]:
    """List `*.py` scripts in `directory` (non-recursive, `_private.py` skipped)."""
    root = Path(directory)
    if not root.is_dir():
        return []

    out: list[ScriptInfo] = []
    for path in sorted(root.glob("*.py")):
        if path.name.startswith("_"):
            continue
        try:
            meta, doc = _read_metadata(path)
        except (SyntaxError, ValueError, OSError, UnicodeDecodeError):
            logger.warning("Skipping unreadable script %s", path, exc_info=True)
            continue

        description = str(meta.get("description") or (doc.splitlines()[0] if doc else ""))
        out.append(
            ScriptInfo(
                id=str(meta.get("id") or path.stem),
                name=str(meta.get("name") or path.stem),
                description=description,
                version=str(meta.get("version") or "0.0.0"),
                path=path,
            )
        )
    return out
