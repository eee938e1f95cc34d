# tests/test_script_loader.py

from __future__ import annotations

from pathlib import Path

import pytest

from wallet_orchestrator.core.errors import ScriptLoadError
from wallet_orchestrator.worker.script_loader import list_scripts, load_entrypoint


def _write(path: Path, text: str) -> Path:
    path.write_text(text, "utf-8")
    return path


def test_list_scripts_reads_metadata_without_importing(tmp_path: Path) -> None:
    _write(
        tmp_path / "balance_check.py",
        'METADATA = {"name": "Balance check", "description": "Query balances", "version": "1.2.0"}\n'
        'raise SystemExit("must not be imported")\n',
    )
    _write(tmp_path / "plain.py", '"""Just a docstring.\n\nMore text."""\n')
    _write(tmp_path / "_helpers.py", "METADATA = {}\n")
    _write(tmp_path / "broken.py", "def (:\n")

    scripts = list_scripts(tmp_path)

    assert [s.id for s in scripts] == ["balance_check", "plain"]
    first = scripts[0]
    assert first.name == "Balance check"
    assert first.version == "1.2.0"
    assert first.description == "Query balances"
    assert scripts[1].description == "Just a docstring."
    assert scripts[1].version == "0.0.0"
    assert first.as_dict()["path"].endswith("balance_check.py")


def test_list_scripts_on_missing_directory(tmp_path: Path) -> None:
    assert list_scripts(tmp_path / "nope") == []


def test_load_entrypoint_from_file_and_named_function(tmp_path: Path) -> None:
    script = _write(tmp_path / "job.py", "def main(ctx):\n    return 'main'\n\ndef other(ctx):\n    return 'other'\n")

    assert load_entrypoint(str(script))(None) == "main"
    assert load_entrypoint(f"{script}:other")(None) == "other"
    # Relative to the scripts directory.
    assert load_entrypoint("job.py", base_dir=tmp_path)(None) == "main"


def test_load_entrypoint_from_module_reference() -> None:
    entry = load_entrypoint("json:dumps")
    assert entry({"a": 1}) == '{"a": 1}'


@pytest.mark.parametrize(
    "ref",
    ["", "missing_file.py", "json", "json:no_such_function", "no_such_module_xyz:main"],
)
def test_load_entrypoint_errors(ref: str) -> None:
    with pytest.raises(ScriptLoadError):
        load_entrypoint(ref)


def test_load_entrypoint_wraps_import_errors(tmp_path: Path) -> None:
    script = _write(tmp_path / "bad.py", "import no_such_module_xyz\n")
    with pytest.raises(ScriptLoadError):
        load_entrypoint(str(script))
