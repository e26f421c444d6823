from __future__ import annotations

import runpy
from pathlib import Path
from typing import List

import pytest

EXAMPLES_DIR = Path(__file__).resolve().parent.parent / "examples"


def _example_paths() -> List[Path]:
    return sorted(EXAMPLES_DIR.glob("[0-9][0-9]_*.py"))


def test_examples_are_present():
    names = [path.name for path in _example_paths()]
    assert "01_subtract.py" in names
    assert "02_transforms.py" in names


@pytest.mark.parametrize("path", _example_paths(), ids=lambda p: p.name)
def test_example_runs(path: Path, capsys):
    runpy.run_path(str(path), run_name="__main__")
    printed = capsys.readouterr().out
    assert printed.strip(), f"{path.name} printed nothing"


def test_transform_example_reports_ragged_rows(capsys):
    runpy.run_path(str(EXAMPLES_DIR / "02_transforms.py"), run_name="__main__")
    printed = capsys.readouterr().out
    assert "rejected: Rows must all have the same length" in printed
    assert "append_axes: (2, 3, 1, 1)" in printed
