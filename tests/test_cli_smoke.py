from __future__ import annotations

import json
import os
import subprocess
from pathlib import Path

import numpy as np
import pytest

from numdef.__main__ import main

EXAMPLES_DIR = Path(__file__).resolve().parent.parent / "examples"


def test_cli_run_smoke(tmp_path: Path):
    program = EXAMPLES_DIR / "01_subtract.py"
    assert program.exists(), "expected example program to exist"
    a = tmp_path / "a.npy"
    np.save(a, np.array([1.0, 2.0, 3.0], dtype=np.float32))

    env = os.environ.copy()
    proc = subprocess.run(
        [
            "python",
            "-m",
            "numdef",
            "run",
            f"{program}:subtract",
            "--arg",
            str(a),
            "--arg",
            "[1, 1, 1]",
            "--compiler",
            "evaluator",
            "--out",
            str(tmp_path / "out.npy"),
        ],
        cwd=str(EXAMPLES_DIR),
        env=env,
        capture_output=True,
        text=True,
        check=False,
    )
    if proc.returncode != 0:
        pytest.fail(f"CLI failed: {proc.returncode}\n{proc.stdout}\n{proc.stderr}")

    out = np.load(tmp_path / "out.npy")
    np.testing.assert_allclose(out, [0.0, 1.0, 2.0])


def test_cli_run_prints_outputs_with_static_options(capsys):
    main(
        [
            "run",
            f"{EXAMPLES_DIR / '02_transforms.py'}:append_axes",
            "--arg",
            "[[1.0, 2.0], [3.0, 4.0]]",
            "--static",
            "count=2",
        ]
    )
    printed = capsys.readouterr().out
    assert "# output: float64[2, 2, 1, 1]" in printed


def test_cli_run_writes_json_for_containers(tmp_path: Path):
    out = tmp_path / "out.json"
    main(
        [
            "run",
            f"{EXAMPLES_DIR / '02_transforms.py'}:scale_rows",
            "--static",
            "rows=[[1, 2, 3], [4, 5, 6]]",
            "--out",
            str(out),
        ]
    )
    data = json.loads(out.read_text(encoding="utf-8"))
    assert data == {"output": [[[10, 20, 30], [40, 50, 60]]]}


def test_cli_explain_json(capsys):
    main(
        [
            "explain",
            f"{EXAMPLES_DIR / '02_transforms.py'}:scale_rows",
            "--static",
            "rows=[[1, 2], [3, 4]]",
            "--json",
        ]
    )
    graph = json.loads(capsys.readouterr().out)
    assert graph["name"] == "scale_rows"
    origins = [node["attrs"].get("origin") for node in graph["nodes"] if node["op"] == "constant"]
    assert "transform" in origins


def test_cli_reports_numdef_errors():
    with pytest.raises(SystemExit, match="error: .*cannot be broadcast"):
        main(
            [
                "run",
                f"{EXAMPLES_DIR / '01_subtract.py'}:subtract",
                "--arg",
                "[1.0, 2.0]",
                "--arg",
                "[1.0, 2.0, 3.0]",
            ]
        )


def test_cli_rejects_non_definitions():
    with pytest.raises(SystemExit, match="not declared with @defn"):
        main(["run", f"{EXAMPLES_DIR / '02_transforms.py'}:np"])
