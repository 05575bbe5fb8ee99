import json
from pathlib import Path

import pandas as pd

from adaptstep import run

CONFIG = """
time:
  dt: 0.5
  dt_start: 0.125
  end_time: 2.0
  plot_interval: 1.0
adaptivity:
  enabled: true
  tolerance: 2.0e-3
problem:
  length: 40.0
  n_elements: 64
  front_position: 10.0
  max_refinement_level: 3
"""


def _config(tmp_path: Path) -> Path:
    path = tmp_path / "run.yml"
    path.write_text(CONFIG, encoding="utf-8")
    return path


def test_adaptive_run_writes_outputs(tmp_path: Path) -> None:
    outdir = tmp_path / "out"
    exit_code = run.main(["--config", str(_config(tmp_path)), "--outdir", str(outdir), "--quiet"])
    assert exit_code == 0

    summary = json.loads((outdir / "summary.json").read_text(encoding="utf-8"))
    assert summary["status"] == "completed"
    assert abs(summary["time"] - 2.0) < 1.0e-3 * summary["dt"]
    assert summary["outputs_emitted"] == 3

    series = pd.read_parquet(outdir / "series.parquet")
    assert sorted(series["step_index"].unique().tolist()) == [0, 1, 2]
    steps = pd.read_csv(outdir / "steps.csv")
    accepted = steps.loc[steps["outcome"] == "accepted", "time"]
    assert accepted.is_monotonic_increasing


def test_fixed_mesh_run_with_csv_series(tmp_path: Path) -> None:
    outdir = tmp_path / "fixed"
    exit_code = run.main(
        [
            "--config",
            str(_config(tmp_path)),
            "--outdir",
            str(outdir),
            "--quiet",
            "--override",
            "adaptivity.enabled=false",
            "io.series_format=csv",
        ]
    )
    assert exit_code == 0
    summary = json.loads((outdir / "summary.json").read_text(encoding="utf-8"))
    assert summary["num_elements"] == 64
    assert summary["refinements"] == 0
    assert (outdir / "series.csv").exists()
