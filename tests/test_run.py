"""End-to-end training job: run directory layout and metrics."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import replace
from pathlib import Path

import pytest

from s2s.config import Config
from s2s.data import Vocabulary
from s2s.train import run
from s2s.utils.io import MetricsWriter, add_file_logging, create_run_dir


def _rows(path: Path) -> list[dict]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


def test_run_writes_metrics_and_artifacts(small_run_cfg: tuple[Config, Path]) -> None:
    cfg, config_path = small_run_cfg
    run_dir = run(cfg, config_path=str(config_path))

    assert run_dir == Path(cfg.logging.run_dir)
    rows = _rows(run_dir / "metrics.jsonl")
    assert [r["epoch"] for r in rows] == [1, 2]
    for r in rows:
        assert math.isfinite(r["train_loss"]) and math.isfinite(r["eval_loss"])
        assert r["train_ppl"] == pytest.approx(math.exp(r["train_loss"]))
        assert r["max_gnorm"] > 0 and r["max_wnorm"] > 0

    resolved = json.loads((run_dir / "config_resolved.json").read_text())
    assert resolved["train"]["epochs"] == 2
    assert (run_dir / "config_original.yaml").exists()
    assert "epoch 2" in (run_dir / "train.log").read_text(encoding="utf-8")

    vocab = Vocabulary.from_json(run_dir / "vocab_source.json")
    assert len(vocab) == 5


def test_run_without_eval_omits_eval_columns(small_run_cfg_factory, tmp_path: Path) -> None:
    cfg, _ = small_run_cfg_factory(tmp_path, epochs=1, with_eval=False)
    cfg = replace(cfg, train=replace(cfg.train, track_maxnorm=False))
    rows = _rows(run(cfg) / "metrics.jsonl")
    assert len(rows) == 1
    assert "eval_loss" not in rows[0] and "max_gnorm" not in rows[0]


def test_run_refuses_existing_run_dir(small_run_cfg: tuple[Config, Path]) -> None:
    cfg, _ = small_run_cfg
    Path(cfg.logging.run_dir).mkdir(parents=True)
    with pytest.raises(RuntimeError, match="already exists"):
        run(cfg)


def test_run_detaches_file_logging(small_run_cfg: tuple[Config, Path]) -> None:
    cfg, _ = small_run_cfg
    before = list(logging.getLogger().handlers)
    run(cfg)
    assert logging.getLogger().handlers == before


def test_create_run_dir_default_location(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    run_dir = create_run_dir(Config(), config_path=None)
    assert run_dir.parent == Path("runs") / "s2s"
    assert run_dir.name.endswith("_run")
    assert (run_dir / "config_resolved.json").exists()


def test_metrics_writer_appends_lines(tmp_path: Path) -> None:
    path = tmp_path / "m.jsonl"
    with MetricsWriter(path) as mw:
        mw.write({"epoch": 1})
    with MetricsWriter(path) as mw:
        mw.write({"epoch": 2})
    assert _rows(path) == [{"epoch": 1}, {"epoch": 2}]


def test_add_file_logging_writes_records(tmp_path: Path) -> None:
    handler = add_file_logging(tmp_path / "logs" / "x.log", level="INFO")
    try:
        logging.getLogger("s2s.test").warning("hello file")
    finally:
        logging.getLogger().removeHandler(handler)
        handler.close()
    assert "hello file" in (tmp_path / "logs" / "x.log").read_text(encoding="utf-8")
