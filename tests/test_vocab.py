"""Vocabulary and corpus loading."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from s2s.data import EOS_ID, EOS_TOKEN, Vocabulary, load_sequences


def test_sentinel_is_id_zero_and_tokens_follow_in_order() -> None:
    v = Vocabulary()
    assert len(v) == 1
    assert v[EOS_TOKEN] == EOS_ID == 0
    assert v.encode(["the", "cat", "the"]) == [1, 2, 1]
    assert v.token(2) == "cat"
    assert "cat" in v and "dog" not in v
    assert v.decode([0, 1, 2]) == [EOS_TOKEN, "the", "cat"]


def test_json_roundtrip_preserves_ids(tmp_path: Path) -> None:
    v = Vocabulary(["x", "y", "z"])
    path = tmp_path / "vocab.json"
    v.to_json(path)
    loaded = Vocabulary.from_json(path)
    assert len(loaded) == 4
    assert [loaded[t] for t in ("x", "y", "z")] == [1, 2, 3]


def test_from_json_rejects_missing_sentinel(tmp_path: Path) -> None:
    path = tmp_path / "vocab.json"
    path.write_text('["x", "y"]', encoding="utf-8")
    with pytest.raises(ValueError, match="must start with"):
        Vocabulary.from_json(path)


def test_load_sequences_keeps_blank_lines(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    path = tmp_path / "corpus.txt"
    path.write_text("a b\n\nb c a\n", encoding="utf-8")
    v = Vocabulary()
    with caplog.at_level(logging.INFO, logger="s2s.data.vocab"):
        seqs = load_sequences(path, v)
    assert seqs == [[1, 2], [], [2, 3, 1]]
    assert "ns=3, nw=5, nd=4" in caplog.text
