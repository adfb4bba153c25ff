"""Tiny parallel corpora written to disk for data/train tests."""

from __future__ import annotations

from pathlib import Path

# Copy task: each target repeats its source. Lengths vary so sorting matters.
COPY_PAIRS: list[tuple[str, str]] = [
    ("a b c", "a b c"),
    ("d", "d"),
    ("b a", "b a"),
    ("c d a b", "c d a b"),
    ("a", "a"),
    ("d c", "d c"),
    ("b c d", "b c d"),
    ("c", "c"),
]


def write_corpus(
    tmp_path: Path,
    pairs: list[tuple[str, str]] = COPY_PAIRS,
    *,
    stem: str = "train",
) -> tuple[Path, Path]:
    """Write `pairs` as `<stem>.src` / `<stem>.tgt` under tmp_path.

    :param Path tmp_path: Directory to write into.
    :param pairs: (source line, target line) pairs.
    :param str stem: File name stem.
    :return tuple[Path, Path]: (source_file, target_file).
    """
    src = tmp_path / f"{stem}.src"
    tgt = tmp_path / f"{stem}.tgt"
    src.write_text("".join(s + "\n" for s, _ in pairs), encoding="utf-8")
    tgt.write_text("".join(t + "\n" for _, t in pairs), encoding="utf-8")
    return src, tgt
