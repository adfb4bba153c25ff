# SPDX-License-Identifier: Apache-2.0

"""Configuration for s2s.

Rule #1: **One config system.**
If a knob doesn't live in these dataclasses, it doesn't exist.

We use:
- YAML files for readability
- dot-path overrides for quick experiment changes

The loader is strict: mis-typed keys or invalid values fail fast with an error
message naming the key to fix.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass, fields, is_dataclass, replace
from pathlib import Path
from typing import Any, Literal

import yaml

CellKind = Literal["rnn", "lstm"]
DecodeInput = Literal["gold", "greedy"]
OptimName = Literal["sgd", "adam", "adamw"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

DECODE_INPUTS = ("gold", "greedy")


@dataclass(frozen=True)
class ModelConfig:
    """Recurrent cell template shared by the encoder and the decoder.

    Both graphs are built from the same template but get their own weights.
    The decoder adds an output projection + softmax on top of its cell.
    """

    cell: CellKind = "lstm"
    hidden: int = 128
    # Weights are drawn from U(-init_scale, init_scale).
    init_scale: float = 0.08


@dataclass(frozen=True)
class DataConfig:
    """Parallel corpus configuration.

    Files hold one whitespace-tokenized sequence per line; line i of the source
    file pairs with line i of the target file.
    """

    source_file: str | None = None
    target_file: str | None = None
    eval_source_file: str | None = None
    eval_target_file: str | None = None

    batch_size: int = 20
    # Dense one-hot [B, V] buffers instead of [B] token ids.
    dense: bool = False
    dtype: Literal["float32", "float16"] = "float32"
    # Cap on sequences consumed per pass (None => whole corpus).
    stop: int | None = None


@dataclass(frozen=True)
class TrainConfig:
    """Training loop configuration."""

    seed: int = 0
    epochs: int = 1
    # Global-norm clip threshold; 0 disables clipping.
    gclip: float = 0.0
    track_maxnorm: bool = False
    # Decoder input policy: gold previous token (teacher forcing) or greedy.
    decode_input: DecodeInput = "gold"
    eval_decode_input: DecodeInput = "gold"


@dataclass(frozen=True)
class OptimConfig:
    """Optimizer configuration (constant learning rate)."""

    name: OptimName = "sgd"
    lr: float = 0.7
    momentum: float = 0.0
    weight_decay: float = 0.0
    adam_b1: float = 0.9
    adam_b2: float = 0.999
    adam_eps: float = 1e-8


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration for run directory and metrics output."""

    project: str = "s2s"
    run_dir: str | None = None
    metrics_file: str = "metrics.jsonl"
    level: LogLevel = "INFO"
    console_use_rich: bool = True
    log_file: str | None = "train.log"


@dataclass(frozen=True)
class DebugConfig:
    """NaN guard and gradient-check knobs."""

    nan_check: bool = True
    gradcheck_samples: int = 10
    gradcheck_eps: float = 1e-2
    gradcheck_rtol: float = 5e-2
    gradcheck_atol: float = 1e-3


@dataclass(frozen=True)
class Config:
    """Top-level configuration combining all sub-configs."""

    model: ModelConfig = ModelConfig()
    data: DataConfig = DataConfig()
    train: TrainConfig = TrainConfig()
    optim: OptimConfig = OptimConfig()
    logging: LoggingConfig = LoggingConfig()
    debug: DebugConfig = DebugConfig()

    def to_dict(self) -> dict[str, Any]:
        """Convert the entire config tree to a nested dictionary.

        :return dict[str, Any]: Nested dict representation of all config fields.
        """
        return asdict(self)


# ------------------------------ Loading ---------------------------------


def _cast_override(old: Any, raw: str) -> Any:
    """Cast an override string to the type of the value it replaces.

    :param Any old: Current field value; its type drives the cast.
    :param str raw: Override value as typed on the command line.
    :raises ValueError: If the string cannot be read as that type.
    :return Any: The cast value.
    """
    if isinstance(old, bool):
        lowered = raw.lower()
        if lowered in {"true", "1", "yes", "y"}:
            return True
        if lowered in {"false", "0", "no", "n"}:
            return False
        raise ValueError(f"Expected boolean, got {raw!r}")
    if isinstance(old, int):
        return int(raw)
    if isinstance(old, float):
        return float(raw)
    if raw.lower() in {"null", "none"}:
        return None
    if old is None:
        # None defaults (stop, run_dir, ...) take whatever YAML reads the string as.
        parsed = yaml.safe_load(raw)
        return raw if parsed is None else parsed
    return raw


def apply_override(cfg: Config, path: str, raw_value: str) -> Config:
    """Return a copy of `cfg` with one dotted field replaced.

    Example: ``apply_override(cfg, "data.batch_size", "4")``.

    :param Config cfg: Config to update.
    :param str path: Dotted path such as ``train.epochs``.
    :param str raw_value: New value as a string.
    :raises ValueError: If the path does not name a config field.
    :return Config: Updated config (the input is frozen and left untouched).
    """
    section, _, leaf = path.partition(".")
    if not leaf or "." in leaf:
        raise ValueError(f"Invalid override path {path!r}; expected <section>.<field>")
    sub = getattr(cfg, section, None)
    if sub is None or not is_dataclass(sub):
        raise ValueError(f"Unknown config section: {section!r} (in {path!r})")
    if leaf not in {f.name for f in fields(sub)}:
        raise ValueError(f"Unknown config key: {path!r}")
    new_value = _cast_override(getattr(sub, leaf), raw_value)
    return replace(cfg, **{section: replace(sub, **{leaf: new_value})})


def _from_nested_dict(data: dict[str, Any]) -> Config:
    """Build a Config from the YAML mapping, rejecting unknown sections.

    :param dict[str, Any] data: Parsed YAML document.
    :raises ValueError: On unknown sections or keys.
    :return Config: Constructed config.
    """
    sections = {
        "model": ModelConfig,
        "data": DataConfig,
        "train": TrainConfig,
        "optim": OptimConfig,
        "logging": LoggingConfig,
        "debug": DebugConfig,
    }
    unknown = sorted(set(data) - set(sections))
    if unknown:
        raise ValueError(f"Unknown config sections: {unknown}")

    built: dict[str, Any] = {}
    for name, cls in sections.items():
        raw = data.get(name) or {}
        try:
            built[name] = cls(**raw)
        except TypeError as e:
            raise ValueError(f"Invalid keys in config section {name!r}: {e}") from e
    return Config(**built)


def load_config(path: str | Path, overrides: Iterable[str] | None = None) -> Config:
    """Load YAML config file + apply dot-path overrides.

    Overrides format: "train.epochs=10".

    :param path: Path to the YAML config file.
    :param overrides: Optional dot-path overrides.
    :raises ValueError: If an override is malformed or validation fails.
    :return Config: Validated configuration object.
    """
    path = Path(path)
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    cfg = _from_nested_dict(data)
    for o in overrides or ():
        if "=" not in o:
            raise ValueError(f"Invalid override {o!r}. Expected format like train.epochs=3")
        k, v = o.split("=", 1)
        cfg = apply_override(cfg, k.strip(), v.strip())

    validate_config(cfg)
    return cfg


# ------------------------------ Validation ---------------------------------


def _vfail(msg: str) -> None:
    """Raise ValueError with a standardized config validation prefix.

    :param str msg: Validation failure message.
    :raises ValueError: Always raised with formatted message.
    """
    raise ValueError(f"Config validation failed: {msg}")


def _validate_model(cfg: Config) -> None:
    if cfg.model.cell not in ("rnn", "lstm"):
        _vfail(f"model.cell must be 'rnn' or 'lstm', got {cfg.model.cell!r}")
    if cfg.model.hidden <= 0:
        _vfail(f"model.hidden must be positive, got {cfg.model.hidden}")
    if cfg.model.init_scale <= 0:
        _vfail(f"model.init_scale must be positive, got {cfg.model.init_scale}")


def _validate_data(cfg: Config) -> None:
    if cfg.data.batch_size <= 0:
        _vfail(f"data.batch_size must be positive, got {cfg.data.batch_size}")
    if cfg.data.stop is not None and cfg.data.stop <= 0:
        _vfail(f"data.stop must be positive when set, got {cfg.data.stop}")
    if cfg.data.dtype not in ("float32", "float16"):
        _vfail(f"data.dtype must be 'float32' or 'float16', got {cfg.data.dtype!r}")
    if (cfg.data.eval_source_file is None) != (cfg.data.eval_target_file is None):
        _vfail("data.eval_source_file and data.eval_target_file must be set together")


def _validate_train(cfg: Config) -> None:
    if cfg.train.epochs <= 0:
        _vfail(f"train.epochs must be positive, got {cfg.train.epochs}")
    if cfg.train.gclip < 0:
        _vfail(f"train.gclip must be >= 0, got {cfg.train.gclip}")
    for key in ("decode_input", "eval_decode_input"):
        value = getattr(cfg.train, key)
        if value not in DECODE_INPUTS:
            _vfail(f"train.{key} must be one of {DECODE_INPUTS}, got {value!r}")


def _validate_optim(cfg: Config) -> None:
    if cfg.optim.name not in ("sgd", "adam", "adamw"):
        _vfail(f"optim.name must be 'sgd', 'adam' or 'adamw', got {cfg.optim.name!r}")
    if cfg.optim.lr <= 0:
        _vfail(f"optim.lr must be positive, got {cfg.optim.lr}")
    if cfg.optim.momentum < 0 or cfg.optim.momentum >= 1:
        _vfail(f"optim.momentum must be in [0, 1), got {cfg.optim.momentum}")
    if cfg.optim.weight_decay < 0:
        _vfail(f"optim.weight_decay must be >= 0, got {cfg.optim.weight_decay}")
    if cfg.optim.adam_b1 <= 0 or cfg.optim.adam_b1 >= 1:
        _vfail(f"optim.adam_b1 must be in (0, 1), got {cfg.optim.adam_b1}")
    if cfg.optim.adam_b2 <= 0 or cfg.optim.adam_b2 >= 1:
        _vfail(f"optim.adam_b2 must be in (0, 1), got {cfg.optim.adam_b2}")
    if cfg.optim.adam_eps <= 0:
        _vfail(f"optim.adam_eps must be positive, got {cfg.optim.adam_eps}")


def _validate_logging(cfg: Config) -> None:
    if cfg.logging.level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
        _vfail(f"logging.level must be DEBUG/INFO/WARNING/ERROR, got {cfg.logging.level!r}")
    if cfg.logging.log_file is not None and not str(cfg.logging.log_file).strip():
        _vfail("logging.log_file must be a non-empty string or null")


def _validate_debug(cfg: Config) -> None:
    if cfg.debug.gradcheck_samples <= 0:
        _vfail(f"debug.gradcheck_samples must be positive, got {cfg.debug.gradcheck_samples}")
    if cfg.debug.gradcheck_eps <= 0:
        _vfail(f"debug.gradcheck_eps must be positive, got {cfg.debug.gradcheck_eps}")


def validate_config(cfg: Config) -> None:
    """Validate config with actionable error messages."""
    _validate_model(cfg)
    _validate_data(cfg)
    _validate_train(cfg)
    _validate_optim(cfg)
    _validate_logging(cfg)
    _validate_debug(cfg)


def require_train_files(cfg: Config) -> tuple[Path, Path]:
    """Return the training corpus paths, failing if they are unset or missing.

    :param Config cfg: Loaded configuration.
    :raises ValueError: If a path is unset or does not exist.
    :return tuple[Path, Path]: (source_file, target_file).
    """
    if not cfg.data.source_file or not cfg.data.target_file:
        _vfail("data.source_file and data.target_file are required for training")
    src, tgt = Path(cfg.data.source_file), Path(cfg.data.target_file)
    for p in (src, tgt):
        if not p.exists():
            _vfail(f"corpus file does not exist: {p}")
    return src, tgt
