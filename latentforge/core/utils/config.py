from __future__ import annotations

from omegaconf import OmegaConf, DictConfig
from omegaconf.errors import OmegaConfBaseException
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from ..errors import ConfigurationError
from ..options import SchedulerOptions, SchedulerType, parse_enum


def load_config(path: Union[str, Path, DictConfig, Mapping[str, Any]]) -> DictConfig:
    """Load a pipeline config with ``_base_`` inheritance.

    A relative ``_base_`` path is resolved against the directory of the file
    that names it.
    """
    root: Optional[Path] = None
    if isinstance(path, (str, Path)):
        root = Path(path).parent
        cfg = OmegaConf.load(path)
    elif isinstance(path, DictConfig):
        cfg = path
    else:
        cfg = OmegaConf.create(dict(path))

    if "_base_" in cfg:
        base_path = Path(cfg._base_)
        if root is not None and not base_path.is_absolute():
            base_path = root / base_path
        base = load_config(base_path)
        cfg = OmegaConf.merge(base, cfg)
        del cfg["_base_"]

    return OmegaConf.create(cfg)


def save_config(config: DictConfig, path: Union[str, Path]):
    OmegaConf.save(config, path)


def merge_configs(*configs: Union[DictConfig, Mapping[str, Any]]) -> DictConfig:
    """Merge several configs, last one wins."""
    return OmegaConf.merge(*configs)


def build_scheduler_options(
    defaults: Optional[SchedulerOptions] = None,
    overrides: Optional[Union[DictConfig, Mapping[str, Any]]] = None,
) -> SchedulerOptions:
    """Merge ``overrides`` onto ``defaults`` through the structured schema.

    Unknown keys or wrongly typed values raise ConfigurationError; an unknown
    scheduler name raises UnsupportedVariantError.
    """
    schema = OmegaConf.structured(defaults if defaults is not None else SchedulerOptions())
    if not overrides:
        return OmegaConf.to_object(schema).validate()

    values: Dict[str, Any] = (
        OmegaConf.to_container(overrides, resolve=True)
        if isinstance(overrides, DictConfig)
        else dict(overrides)
    )
    if "scheduler_type" in values and values["scheduler_type"] is not None:
        values["scheduler_type"] = parse_enum(SchedulerType, values["scheduler_type"])

    try:
        merged = OmegaConf.merge(schema, values)
    except OmegaConfBaseException as e:
        raise ConfigurationError(f"Invalid scheduler options: {e}") from e
    return OmegaConf.to_object(merged).validate()
