"""Configuration loading and validation logic."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping
import json
import os
import tomllib

try:  # Optional dependency for YAML support
    import yaml
except ModuleNotFoundError:  # pragma: no cover - exercised when PyYAML absent
    yaml = None

from .errors import ConfigError


ConfigLoader = Callable[[Any], Mapping[str, Any]]

CONFIG_STEM = "config"
SETTINGS_FILE = "settings.json"


def _raise_yaml_missing() -> Mapping[str, Any]:
    raise RuntimeError("PyYAML is required to load YAML configuration files. Install with `pip install PyYAML`.")


FILE_LOADERS: Dict[str, ConfigLoader] = {
    ".toml": lambda stream: tomllib.load(stream),
    ".json": lambda stream: json.load(stream),
    ".yaml": lambda stream: yaml.safe_load(stream) if yaml else _raise_yaml_missing(),
    ".yml": lambda stream: yaml.safe_load(stream) if yaml else _raise_yaml_missing(),
}
"""Mapping of file suffixes to loader callables."""


def load_config_file(path: Path) -> Mapping[str, Any]:
    """Load and decode a configuration mapping from ``path``."""

    suffix = path.suffix.lower()
    loader = FILE_LOADERS.get(suffix)
    if loader is None:
        supported = ", ".join(sorted(FILE_LOADERS)) or "<none>"
        raise ValueError(f"Unsupported configuration file extension: {suffix}. Supported: {supported}")

    mode = "rb" if suffix == ".toml" else "r"
    kwargs: Dict[str, Any] = {}
    if mode == "r":
        kwargs["encoding"] = "utf-8"

    with path.open(mode, **kwargs) as handle:
        data = loader(handle)

    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Configuration file '{path}' must contain a mapping at the root")
    return data


def find_config_file(directory: Path) -> Path | None:
    """Return the single ``config.*`` file inside ``directory``, if any."""

    if not directory.is_dir():
        return None
    found: Path | None = None
    for path in directory.iterdir():
        if not path.is_file() or path.stem != CONFIG_STEM:
            continue
        if path.suffix.lower() not in FILE_LOADERS:
            continue
        if found is not None:
            raise ValueError(
                f"Multiple configuration files found for '{CONFIG_STEM}': '{found.name}' and '{path.name}'. "
                "Only one format per configuration entry is allowed."
            )
        found = path
    return found


def default_config_dir(environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    explicit = env.get("XCFGEN_CONFIG_DIR")
    if explicit:
        return Path(explicit).expanduser()
    xdg = env.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg).expanduser() / "xcfgen"
    return Path.home() / ".config" / "xcfgen"


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, Mapping):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _string(section: Mapping[str, Any], key: str, default: str, *, field_name: str) -> str:
    value = section.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{field_name} must be a non-empty string")
    return value


def _boolean(section: Mapping[str, Any], key: str, default: bool, *, field_name: str) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{field_name} must be a boolean")
    return value


@dataclass(slots=True)
class GlobalConfig:
    log_level: str = "info"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "GlobalConfig":
        section = _section(data, "global")
        log_level = _string(section, "log_level", "info", field_name="global.log_level").lower()
        if log_level not in {"none", "error", "info", "debug"}:
            raise ConfigError(f"global.log_level must be one of none, error, info, debug (got '{log_level}')")
        return cls(log_level=log_level)


@dataclass(slots=True)
class ToolchainConfig:
    xcodebuild: str = "xcodebuild"
    use_shell: bool = False
    shell: str = "/bin/bash"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ToolchainConfig":
        section = _section(data, "toolchain")
        return cls(
            xcodebuild=_string(section, "xcodebuild", "xcodebuild", field_name="toolchain.xcodebuild"),
            use_shell=_boolean(section, "use_shell", False, field_name="toolchain.use_shell"),
            shell=_string(section, "shell", "/bin/bash", field_name="toolchain.shell"),
        )


@dataclass(slots=True)
class BuildConfig:
    output_subdir: str = "output"
    device_destination: str = "generic/platform=iOS"
    simulator_destination: str = "generic/platform=iOS Simulator"
    device_suffix: str = "IOS"
    simulator_suffix: str = "SIM"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "BuildConfig":
        section = _section(data, "build")
        defaults = cls()
        values: Dict[str, str] = {}
        for key in ("output_subdir", "device_destination", "simulator_destination", "device_suffix", "simulator_suffix"):
            values[key] = _string(section, key, getattr(defaults, key), field_name=f"build.{key}")
        if values["device_suffix"] == values["simulator_suffix"]:
            raise ConfigError("build.device_suffix and build.simulator_suffix must differ")
        return cls(**values)


@dataclass(slots=True)
class AppConfig:
    config_dir: Path
    global_config: GlobalConfig = field(default_factory=GlobalConfig)
    toolchain: ToolchainConfig = field(default_factory=ToolchainConfig)
    build: BuildConfig = field(default_factory=BuildConfig)
    source: Path | None = None

    @classmethod
    def from_mapping(cls, config_dir: Path, data: Mapping[str, Any], *, source: Path | None = None) -> "AppConfig":
        return cls(
            config_dir=config_dir,
            global_config=GlobalConfig.from_mapping(data),
            toolchain=ToolchainConfig.from_mapping(data),
            build=BuildConfig.from_mapping(data),
            source=source,
        )

    @classmethod
    def from_directory(cls, config_dir: Path) -> "AppConfig":
        path = find_config_file(config_dir)
        if path is None:
            return cls(config_dir=config_dir)
        return cls.from_mapping(config_dir, load_config_file(path), source=path)


__all__ = [
    "AppConfig",
    "BuildConfig",
    "FILE_LOADERS",
    "GlobalConfig",
    "ToolchainConfig",
    "default_config_dir",
    "find_config_file",
    "load_config_file",
]
