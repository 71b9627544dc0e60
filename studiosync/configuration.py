"""Home-directory configuration loading for studiosync.

Repo defaults under ``config/`` are merged with ``$STUDIOSYNC_HOME/config``
overrides, then checked against ``CONFIG_SCHEMA``. Problems never raise here;
they are collected as diagnostics on the returned bundle.
"""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Mapping, MutableMapping, Optional, Tuple

import yaml

REPO_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_DIR = REPO_ROOT / "config"
HOME_ENV_VAR = "STUDIOSYNC_HOME"
DEFAULT_HOME = "~/.studiosync"
CONFIG_SUFFIXES = ("*.yml", "*.yaml")

DiagnosticLevel = Literal["info", "warning", "error"]
ConfigurationStatus = Literal["ready", "missing", "invalid"]

DEFAULT_ENTITY_TYPES: List[str] = [
    "studio_owner",
    "member",
    "yoga_class",
    "booking",
    "subscription",
    "payment",
    "attendance_record",
]
DEFAULT_WIRED_PREFIXES: List[str] = ["eth", "en", "eno", "enp", "ens"]
DEFAULT_WIRELESS_PREFIXES: List[str] = ["wlan", "wl", "wlp", "wifi"]
DEFAULT_CELLULAR_PREFIXES: List[str] = ["wwan", "rmnet", "ppp", "pdp_ip", "ccmni"]

NUMBER = (int, float)


@dataclass(frozen=True)
class Setting:
    """One typed key in the configuration schema."""

    kind: Any
    default: Any = None
    factory: Optional[Callable[[], Any]] = None
    item_kind: Optional[type] = None

    def fresh_default(self) -> Any:
        if self.factory is not None:
            return self.factory()
        return deepcopy(self.default)

    @property
    def type_name(self) -> str:
        if isinstance(self.kind, tuple):
            return ", ".join(kind.__name__ for kind in self.kind)
        return self.kind.__name__


def _strings(values: List[str]) -> Setting:
    return Setting(list, factory=lambda: list(values), item_kind=str)


CONFIG_SCHEMA: Dict[str, Dict[str, Setting]] = {
    "runtime": {
        "name": Setting(str, "StudioSync"),
    },
    "logging": {
        "level": Setting(str, "INFO"),
        "structured": Setting(bool, False),
    },
    "store": {
        "path": Setting(str, "state/studiosync.db"),
    },
    "sync": {
        "enabled": Setting(bool, True),
        "auto_sync": Setting(bool, True),
        "batch_size": Setting(int, 50),
        "max_attempts": Setting(int, 5),
        "poll_interval": Setting(NUMBER, 60.0),
        "min_quality": Setting(str, "good"),
        "conflict_strategy": Setting(str, "last_write_wins"),
        "backoff_base": Setting(NUMBER, 2.0),
        "backoff_max": Setting(NUMBER, 300.0),
        "entity_types": _strings(DEFAULT_ENTITY_TYPES),
    },
    "remote": {
        "base_url": Setting(str, ""),
        "timeout": Setting(NUMBER, 30.0),
        "auth_token": Setting(str, ""),
    },
    "connectivity": {
        "enabled": Setting(bool, True),
        "poll_interval": Setting(NUMBER, 15.0),
        "connectivity_checks": _strings([]),
        "connectivity_timeout": Setting(NUMBER, 1.0),
        "wired_prefixes": _strings(DEFAULT_WIRED_PREFIXES),
        "wireless_prefixes": _strings(DEFAULT_WIRELESS_PREFIXES),
        "cellular_prefixes": _strings(DEFAULT_CELLULAR_PREFIXES),
    },
    "errors": {
        "feed_size": Setting(int, 1000),
    },
}


@dataclass
class Diagnostic:
    """Represents a configuration validation or loading issue."""

    level: DiagnosticLevel
    message: str
    source: Optional[Path] = None


@dataclass
class ConfigurationBundle:
    """All configuration data studiosync needs at runtime."""

    home_dir: Path
    status: ConfigurationStatus
    merged: Dict[str, Any] = field(default_factory=dict)
    repo_defaults: Dict[str, Any] = field(default_factory=dict)
    home_overrides: Dict[str, Any] = field(default_factory=dict)
    files_loaded: List[Path] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    log_path: Optional[Path] = None

    def section(self, name: str) -> Dict[str, Any]:
        value = self.merged.get(name, {}) if self.merged else {}
        return value if isinstance(value, dict) else {}

    @property
    def errors(self) -> List[Diagnostic]:
        return [diag for diag in self.diagnostics if diag.level == "error"]


def resolve_home_dir(
    env: Optional[Mapping[str, str]] = None,
    default: str = DEFAULT_HOME,
) -> Path:
    """Resolve the studiosync home from the environment."""

    source = env or os.environ
    return Path(source.get(HOME_ENV_VAR, default)).expanduser()


def load_runtime_configuration(home_dir: Optional[Path] = None) -> ConfigurationBundle:
    """Load repo defaults, apply home overrides, and validate the result."""

    home = home_dir or resolve_home_dir()
    diagnostics: List[Diagnostic] = []

    repo_defaults, files_loaded = _read_yaml_dir(DEFAULT_CONFIG_DIR, "repo defaults", diagnostics)
    home_overrides: Dict[str, Any] = {}
    status: ConfigurationStatus = "ready"

    if not home.exists():
        diagnostics.append(Diagnostic("warning", f"Home directory '{home}' does not exist."))
        status = "missing"
    elif not home.is_dir():
        diagnostics.append(Diagnostic("error", f"Home path '{home}' is not a directory.", home))
        status = "invalid"
    else:
        home_overrides, home_files = _read_yaml_dir(home / "config", "home overrides", diagnostics)
        files_loaded += home_files

    merged = deepcopy(repo_defaults)
    _deep_merge_dicts(merged, home_overrides)
    diagnostics.extend(validate_config(merged))

    if status == "ready" and any(diag.level == "error" for diag in diagnostics):
        status = "invalid"

    return ConfigurationBundle(
        home_dir=home,
        status=status,
        merged=merged,
        repo_defaults=repo_defaults,
        home_overrides=home_overrides,
        files_loaded=files_loaded,
        diagnostics=diagnostics,
    )


def _read_yaml_dir(
    directory: Path,
    label: str,
    diagnostics: List[Diagnostic],
) -> Tuple[Dict[str, Any], List[Path]]:
    """Merge every YAML file in ``directory`` in name order."""

    merged: Dict[str, Any] = {}
    loaded: List[Path] = []

    if not directory.is_dir():
        if directory.exists():
            diagnostics.append(
                Diagnostic("error", f"Configuration path '{directory}' ({label}) is not a directory.", directory)
            )
        else:
            diagnostics.append(
                Diagnostic("warning", f"No configuration directory at '{directory}' ({label}).", directory)
            )
        return merged, loaded

    candidates = [path for pattern in CONFIG_SUFFIXES for path in sorted(directory.glob(pattern))]
    for path in candidates:
        try:
            content = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            diagnostics.append(Diagnostic("error", f"Failed to parse '{path}': {exc}", path))
            continue
        if content is not None and not isinstance(content, MutableMapping):
            diagnostics.append(
                Diagnostic("warning", f"Ignoring '{path}': top level is not a mapping.", path)
            )
            continue
        _deep_merge_dicts(merged, dict(content or {}))
        loaded.append(path)

    if not loaded:
        diagnostics.append(Diagnostic("info", f"No YAML files under '{directory}' ({label}).", directory))
    return merged, loaded


def _deep_merge_dicts(dest: MutableMapping[str, Any], source: Mapping[str, Any]) -> None:
    """Recursively merge ``source`` into ``dest``; later scalars win."""

    for key, value in source.items():
        current = dest.get(key)
        if isinstance(current, MutableMapping) and isinstance(value, Mapping):
            _deep_merge_dicts(current, value)
        else:
            dest[key] = deepcopy(value)


def validate_config(config: Dict[str, Any]) -> List[Diagnostic]:
    """Check ``config`` in place, filling defaults and replacing bad values.

    Unknown keys produce warnings; wrong types produce errors and fall back
    to the schema default so the rest of the runtime still sees sane values.
    """

    found: List[Diagnostic] = []
    for name in config:
        if name not in CONFIG_SCHEMA:
            found.append(Diagnostic("warning", f"Unknown configuration key 'config.{name}'."))

    for name, settings in CONFIG_SCHEMA.items():
        section = config.setdefault(name, {})
        if not isinstance(section, dict):
            found.append(Diagnostic("error", f"'config.{name}' must be a mapping."))
            config[name] = section = {}
        found.extend(_validate_section(section, settings, f"config.{name}"))
    return found


def _validate_section(section: Dict[str, Any], settings: Dict[str, Setting], path: str) -> List[Diagnostic]:
    found: List[Diagnostic] = []
    for key in section:
        if key not in settings:
            found.append(Diagnostic("warning", f"Unknown configuration key '{path}.{key}'."))

    for key, setting in settings.items():
        where = f"{path}.{key}"
        if key not in section:
            section[key] = setting.fresh_default()
            continue
        value = section[key]
        # bool is an int subclass; only accept it where bool is declared.
        wrong_bool = isinstance(value, bool) and setting.kind is not bool
        if wrong_bool or not isinstance(value, setting.kind):
            found.append(Diagnostic("error", f"'{where}' must be of type {setting.type_name}."))
            section[key] = setting.fresh_default()
            continue
        if setting.item_kind is not None:
            kept = [item for item in value if isinstance(item, setting.item_kind)]
            if len(kept) != len(value):
                found.append(
                    Diagnostic("error", f"'{where}' entries must be of type {setting.item_kind.__name__}.")
                )
            section[key] = kept
    return found


__all__ = [
    "CONFIG_SCHEMA",
    "ConfigurationBundle",
    "ConfigurationStatus",
    "DEFAULT_CONFIG_DIR",
    "Diagnostic",
    "HOME_ENV_VAR",
    "Setting",
    "load_runtime_configuration",
    "resolve_home_dir",
    "validate_config",
]
