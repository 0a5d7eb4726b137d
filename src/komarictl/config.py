"""Configuration loader for komarictl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/komarictl/config.yml`` (or an override path).
3. Environment variables prefixed with ``KOMARICTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export KOMARICTL_SERVICE__DEFAULT_PORT=26000
    export KOMARICTL_RELEASE__REPOSITORY=example/fork

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "KOMARICTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ServiceConfig:
    """Settings for the managed service unit."""

    name: str = "komari"
    description: str = "Komari Monitor Service"
    user: str = "root"
    listen_host: str = "0.0.0.0"  # noqa: S104 - the service is meant to be reachable
    default_port: int = 25774

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "description": self.description,
            "user": self.user,
            "listen_host": self.listen_host,
            "default_port": self.default_port,
        }


@dataclass(frozen=True)
class ReleaseConfig:
    """Where releases are published and how artifacts are named."""

    repository: str = "komari-monitor/komari"
    api_url: str = "https://api.github.com"
    web_url: str = "https://github.com"
    asset_prefix: str = "komari"
    token_env: str = "GITHUB_TOKEN"
    timeout: float = 30.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "repository": self.repository,
            "api_url": self.api_url,
            "web_url": self.web_url,
            "asset_prefix": self.asset_prefix,
            "token_env": self.token_env,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class VersionProbeConfig:
    """How the installed binary is asked for its version."""

    args: tuple[str, ...] = ("-h",)
    pattern: str = r"Komari Monitor (\d+(?:\.\d+)*)"
    timeout: float = 10.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"args": list(self.args), "pattern": self.pattern, "timeout": self.timeout}


@dataclass(frozen=True)
class BackupConfig:
    """Binary backup storage and retention."""

    root: Path
    index: Path
    keep: int = 3

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root), "index": str(self.index), "keep": self.keep}


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_dir": str(self.unit_dir),
            "systemctl_bin": self.systemctl_bin,
            "journalctl_bin": self.journalctl_bin,
        }


@dataclass(frozen=True)
class CredentialConfig:
    """Where and how long to look for the one-time admin credential."""

    marker: str = "admin account created."
    since: str = "1 minute ago"
    timeout: float = 30.0
    initial_delay: float = 1.0
    max_delay: float = 5.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "marker": self.marker,
            "since": self.since,
            "timeout": self.timeout,
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
        }


@dataclass(frozen=True)
class DependenciesConfig:
    """Host commands that must exist before installing."""

    commands: tuple[tuple[str, str], ...] = (("curl", "curl"),)
    managers: tuple[str, ...] = ("apt", "yum", "apk")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "commands": {command: package for command, package in self.commands},
            "managers": list(self.managers),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for komarictl."""

    config_file: Path
    install_dir: Path
    data_dir: Path
    binary_name: str
    version_file: Path
    state_dir: Path
    logs_dir: Path
    templates_dir: Path
    require_root: bool
    service: ServiceConfig
    release: ReleaseConfig
    version_probe: VersionProbeConfig
    backups: BackupConfig
    systemd: SystemdConfig
    credential: CredentialConfig
    dependencies: DependenciesConfig

    @property
    def binary_path(self) -> Path:
        """Return the fixed path of the managed executable."""
        return self.install_dir / self.binary_name

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "install_dir": str(self.install_dir),
            "data_dir": str(self.data_dir),
            "binary_name": self.binary_name,
            "version_file": str(self.version_file),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "require_root": self.require_root,
            "service": self.service.to_dict(),
            "release": self.release.to_dict(),
            "version_probe": self.version_probe.to_dict(),
            "backups": self.backups.to_dict(),
            "systemd": self.systemd.to_dict(),
            "credential": self.credential.to_dict(),
            "dependencies": self.dependencies.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/komarictl/config.yml",
    "install_dir": "/opt/komari",
    "data_dir": "/opt/komari",
    "binary_name": "komari",
    "version_file": "VERSION",  # relative paths resolve under install_dir
    "state_dir": "/var/lib/komarictl",
    "logs_dir": "/var/log/komarictl",
    "templates_dir": "/etc/komarictl/templates",
    "require_root": True,
    "service": {
        "name": "komari",
        "description": "Komari Monitor Service",
        "user": "root",
        "listen_host": "0.0.0.0",
        "default_port": 25774,
    },
    "release": {
        "repository": "komari-monitor/komari",
        "api_url": "https://api.github.com",
        "web_url": "https://github.com",
        "asset_prefix": "komari",
        "token_env": "GITHUB_TOKEN",
        "timeout": 30.0,
    },
    "version_probe": {
        "args": ["-h"],
        "pattern": r"Komari Monitor (\d+(?:\.\d+)*)",
        "timeout": 10.0,
    },
    "backups": {
        "root": None,  # derived from install_dir when absent
        "index": None,  # derived from state_dir when absent
        "keep": 3,
    },
    "systemd": {
        "unit_dir": "/etc/systemd/system",
        "systemctl_bin": "systemctl",
        "journalctl_bin": "journalctl",
    },
    "credential": {
        "marker": "admin account created.",
        "since": "1 minute ago",
        "timeout": 30.0,
        "initial_delay": 1.0,
        "max_delay": 5.0,
    },
    "dependencies": {
        "commands": {"curl": "curl"},
        "managers": ["apt", "yum", "apk"],
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    name: set(cast(Mapping[str, object], value).keys())
    for name, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}
SUPPORTED_PACKAGE_MANAGERS = {"apt", "yum", "apk"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    dependencies = _as_dict(raw.get("dependencies"), "dependencies")
    managers = dependencies.get("managers")
    if managers is not None:
        for manager in _as_sequence(managers, "dependencies.managers"):
            if str(manager) not in SUPPORTED_PACKAGE_MANAGERS:
                allowed = ", ".join(sorted(SUPPORTED_PACKAGE_MANAGERS))
                raise ConfigError(
                    f"Unsupported package manager '{manager}'. Allowed: {allowed}."
                )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    install_dir = _to_path(raw.get("install_dir"))
    data_dir = _to_path(raw.get("data_dir"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))

    binary_name = _expect_str(raw.get("binary_name"), "binary_name").strip()
    if not binary_name or "/" in binary_name:
        raise ConfigError("binary_name must be a plain, non-empty file name.")

    version_file = _to_path(raw.get("version_file"))
    if not version_file.is_absolute():
        version_file = install_dir / version_file

    service_mapping = _as_dict(raw.get("service"), "service")
    default_port = _expect_int(
        service_mapping.get("default_port"), "service.default_port", default=25774
    )
    if not 1 <= default_port <= 65535:
        raise ConfigError("service.default_port must be between 1 and 65535.")
    service = ServiceConfig(
        name=str(service_mapping.get("name", "komari")),
        description=str(service_mapping.get("description", "Komari Monitor Service")),
        user=str(service_mapping.get("user", "root")),
        listen_host=str(service_mapping.get("listen_host", "0.0.0.0")),  # noqa: S104
        default_port=default_port,
    )

    release_mapping = _as_dict(raw.get("release"), "release")
    release = ReleaseConfig(
        repository=str(release_mapping.get("repository", "komari-monitor/komari")).strip("/"),
        api_url=str(release_mapping.get("api_url", "https://api.github.com")).rstrip("/"),
        web_url=str(release_mapping.get("web_url", "https://github.com")).rstrip("/"),
        asset_prefix=str(release_mapping.get("asset_prefix", "komari")),
        token_env=str(release_mapping.get("token_env", "GITHUB_TOKEN")),
        timeout=_expect_positive_float(
            release_mapping.get("timeout"), "release.timeout", default=30.0
        ),
    )

    probe_mapping = _as_dict(raw.get("version_probe"), "version_probe")
    probe_args_raw = probe_mapping.get("args")
    probe_args: tuple[str, ...] = ("-h",)
    if probe_args_raw is not None:
        probe_args = tuple(
            str(item) for item in _as_sequence(probe_args_raw, "version_probe.args")
        )
    version_probe = VersionProbeConfig(
        args=probe_args,
        pattern=str(probe_mapping.get("pattern", VersionProbeConfig.pattern)),
        timeout=_expect_positive_float(
            probe_mapping.get("timeout"), "version_probe.timeout", default=10.0
        ),
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups_root_value = backups_mapping.get("root")
    backups_root = _to_path(backups_root_value) if backups_root_value else install_dir
    backups_index_value = backups_mapping.get("index")
    backups_index = (
        _to_path(backups_index_value) if backups_index_value else state_dir / "backups.json"
    )
    keep = _expect_int(backups_mapping.get("keep"), "backups.keep", default=3)
    if keep < 1:
        raise ConfigError("backups.keep must be at least 1.")
    backups = BackupConfig(root=backups_root, index=backups_index, keep=keep)

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        unit_dir=_to_path(systemd_mapping.get("unit_dir", "/etc/systemd/system")),
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
        journalctl_bin=str(systemd_mapping.get("journalctl_bin", "journalctl")),
    )

    credential_mapping = _as_dict(raw.get("credential"), "credential")
    credential = CredentialConfig(
        marker=str(credential_mapping.get("marker", CredentialConfig.marker)),
        since=str(credential_mapping.get("since", CredentialConfig.since)),
        timeout=_expect_positive_float(
            credential_mapping.get("timeout"), "credential.timeout", default=30.0
        ),
        initial_delay=_expect_positive_float(
            credential_mapping.get("initial_delay"), "credential.initial_delay", default=1.0
        ),
        max_delay=_expect_positive_float(
            credential_mapping.get("max_delay"), "credential.max_delay", default=5.0
        ),
    )

    dependencies_mapping = _as_dict(raw.get("dependencies"), "dependencies")
    commands_mapping = _as_dict(
        dependencies_mapping.get("commands"), "dependencies.commands"
    )
    managers_raw = dependencies_mapping.get("managers")
    managers: tuple[str, ...] = ("apt", "yum", "apk")
    if managers_raw is not None:
        managers = tuple(
            str(item) for item in _as_sequence(managers_raw, "dependencies.managers")
        )
    dependencies = DependenciesConfig(
        commands=tuple(
            (command, str(package or command)) for command, package in commands_mapping.items()
        ),
        managers=managers,
    )

    return AppConfig(
        config_file=config_file,
        install_dir=install_dir,
        data_dir=data_dir,
        binary_name=binary_name,
        version_file=version_file,
        state_dir=state_dir,
        logs_dir=logs_dir,
        templates_dir=templates_dir,
        require_root=_expect_bool(raw.get("require_root"), "require_root", default=True),
        service=service,
        release=release,
        version_probe=version_probe,
        backups=backups,
        systemd=systemd,
        credential=credential,
        dependencies=dependencies,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "ConfigError",
    "CredentialConfig",
    "DependenciesConfig",
    "ReleaseConfig",
    "ServiceConfig",
    "SystemdConfig",
    "VersionProbeConfig",
    "load_config",
]
