"""Runtime settings for aggregation and installation.

Settings are layered: built-in defaults, then a YAML (or JSON) config file,
then ``DEPFETCH_*`` environment variables, then explicit overrides coming
from the command line. The resulting ``Settings`` value is passed around
explicitly; nothing reads configuration from module globals.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from depfetch.constants import Constants
from depfetch.errors import ConfigurationError

logger = logging.getLogger(__name__)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigurationError(f"Expected a boolean value, got {value!r}")


def _default_home() -> Path:
    return Path(os.path.expanduser(Constants.DEFAULT_HOME))


@dataclass
class Settings:
    """Configuration consumed by the source, cache tiers and installer."""

    root: Path = field(default_factory=Path.cwd)
    install_path: Path = field(default_factory=lambda: _default_home() / "packages")
    bin_dir: Optional[Path] = None
    app_cache_path: Optional[Path] = None
    global_cache_path: Path = field(default_factory=lambda: _default_home() / "cache")
    sources: List[str] = field(default_factory=list)
    credentials: Dict[str, str] = field(default_factory=dict)
    trust_policy: Optional[str] = None
    incremental: bool = True
    no_install: bool = False
    jobs: int = 1
    timeout: float = Constants.REQUEST_TIMEOUT
    sudo: Optional[bool] = None  # None: decide from directory permissions
    builtin_specification_dir: Optional[Path] = None
    ignore_messages: bool = False
    tmp_root: Optional[Path] = None

    def __post_init__(self) -> None:
        self.root = Path(self.root)
        self.install_path = Path(self.install_path)
        self.global_cache_path = Path(self.global_cache_path)
        if self.bin_dir is None:
            self.bin_dir = self.install_path / Constants.BIN_DIR
        self.bin_dir = Path(self.bin_dir)
        if self.app_cache_path is None:
            self.app_cache_path = self.root / Constants.DEFAULT_APP_CACHE
        self.app_cache_path = Path(self.app_cache_path)
        if self.builtin_specification_dir is not None:
            self.builtin_specification_dir = Path(self.builtin_specification_dir)
        if self.tmp_root is not None:
            self.tmp_root = Path(self.tmp_root)
        self.jobs = max(1, int(self.jobs))
        if self.trust_policy is not None:
            validate_trust_policy(self.trust_policy)

    @property
    def install_cache_path(self) -> Path:
        """Artifact cache kept inside the install directory."""
        return self.install_path / Constants.CACHE_DIR

    def requires_elevation(self) -> bool:
        """True when the install directory cannot be written by this user."""
        if self.sudo is not None:
            return self.sudo
        candidates = [self.install_path, self.bin_dir]
        for path in candidates:
            probe = Path(path)
            while not probe.exists() and probe.parent != probe:
                probe = probe.parent
            if not os.access(probe, os.W_OK):
                return True
        return False

    def with_overrides(self, **overrides: Any) -> "Settings":
        known = {f.name for f in fields(self)}
        return replace(self, **{k: v for k, v in overrides.items() if k in known and v is not None})


def validate_trust_policy(name: str) -> str:
    if name not in Constants.SUPPORTED_TRUST_POLICIES:
        raise ConfigurationError(
            f"Unknown trust policy '{name}'. The known policies are: "
            f"{', '.join(Constants.SUPPORTED_TRUST_POLICIES)}."
        )
    return name


def _read_config_file(path: Path) -> Dict[str, Any]:
    """Load a YAML or JSON config file; a missing file yields an empty dict."""
    if not path.is_file():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            if path.suffix.lower() == ".json":
                data = json.load(fh)
            else:
                data = yaml.safe_load(fh)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Failed to load config {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config {path} must contain a mapping")
    section = data.get("depfetch", data)
    return section if isinstance(section, dict) else {}


def _from_env(env: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    mapping = {
        "PATH": "install_path",
        "BIN": "bin_dir",
        "APP_CACHE": "app_cache_path",
        "GLOBAL_CACHE": "global_cache_path",
        "TRUST_POLICY": "trust_policy",
        "JOBS": "jobs",
        "TIMEOUT": "timeout",
        "BUILTIN_SPECIFICATIONS": "builtin_specification_dir",
        "TMP": "tmp_root",
    }
    for suffix, name in mapping.items():
        raw = env.get(Constants.ENV_PREFIX + suffix)
        if raw:
            values[name] = raw
    for suffix, name in (("FULL_INDEX", "incremental"), ("NO_INSTALL", "no_install"),
                         ("IGNORE_MESSAGES", "ignore_messages"), ("SUDO", "sudo")):
        raw = env.get(Constants.ENV_PREFIX + suffix)
        if raw is not None and raw != "":
            flag = _as_bool(raw)
            values[name] = (not flag) if name == "incremental" else flag
    sources = env.get(Constants.ENV_PREFIX + "SOURCES")
    if sources:
        values["sources"] = [s for s in (p.strip() for p in sources.split(",")) if s]
    credentials = {}
    for key, value in env.items():
        if key.startswith(Constants.ENV_CREDENTIALS_PREFIX) and value:
            host = key[len(Constants.ENV_CREDENTIALS_PREFIX):].lower().replace("__", "-").replace("_", ".")
            credentials[host] = value
    if credentials:
        values["credentials"] = credentials
    return values


def _as_number(value: Any, kind: type, name: str) -> Any:
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Expected a number for {name}, got {value!r}") from None


def _coerce(values: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in values.items():
        if key in {"incremental", "no_install", "ignore_messages"}:
            out[key] = _as_bool(value)
        elif key == "sudo":
            out[key] = None if value is None else _as_bool(value)
        elif key == "jobs":
            out[key] = _as_number(value, int, key)
        elif key == "timeout":
            out[key] = _as_number(value, float, key)
        elif key == "sources":
            out[key] = [str(v) for v in (value or [])]
        elif key == "credentials":
            out[key] = {str(k): str(v) for k, v in (value or {}).items()}
        elif key in {"install_path", "bin_dir", "app_cache_path", "global_cache_path",
                     "builtin_specification_dir", "tmp_root", "root"}:
            out[key] = Path(os.path.expanduser(str(value)))
        else:
            out[key] = value
    return out


def load_settings(
    config_path: Optional[os.PathLike] = None,
    env: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> Settings:
    """Build ``Settings`` from defaults, config file, environment and overrides.

    Args:
        config_path: Explicit config file; defaults to ``depfetch.yml`` in the
            project root when present.
        env: Environment mapping, defaults to ``os.environ``.
        **overrides: Highest-precedence values (usually from the CLI); None
            values are ignored.
    """
    env = os.environ if env is None else env
    root = Path(overrides.get("root") or Path.cwd())
    path = Path(config_path) if config_path else root / Constants.CONFIG_FILE
    if config_path and not path.is_file():
        raise ConfigurationError(f"Config file not found: {path}")

    known = {f.name for f in fields(Settings)}
    values: Dict[str, Any] = {"root": root}
    file_values = _read_config_file(path)
    unknown = sorted(set(file_values) - known)
    if unknown:
        logger.warning("Ignoring unknown settings in %s: %s", path, ", ".join(unknown))
    values.update({k: v for k, v in file_values.items() if k in known})
    env_values = _from_env(env)
    if "credentials" in env_values:
        merged = dict(values.get("credentials") or {})
        merged.update(env_values.pop("credentials"))
        values["credentials"] = merged
    values.update(env_values)
    values.update({k: v for k, v in overrides.items() if k in known and v is not None})
    return Settings(**_coerce(values))
