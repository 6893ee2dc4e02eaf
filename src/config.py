"""Engine configuration management.

Configuration is loaded from a single YAML file:
- state_backend: where snapshots and locks live (file or http)
- parallelism / lock settings: apply scheduling and lock expiry
- pseudo_parameters: values exposed to templates via Ref (e.g. AWS::Region)
- providers: resource type -> provider settings

Resolution order for the config file:
1. --config CLI argument
2. $STACK_DRIVER_CONFIG environment variable
3. ./stack-driver.yaml in the working directory
4. Built-in defaults (no file)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

CONFIG_FILENAME = 'stack-driver.yaml'

VALID_BACKENDS = ('file', 'http')


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class ProviderSettings:
    """Provider settings for one resource type (or '*' for all types).

    Attributes:
        kind: Provider implementation name (e.g. 'local')
        root: Storage directory for file-backed providers
        replace_properties: Properties whose change forces replacement
    """
    kind: str = 'local'
    root: Optional[Path] = None
    replace_properties: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'ProviderSettings':
        """Create ProviderSettings from dictionary."""
        if not data:
            return cls()
        root = data.get('root')
        return cls(
            kind=data.get('kind', 'local'),
            root=Path(root) if root else None,
            replace_properties=list(data.get('replace_properties', [])),
        )


@dataclass
class EngineConfig:
    """Settings shared by plan, apply and the state/lock layer.

    Attributes:
        state_backend: 'file' or 'http'
        state_dir: Directory for the file backend
        state_url: Base URL for the http backend
        state_verify_tls: Verify TLS certificates of the http backend
        parallelism: Max concurrent provider calls during apply
        lock_expiry_seconds: Age after which an unreleased lock is reclaimable
        lock_retries: Acquire attempts before giving up on a held lock
        lock_retry_delay: Initial backoff between acquire attempts (seconds)
        refresh: Read back provider-side state before planning (drift)
        pseudo_parameters: Values resolvable via Ref that are not parameters
        providers: Resource type -> ProviderSettings ('*' matches any type)
        report_dir: Where apply reports are written (None = no report files)
        source_path: File the config was loaded from
    """
    state_backend: str = 'file'
    state_dir: Path = field(default_factory=lambda: Path('.stack-state'))
    state_url: str = ''
    state_verify_tls: bool = True
    parallelism: int = 4
    lock_expiry_seconds: float = 900.0
    lock_retries: int = 0
    lock_retry_delay: float = 1.0
    refresh: bool = False
    pseudo_parameters: dict[str, Any] = field(default_factory=dict)
    providers: dict[str, ProviderSettings] = field(default_factory=dict)
    report_dir: Optional[Path] = None
    source_path: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.state_dir, str):
            self.state_dir = Path(self.state_dir)
        if isinstance(self.report_dir, str):
            self.report_dir = Path(self.report_dir)

        if self.state_backend not in VALID_BACKENDS:
            raise ConfigError(
                f"Unknown state_backend '{self.state_backend}'. "
                f"Valid: {', '.join(VALID_BACKENDS)}"
            )
        if self.state_backend == 'http' and not self.state_url:
            raise ConfigError("state_backend 'http' requires state_url")
        if self.parallelism < 1:
            raise ConfigError(f"parallelism must be >= 1, got {self.parallelism}")
        if self.lock_expiry_seconds <= 0:
            raise ConfigError(
                f"lock_expiry_seconds must be > 0, got {self.lock_expiry_seconds}"
            )

    @classmethod
    def from_dict(cls, data: Optional[dict], source_path: Optional[Path] = None) -> 'EngineConfig':
        """Create EngineConfig from dictionary.

        Relative state_dir/report_dir/provider roots are resolved against
        the directory of source_path when one is given.
        """
        if not data:
            return cls(source_path=source_path)

        base = source_path.parent if source_path else None

        def _path(value: Optional[str]) -> Optional[Path]:
            if not value:
                return None
            p = Path(value)
            if base is not None and not p.is_absolute():
                p = base / p
            return p

        providers = {}
        for type_name, settings in (data.get('providers') or {}).items():
            ps = ProviderSettings.from_dict(settings)
            if ps.root is not None:
                ps.root = _path(str(ps.root))
            providers[type_name] = ps

        state = data.get('state') or {}
        lock = data.get('lock') or {}

        return cls(
            state_backend=state.get('backend', 'file'),
            state_dir=_path(state.get('dir')) or Path('.stack-state'),
            state_url=state.get('url', ''),
            state_verify_tls=bool(state.get('verify_tls', True)),
            parallelism=int(data.get('parallelism', 4)),
            lock_expiry_seconds=float(lock.get('expiry_seconds', 900)),
            lock_retries=int(lock.get('retries', 0)),
            lock_retry_delay=float(lock.get('retry_delay', 1.0)),
            refresh=bool(data.get('refresh', False)),
            pseudo_parameters=dict(data.get('pseudo_parameters') or {}),
            providers=providers,
            report_dir=_path(data.get('report_dir')),
            source_path=source_path,
        )

    def provider_settings(self, resource_type: str) -> ProviderSettings:
        """Settings for a resource type, falling back to '*' then defaults."""
        if resource_type in self.providers:
            return self.providers[resource_type]
        if '*' in self.providers:
            return self.providers['*']
        return ProviderSettings()


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def discover_config_path(explicit: Optional[str] = None) -> Optional[Path]:
    """Find the engine config file.

    Resolution order:
    1. explicit path (from --config)
    2. $STACK_DRIVER_CONFIG environment variable
    3. ./stack-driver.yaml

    Returns:
        Path to config file, or None to use defaults

    Raises:
        ConfigError: If an explicitly named file does not exist
    """
    if explicit:
        path = Path(explicit)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        return path

    if env_path := os.environ.get('STACK_DRIVER_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"STACK_DRIVER_CONFIG={env_path} does not exist")

    local = Path.cwd() / CONFIG_FILENAME
    if local.exists():
        return local

    return None


def load_engine_config(path: Optional[str] = None) -> EngineConfig:
    """Load engine configuration, falling back to defaults when no file exists."""
    config_path = discover_config_path(path)
    if config_path is None:
        return EngineConfig()
    return EngineConfig.from_dict(_parse_yaml(config_path), source_path=config_path)


def load_params_file(path: str) -> dict:
    """Load a parameter values file (YAML or JSON mapping)."""
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Parameters file not found: {p}")
    return _parse_yaml(p)
