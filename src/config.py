"""Reconciler configuration.

Configuration is a YAML file with a single `reconciler:` mapping. Every key is
optional; anything omitted keeps the built-in default below.

Resolution order for the config file:
1. --config PATH on the command line
2. $NODE_RECONCILER_CONFIG environment variable
3. /etc/node-reconciler/config.yaml
4. Built-in defaults (no file)

Example:

    reconciler:
      on_error: halt
      action_timeout: 300
      route_tables: [252]
      join:
        endpoint: 10.0.0.10:6443
        token: abcdef.0123456789abcdef
        ca_cert_hash: sha256:...
"""

import os
import shlex
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from common import APPLY_ERRORS, ApplyError

ENV_VAR = 'NODE_RECONCILER_CONFIG'
DEFAULT_CONFIG_PATH = Path('/etc/node-reconciler/config.yaml')

DEFAULT_SERVICES = [
    'kubelet', 'kube-proxy', 'kube-apiserver', 'kube-controller-manager', 'kube-scheduler', 'etcd',
]

DEFAULT_STATE_PATHS = [
    '/etc/kubernetes',
    '/var/lib/kubelet',
    '/var/lib/etcd',
    '/var/lib/kube-proxy',
    '/var/run/kubernetes',
    '/run/kubernetes',
    '/etc/cni/net.d',
    '/var/lib/cni',
    '/opt/cni/bin',
    '/var/log/pods',
    '/var/log/containers',
    '/root/.kube',
    '/home/*/.kube',
    '/tmp/kubeadm-*',
    '/tmp/kubernetes-*',
]

# Calico, flannel, weave, OVS, kube-proxy IPVS, nodelocaldns, docker
DEFAULT_INTERFACE_PATTERNS = [
    'cali*', 'tunl*', 'vxlan*', 'wireguard*', 'flannel*', 'cni*',
    'weave', 'datapath', 'veth*', 'kube-ipvs*', 'nodelocaldns', 'docker*',
]

# 252 is the table Calico uses for policy routing. Never flush main (254).
DEFAULT_ROUTE_TABLES = [252]

DEFAULT_ROUTE_PATTERNS = [
    r'^blackhole ',
    r'^10\.244\.',
    r'^10\.96\.',
    r'^192\.168\.0\.0/16',
]

DEFAULT_MTU_EXCLUDE_PREFIXES = ['lo', 'veth', 'cali', 'tunl', 'flannel', 'cni', 'docker', 'kube']

DEFAULT_SYSCTL_RESET = {
    'net.bridge.bridge-nf-call-iptables': '0',
    'net.bridge.bridge-nf-call-ip6tables': '0',
    'net.ipv4.ip_forward': '0',
    'net.ipv4.conf.all.rp_filter': '1',
    'net.ipv4.conf.default.rp_filter': '1',
}

DEFAULT_SYSCTL_JOIN = {
    'net.bridge.bridge-nf-call-iptables': '1',
    'net.bridge.bridge-nf-call-ip6tables': '1',
    'net.ipv4.ip_forward': '1',
}

DEFAULT_KERNEL_MODULES = [
    'ip_vs', 'ip_vs_rr', 'ip_vs_wrr', 'ip_vs_sh', 'nf_conntrack',
    'br_netfilter', 'overlay', 'ipip', 'vxlan', 'wireguard', 'dummy',
]

DEFAULT_JOIN_MODULES = ['overlay', 'br_netfilter']

DEFAULT_NONFATAL_ERRORS = ['external-tool-missing', 'resource-busy']


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class JoinSettings:
    """How to run `kubeadm join`.

    Either a full command line (`command`) or its parts (`endpoint`, `token`,
    `ca_cert_hash`). extra_args are appended in both cases.
    """
    command: str = ''
    endpoint: str = ''
    token: str = ''
    ca_cert_hash: str = ''
    extra_args: list = field(default_factory=list)

    @property
    def configured(self) -> bool:
        return bool(self.command or self.endpoint)

    def _command_args(self) -> list[str]:
        try:
            return shlex.split(self.command)
        except ValueError as e:
            raise ConfigError(f"join.command: {e}") from e

    def argv(self) -> tuple:
        """kubeadm join argument vector, or () when nothing is configured.

        Raises:
            ConfigError: join.command cannot be parsed
        """
        if self.command:
            args = self._command_args()
        elif self.endpoint:
            args = [
                'kubeadm', 'join', self.endpoint,
                '--token', self.token,
                '--discovery-token-ca-cert-hash', self.ca_cert_hash,
            ]
        else:
            return ()
        return tuple(args) + tuple(str(a) for a in self.extra_args)

    def control_plane(self) -> str:
        """host:port of the API server, or '' if it cannot be determined."""
        if self.endpoint:
            return self.endpoint
        args = self.argv()
        if len(args) > 2 and not args[2].startswith('-'):
            return args[2]
        return ''

    def validate(self) -> None:
        if self.command:
            args = self._command_args()
            if args[:2] != ['kubeadm', 'join']:
                raise ConfigError(f"join.command must start with 'kubeadm join', got: {args[:2]}")
            if self.endpoint or self.token or self.ca_cert_hash:
                raise ConfigError("join.command cannot be combined with join.endpoint/token/ca_cert_hash")
        elif self.endpoint:
            missing = [k for k in ('token', 'ca_cert_hash') if not getattr(self, k)]
            if missing:
                raise ConfigError(f"join.endpoint requires: {', '.join('join.' + k for k in missing)}")
        elif self.token or self.ca_cert_hash:
            raise ConfigError("join.token/ca_cert_hash require join.endpoint")


@dataclass
class ReconcilerConfig:
    """All tunables for a reconciliation run."""
    on_error: str = 'continue'
    probe_timeout: float = 5.0
    action_timeout: float = 600.0
    services: list = field(default_factory=lambda: list(DEFAULT_SERVICES))
    state_paths: list = field(default_factory=lambda: list(DEFAULT_STATE_PATHS))
    interface_patterns: list = field(default_factory=lambda: list(DEFAULT_INTERFACE_PATTERNS))
    route_tables: list = field(default_factory=lambda: list(DEFAULT_ROUTE_TABLES))
    route_patterns: list = field(default_factory=lambda: list(DEFAULT_ROUTE_PATTERNS))
    physical_mtu: int = 1500
    mtu_exclude_prefixes: list = field(default_factory=lambda: list(DEFAULT_MTU_EXCLUDE_PREFIXES))
    sysctl_reset: dict = field(default_factory=lambda: dict(DEFAULT_SYSCTL_RESET))
    sysctl_join: dict = field(default_factory=lambda: dict(DEFAULT_SYSCTL_JOIN))
    kernel_modules: list = field(default_factory=lambda: list(DEFAULT_KERNEL_MODULES))
    join_modules: list = field(default_factory=lambda: list(DEFAULT_JOIN_MODULES))
    containerd_namespace: str = 'k8s.io'
    nonfatal_errors: list = field(default_factory=lambda: list(DEFAULT_NONFATAL_ERRORS))
    join: JoinSettings = field(default_factory=JoinSettings)
    source: Optional[Path] = field(default=None, compare=False)

    @classmethod
    def from_dict(cls, data: dict, source: Optional[Path] = None) -> 'ReconcilerConfig':
        """Build a config from the `reconciler:` mapping.

        Raises:
            ConfigError: Unknown key or wrong value type
        """
        if not isinstance(data, dict):
            raise ConfigError(f"'reconciler' must be a mapping, got {type(data).__name__}")

        known = {f.name: f for f in fields(cls) if f.name != 'source'}
        unknown = sorted(set(data) - set(known))
        if unknown:
            raise ConfigError(f"Unknown config key(s): {', '.join(unknown)}")

        defaults = cls()
        values: dict[str, Any] = {}
        for key, value in data.items():
            if key == 'join':
                values['join'] = _join_from_dict(value)
                continue
            values[key] = _coerce(key, value, getattr(defaults, key))

        config = cls(source=source, **values)
        config.validate()
        return config

    def validate(self) -> None:
        if self.on_error not in ('continue', 'halt'):
            raise ConfigError(f"on_error must be 'continue' or 'halt', got '{self.on_error}'")
        for key in ('probe_timeout', 'action_timeout'):
            if getattr(self, key) <= 0:
                raise ConfigError(f"{key} must be positive, got {getattr(self, key)}")
        if not 68 <= self.physical_mtu <= 65535:
            raise ConfigError(f"physical_mtu out of range: {self.physical_mtu}")
        bad = [kind for kind in self.nonfatal_errors if kind not in APPLY_ERRORS]
        if bad:
            raise ConfigError(
                f"Unknown error kind(s) in nonfatal_errors: {', '.join(bad)}. "
                f"Valid: {', '.join(sorted(APPLY_ERRORS))}"
            )
        self.join.validate()

    def nonfatal_types(self) -> tuple[type[ApplyError], ...]:
        """ApplyError classes that are recorded as skipped."""
        return tuple(APPLY_ERRORS[kind] for kind in self.nonfatal_errors)


def _coerce(key: str, value: Any, default: Any) -> Any:
    """Check a config value against the type of its default."""
    if value is None:
        raise ConfigError(f"{key}: value required")
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{key} must be a number, got {value!r}")
        return float(value)
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{key} must be an integer, got {value!r}")
        return value
    if isinstance(default, str):
        if not isinstance(value, str):
            raise ConfigError(f"{key} must be a string, got {value!r}")
        return value
    if isinstance(default, list):
        if not isinstance(value, list):
            raise ConfigError(f"{key} must be a list, got {type(value).__name__}")
        if key == 'route_tables':
            if not all(isinstance(v, (int, str)) and not isinstance(v, bool) for v in value):
                raise ConfigError(f"{key} entries must be table ids or names")
            return value
        if not all(isinstance(v, str) for v in value):
            raise ConfigError(f"{key} entries must be strings")
        return value
    if isinstance(default, dict):
        if not isinstance(value, dict):
            raise ConfigError(f"{key} must be a mapping, got {type(value).__name__}")
        # sysctl values are written as strings
        return {str(k): str(v) for k, v in value.items()}
    raise ConfigError(f"{key}: unsupported value {value!r}")


def _join_from_dict(data: Any) -> JoinSettings:
    if not isinstance(data, dict):
        raise ConfigError(f"join must be a mapping, got {type(data).__name__}")
    known = {f.name for f in fields(JoinSettings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown join key(s): {', '.join(unknown)}")
    values = {}
    for key, value in data.items():
        if key == 'extra_args':
            if not isinstance(value, list):
                raise ConfigError("join.extra_args must be a list")
            values[key] = [str(v) for v in value]
        elif not isinstance(value, str):
            raise ConfigError(f"join.{key} must be a string, got {value!r}")
        else:
            values[key] = value
    return JoinSettings(**values)


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e.strerror}") from e


def find_config_file(explicit: Optional[Path] = None) -> Optional[Path]:
    """Discover the config file.

    Resolution order:
    1. explicit path (from --config)
    2. $NODE_RECONCILER_CONFIG environment variable
    3. /etc/node-reconciler/config.yaml

    Returns:
        Path to the config file, or None to use built-in defaults

    Raises:
        ConfigError: An explicitly named file does not exist
    """
    if explicit is not None:
        path = Path(explicit)
        if not path.is_file():
            raise ConfigError(f"Config file not found: {path}")
        return path

    if env_path := os.environ.get(ENV_VAR):
        path = Path(env_path)
        if path.is_file():
            return path
        raise ConfigError(f"{ENV_VAR}={env_path} does not exist")

    if DEFAULT_CONFIG_PATH.is_file():
        return DEFAULT_CONFIG_PATH

    return None


def load_config(path: Optional[Path] = None) -> ReconcilerConfig:
    """Load configuration, falling back to built-in defaults.

    Raises:
        ConfigError: File missing, unreadable, invalid YAML or invalid values
    """
    config_file = find_config_file(path)
    if config_file is None:
        return ReconcilerConfig()

    data = _parse_yaml(config_file)
    if not isinstance(data, dict):
        raise ConfigError(f"{config_file}: top level must be a mapping")
    extra = sorted(set(data) - {'reconciler'})
    if extra:
        raise ConfigError(f"{config_file}: unknown top-level key(s): {', '.join(extra)}")
    return ReconcilerConfig.from_dict(data.get('reconciler') or {}, source=config_file)
