"""Load the daemon configuration from a YAML file.

Example ``autodev.yaml``::

    repo:
      owner: acme
      name: widgets
      base_branch: main
    execution:
      parallel_workers: 4
      timeout_minutes: 30
    discovery:
      max_open_issues: 10
      tasks_per_cycle: 5
      exclude_paths: [node_modules, dist]
    merge:
      auto_merge: true
      conflict_strategy: rebase
      merge_method: squash
    daemon:
      loop_interval_ms: 60000

Credentials are usually taken from the environment (``GITHUB_TOKEN`` or
``GH_TOKEN``, and ``ANTHROPIC_API_KEY`` or ``CLAUDE_CODE_OAUTH_TOKEN``); values
in the file win when both are present.
"""

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

import yaml

sys.path.insert(0, str(Path(__file__).resolve().parent))

from errors import ConfigError

CONFLICT_STRATEGIES = ("rebase", "merge", "manual")
MERGE_METHODS = ("merge", "squash", "rebase")


@dataclass
class RepoConfig:
    owner: str
    name: str
    base_branch: str = "main"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def url(self) -> str:
        return f"https://github.com/{self.owner}/{self.name}"


@dataclass
class ExecutionConfig:
    parallel_workers: int = 4
    timeout_minutes: int = 30
    work_dir: Path = Path("/tmp/autodev-workspace")
    log_dir: Path = Path("./logs")
    model: str = "sonnet"
    max_turns: int = 50


@dataclass
class DiscoveryConfig:
    max_open_issues: int = 10
    tasks_per_cycle: int = 5
    exclude_paths: list[str] = field(default_factory=lambda: ["node_modules", "dist", ".git"])
    issue_label: str = "autodev"
    similarity_threshold: float = 0.7
    model: str = "claude-opus-4-6"
    repo_context: str = ""


@dataclass
class MergeConfig:
    auto_merge: bool = True
    max_retries: int = 3
    conflict_strategy: str = "rebase"
    merge_method: str = "squash"


@dataclass
class CredentialsConfig:
    hosting_token: str | None = None
    agent_auth: str | None = None


@dataclass
class DaemonSettings:
    loop_interval_ms: int = 60_000
    pause_between_cycles: bool = True
    status_file: Path = Path("status.json")


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout_seconds: float = 60.0


@dataclass
class HealthConfig:
    port: int | None = None
    host: str = "127.0.0.1"


@dataclass
class DaemonConfig:
    repo: RepoConfig
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    credentials: CredentialsConfig = field(default_factory=CredentialsConfig)
    daemon: DaemonSettings = field(default_factory=DaemonSettings)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    health: HealthConfig = field(default_factory=HealthConfig)


def _section(data: dict, name: str) -> dict:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' must be a mapping, got {type(value).__name__}")
    return value


def _check_scalar(key: str, default, value) -> None:
    """Reject a value whose type does not match the field's bool/int/float default."""
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigError(f"{key} must be true or false, got {value!r}")
    elif isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{key} must be an integer, got {value!r}")
    elif isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{key} must be a number, got {value!r}")


def _build(cls, values: dict, section: str):
    """Instantiate dataclass *cls* from *values*, rejecting unknown keys."""
    known = set(cls.__dataclass_fields__)
    unknown = set(values) - known
    if unknown:
        raise ConfigError(f"Unknown key(s) in '{section}': {', '.join(sorted(unknown))}")
    for key, value in values.items():
        _check_scalar(f"{section}.{key}", cls.__dataclass_fields__[key].default, value)
    try:
        return cls(**values)
    except TypeError as exc:
        raise ConfigError(f"Invalid '{section}' section: {exc}") from exc


def config_from_dict(data: dict, env: dict[str, str] | None = None) -> DaemonConfig:
    """Build and validate a :class:`DaemonConfig` from parsed YAML data."""
    env = os.environ if env is None else env
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")

    repo_data = _section(data, "repo")
    if not repo_data.get("owner") or not repo_data.get("name"):
        raise ConfigError("'repo.owner' and 'repo.name' are required")

    execution_data = dict(_section(data, "execution"))
    for key in ("work_dir", "log_dir"):
        if key in execution_data:
            execution_data[key] = Path(execution_data[key]).expanduser()
    daemon_data = dict(_section(data, "daemon"))
    if "status_file" in daemon_data:
        daemon_data["status_file"] = Path(daemon_data["status_file"]).expanduser()

    credentials = _build(CredentialsConfig, _section(data, "credentials"), "credentials")
    if not credentials.hosting_token:
        credentials.hosting_token = env.get("GITHUB_TOKEN") or env.get("GH_TOKEN")
    if not credentials.agent_auth:
        credentials.agent_auth = env.get("ANTHROPIC_API_KEY") or env.get("CLAUDE_CODE_OAUTH_TOKEN")

    config = DaemonConfig(
        repo=_build(RepoConfig, repo_data, "repo"),
        execution=_build(ExecutionConfig, execution_data, "execution"),
        discovery=_build(DiscoveryConfig, _section(data, "discovery"), "discovery"),
        merge=_build(MergeConfig, _section(data, "merge"), "merge"),
        credentials=credentials,
        daemon=_build(DaemonSettings, daemon_data, "daemon"),
        circuit_breaker=_build(CircuitBreakerConfig, _section(data, "circuit_breaker"), "circuit_breaker"),
        health=_build(HealthConfig, _section(data, "health"), "health"),
    )
    validate_config(config)
    return config


def validate_config(config: DaemonConfig) -> None:
    """Raise ConfigError when a value is out of range."""
    if config.execution.parallel_workers < 1:
        raise ConfigError("execution.parallel_workers must be at least 1")
    if config.execution.timeout_minutes <= 0:
        raise ConfigError("execution.timeout_minutes must be positive")
    if config.discovery.max_open_issues < 0:
        raise ConfigError("discovery.max_open_issues must not be negative")
    if config.discovery.tasks_per_cycle < 0:
        raise ConfigError("discovery.tasks_per_cycle must not be negative")
    if not 0.0 < config.discovery.similarity_threshold <= 1.0:
        raise ConfigError("discovery.similarity_threshold must be in (0, 1]")
    if config.merge.conflict_strategy not in CONFLICT_STRATEGIES:
        raise ConfigError(
            f"merge.conflict_strategy must be one of {', '.join(CONFLICT_STRATEGIES)}; "
            f"got {config.merge.conflict_strategy!r}"
        )
    if config.merge.merge_method not in MERGE_METHODS:
        raise ConfigError(
            f"merge.merge_method must be one of {', '.join(MERGE_METHODS)}; "
            f"got {config.merge.merge_method!r}"
        )
    if config.merge.max_retries < 0:
        raise ConfigError("merge.max_retries must not be negative")
    if config.daemon.loop_interval_ms < 0:
        raise ConfigError("daemon.loop_interval_ms must not be negative")
    if config.circuit_breaker.failure_threshold < 1:
        raise ConfigError("circuit_breaker.failure_threshold must be at least 1")


def load_config(config_path: str | Path, env: dict[str, str] | None = None) -> DaemonConfig:
    """Read a YAML config file and return a validated :class:`DaemonConfig`."""
    config_path = Path(config_path)
    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {config_path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Could not parse {config_path}: {exc}") from exc
    return config_from_dict(data, env=env)
