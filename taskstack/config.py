"""
Configuration
=============

Loads taskstack settings from YAML files and TASKSTACK_* environment
variables, and validates per-run options.

Key Features:
- Config.load_default() searches ./.taskstack.yaml then ~/.taskstack/config.yaml
- Environment variables override file values (load them with python-dotenv)
- RunOptions validates CLI/API input with pydantic before a run starts
"""

from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import List, Dict, Any, Optional
import logging
import os
import shlex

import yaml
from pydantic import BaseModel, Field

from taskstack.errors import ConfigError
from taskstack.models import ExecutionMode, StrategyName, VcsMode

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".taskstack.yaml"
USER_CONFIG_PATH = Path.home() / ".taskstack" / "config.yaml"
ENV_PREFIX = "TASKSTACK_"


@dataclass
class VcsConfig:
    """
    Repository and branch settings.

    Attributes:
        trunk: Branch every plan starts from
        worktree_path: Directory for task worktrees (relative to the repo root)
        branch_prefix: Prefix for task branches ("<prefix>/<task-id>")
        mode: Default isolation mode
        stack_tool: Executable of the stack tool (git-spice)
        auto_restack: Restack after a stacked run
        submit_on_complete: Submit the stack for review after a stacked run
        git_timeout: Timeout for individual git commands in seconds
    """
    trunk: str = "main"
    worktree_path: str = ".taskstack/shadows"
    branch_prefix: str = "taskstack"
    mode: VcsMode = VcsMode.WORKTREE
    stack_tool: str = "gs"
    auto_restack: bool = True
    submit_on_complete: bool = False
    git_timeout: int = 60


@dataclass
class ExecutionConfig:
    """Defaults for task execution."""
    strategy: StrategyName = StrategyName.PARALLEL
    max_concurrency: int = 3
    max_retries: int = 2
    task_timeout: Optional[float] = 1800.0
    continue_on_error: bool = False
    allow_partial_success: bool = False


@dataclass
class AgentConfig:
    """
    External coding agent invocation.

    The command is an argv list; "{prompt}", "{task_id}" and "{workdir}"
    placeholders are substituted per attempt.
    """
    command: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class Config:
    """Top-level taskstack configuration."""
    vcs: VcsConfig = field(default_factory=VcsConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    source: Optional[str] = None

    @classmethod
    def load_default(cls, cwd: Optional[str] = None) -> 'Config':
        """
        Load configuration from the first config file found, then apply
        environment overrides.

        Args:
            cwd: Directory to search for a project config file

        Returns:
            Config instance (defaults when no file exists)
        """
        search = [Path(cwd or os.getcwd()) / CONFIG_FILENAME, USER_CONFIG_PATH]
        for path in search:
            if path.is_file():
                config = cls.from_file(path)
                break
        else:
            logger.debug("No config file found, using defaults")
            config = cls()

        config.apply_env(os.environ)
        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Could not read config file {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")

        config = cls.from_dict(data)
        config.source = str(path)
        logger.info(f"Loaded configuration from {path}")
        return config

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Config':
        vcs_data = dict(data.get('vcs') or {})
        exec_data = dict(data.get('execution') or {})
        agent_data = dict(data.get('agent') or {})

        try:
            if 'mode' in vcs_data:
                vcs_data['mode'] = VcsMode(vcs_data['mode'])
            if 'strategy' in exec_data:
                exec_data['strategy'] = StrategyName(exec_data['strategy'])
            if isinstance(agent_data.get('command'), str):
                agent_data['command'] = shlex.split(agent_data['command'])

            return cls(
                vcs=VcsConfig(**vcs_data),
                execution=ExecutionConfig(**exec_data),
                agent=AgentConfig(**agent_data),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration: {e}")

    def apply_env(self, environ) -> None:
        """
        Override settings from TASKSTACK_* environment variables.

        Args:
            environ: Mapping of environment variables (usually os.environ)
        """
        def get(name: str) -> Optional[str]:
            value = environ.get(ENV_PREFIX + name)
            return value if value not in (None, "") else None

        try:
            if get("TRUNK"):
                self.vcs.trunk = get("TRUNK")
            if get("WORKTREE_PATH"):
                self.vcs.worktree_path = get("WORKTREE_PATH")
            if get("BRANCH_PREFIX"):
                self.vcs.branch_prefix = get("BRANCH_PREFIX")
            if get("VCS_MODE"):
                self.vcs.mode = VcsMode(get("VCS_MODE"))
            if get("STACK_TOOL"):
                self.vcs.stack_tool = get("STACK_TOOL")
            if get("STRATEGY"):
                self.execution.strategy = StrategyName(get("STRATEGY"))
            if get("MAX_CONCURRENCY"):
                self.execution.max_concurrency = int(get("MAX_CONCURRENCY"))
            if get("MAX_RETRIES"):
                self.execution.max_retries = int(get("MAX_RETRIES"))
            if get("TASK_TIMEOUT"):
                self.execution.task_timeout = float(get("TASK_TIMEOUT"))
            if get("CONTINUE_ON_ERROR"):
                self.execution.continue_on_error = _parse_bool(get("CONTINUE_ON_ERROR"))
            if get("AGENT_COMMAND"):
                self.agent.command = shlex.split(get("AGENT_COMMAND"))
        except ValueError as e:
            raise ConfigError(f"Invalid environment override: {e}")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['vcs']['mode'] = self.vcs.mode.value
        data['execution']['strategy'] = self.execution.strategy.value
        return data


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ('1', 'true', 'yes', 'on'):
        return True
    if lowered in ('0', 'false', 'no', 'off'):
        return False
    raise ValueError(f"not a boolean: {value!r}")


class RunOptions(BaseModel):
    """Options for a single run, validated before anything executes."""
    mode: ExecutionMode = Field(ExecutionMode.EXECUTE, description="plan, dry-run, execute or validate")
    strategy: StrategyName = Field(StrategyName.PARALLEL, description="Execution strategy")
    vcs_mode: VcsMode = Field(VcsMode.WORKTREE, description="Isolation mode")
    continue_on_error: bool = Field(False, description="Keep running independent tasks after a failure")
    max_retries: int = Field(2, ge=0, description="Retries per task after the first attempt")
    timeout: Optional[float] = Field(None, gt=0, description="Per-attempt timeout in seconds")
    max_concurrency: int = Field(3, ge=1, le=10, description="Concurrent task executions")
    dry_run: bool = Field(False, description="Drive the state machine without VCS side effects")
    verbose: bool = False
    parent_ref: Optional[str] = Field(None, description="Base ref (defaults to the trunk)")
    cwd: str = Field(default_factory=os.getcwd, description="Repository root")
    submit: bool = Field(False, description="Submit the stack for review after a stacked run")
    allow_partial_success: bool = Field(False, description="Exit 0 when some tasks completed despite failures")

    @classmethod
    def from_config(cls, config: Config, **overrides: Any) -> 'RunOptions':
        """Build run options from configuration defaults plus explicit overrides."""
        values: Dict[str, Any] = {
            'strategy': config.execution.strategy,
            'vcs_mode': config.vcs.mode,
            'continue_on_error': config.execution.continue_on_error,
            'max_retries': config.execution.max_retries,
            'timeout': config.execution.task_timeout,
            'max_concurrency': config.execution.max_concurrency,
            'submit': config.vcs.submit_on_complete,
            'allow_partial_success': config.execution.allow_partial_success,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @property
    def effective_mode(self) -> ExecutionMode:
        if self.dry_run and self.mode == ExecutionMode.EXECUTE:
            return ExecutionMode.DRY_RUN
        return self.mode
