"""
Plan Loader
===========

Reads plan files (YAML or JSON) into Task objects.

Both snake_case keys and the camelCase keys produced by plan generators
(estimatedLines, agentPrompt, ...) are accepted.
"""

from pathlib import Path
from typing import List, Optional, Union
import logging

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from taskstack.errors import ConfigError
from taskstack.models import Task

logger = logging.getLogger(__name__)


class TaskSpec(BaseModel):
    """Task entry as written in a plan file."""
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    id: str
    title: str = ""
    description: str = ""
    touches: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices('touches', 'files', 'touch'),
    )
    produces: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices('produces', 'creates', 'produce'),
    )
    requires: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices('requires', 'depends_on', 'dependencies'),
    )
    estimated_size: int = Field(
        1,
        validation_alias=AliasChoices('estimated_size', 'estimatedLines', 'estimated_lines', 'size'),
    )
    prompt: str = Field(
        "",
        validation_alias=AliasChoices('prompt', 'agentPrompt', 'agent_prompt'),
    )

    @field_validator('id', mode='before')
    @classmethod
    def _coerce_id(cls, value):
        return str(value) if isinstance(value, int) else value

    @field_validator('requires', mode='before')
    @classmethod
    def _coerce_requires(cls, value):
        if value is None:
            return []
        return [str(v) for v in value]

    @field_validator('touches', 'produces', mode='before')
    @classmethod
    def _none_to_empty(cls, value):
        return [] if value is None else value

    def to_task(self) -> Task:
        return Task(
            id=self.id,
            title=self.title,
            description=self.description,
            touches=tuple(self.touches),
            produces=tuple(self.produces),
            requires=tuple(self.requires),
            estimated_size=self.estimated_size,
            prompt=self.prompt,
        )


class PlanSpec(BaseModel):
    """A plan file: a list of tasks plus optional metadata."""
    model_config = ConfigDict(extra='ignore')

    name: Optional[str] = None
    strategy: Optional[str] = None
    tasks: List[TaskSpec] = Field(default_factory=list)

    def to_tasks(self) -> List[Task]:
        return [spec.to_task() for spec in self.tasks]


def parse_plan(data: Union[dict, list]) -> PlanSpec:
    """
    Validate raw plan data.

    Args:
        data: Either a mapping with a "tasks" list or a bare list of tasks

    Returns:
        Validated PlanSpec

    Raises:
        ConfigError: If the data does not describe a plan
    """
    if isinstance(data, list):
        data = {'tasks': data}
    if not isinstance(data, dict):
        raise ConfigError("Plan must be a mapping with a 'tasks' list or a list of tasks")

    try:
        return PlanSpec.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid plan: {e}")


def load_plan_file(path: Union[str, Path]) -> List[Task]:
    """
    Load tasks from a YAML or JSON plan file.

    Args:
        path: Plan file path

    Returns:
        List of Task objects in file order

    Raises:
        ConfigError: If the file is missing, unreadable or malformed
    """
    path = Path(path)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Could not read plan file {path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse plan file {path}: {e}")

    if data is None:
        raise ConfigError(f"Plan file {path} is empty")

    plan = parse_plan(data)
    tasks = plan.to_tasks()
    logger.info(f"Loaded {len(tasks)} tasks from {path}")
    return tasks
