"""Local execution of an Azure DevOps style stage pipeline.

This module implements the subset of the pipeline model the deployment
needs:
1. Stage declarations with ``dependsOn`` and ``condition``
2. Topological ordering with cycle detection
3. Condition evaluation against prior stage results and variables
4. Step dispatch to registered actions

ADO SEMANTICS KEPT:
- A stage without ``dependsOn`` depends on the stage declared before it
- ``dependsOn: []`` makes a stage independent
- The default condition is ``succeeded()``
- A failed stage does not stop the run; later conditions decide

EXAMPLE:
```yaml
stages:
  - stage: Build
    jobs:
      - job: Build
        steps:
          - task: bicep-build
  - stage: Deploy
    condition: and(succeeded(), eq(variables['Build.SourceBranch'], 'refs/heads/main'))
    jobs:
      - deployment: DeployKeyVault
        strategy:
          runOnce:
            deploy:
              steps:
                - task: deploy-keyvault
```
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .conditions import (
    DEFAULT_CONDITION,
    ConditionContext,
    ConditionError,
    evaluate,
    parse_condition,
    referenced_stages,
    to_bool,
)
from .config import MAX_PIPELINE_FILE_SIZE_BYTES

logger = logging.getLogger(__name__)

STAGE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
MAX_STAGES = 50


class PipelineError(Exception):
    """Raised when a pipeline definition is invalid or cannot run."""

    pass


class CyclicDependencyError(PipelineError):
    """Raised when stage dependencies form a cycle."""

    pass


class StageResult(str, Enum):
    """Final result of a stage."""

    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"
    CANCELED = "Canceled"


# =============================================================================
# Definition
# =============================================================================


@dataclass
class Step:
    task: str
    display_name: str = ""
    inputs: dict[str, Any] = field(default_factory=dict)


@dataclass
class Job:
    name: str
    steps: list[Step] = field(default_factory=list)
    display_name: str = ""
    environment: str | None = None


@dataclass
class Stage:
    name: str
    depends_on: list[str] = field(default_factory=list)
    condition: str = DEFAULT_CONDITION
    display_name: str = ""
    jobs: list[Job] = field(default_factory=list)

    @property
    def tasks(self) -> list[str]:
        return [step.task for job in self.jobs for step in job.steps]


@dataclass
class Pipeline:
    name: str
    stages: list[Stage]
    variables: dict[str, str] = field(default_factory=dict)

    def stage(self, name: str) -> Stage:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise PipelineError(f"Unknown stage '{name}'")

    @property
    def tasks(self) -> set[str]:
        return {task for stage in self.stages for task in stage.tasks}


def _parse_variables(raw: Any, source: str) -> dict[str, str]:
    """Accept both the mapping form and the ``- name: / value:`` list form."""
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return {str(k): "" if v is None else str(v) for k, v in raw.items()}
    if isinstance(raw, list):
        variables: dict[str, str] = {}
        for entry in raw:
            if not isinstance(entry, dict):
                raise PipelineError(f"Invalid variables entry in {source}: {entry!r}")
            if "group" in entry:
                # Variable groups are resolved by Azure DevOps
                logger.warning(
                    "Variable group ignored in local run",
                    extra={"group": entry["group"], "source": source},
                )
                continue
            if "name" not in entry:
                raise PipelineError(f"Variable entry without name in {source}: {entry!r}")
            value = entry.get("value")
            variables[str(entry["name"])] = "" if value is None else str(value)
        return variables
    raise PipelineError(f"variables must be a mapping or a list in {source}")


def _parse_steps(raw: Any, where: str) -> list[Step]:
    if not isinstance(raw, list) or not raw:
        raise PipelineError(f"{where} must declare at least one step")

    steps: list[Step] = []
    for entry in raw:
        if not isinstance(entry, dict) or not entry.get("task"):
            raise PipelineError(f"{where}: every step needs a 'task': {entry!r}")
        inputs = entry.get("inputs") or {}
        if not isinstance(inputs, dict):
            raise PipelineError(f"{where}: step inputs must be a mapping")
        steps.append(
            Step(
                task=str(entry["task"]),
                display_name=str(entry.get("displayName", "")),
                inputs=inputs,
            )
        )
    return steps


def _parse_jobs(raw: Any, stage_name: str) -> list[Job]:
    if not isinstance(raw, list) or not raw:
        raise PipelineError(f"Stage '{stage_name}' must declare at least one job")

    jobs: list[Job] = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise PipelineError(f"Stage '{stage_name}': invalid job {entry!r}")

        if "deployment" in entry:
            # Deployment jobs nest steps under a runOnce strategy
            name = str(entry["deployment"])
            run_once = ((entry.get("strategy") or {}).get("runOnce") or {}).get("deploy") or {}
            steps = _parse_steps(run_once.get("steps"), f"Deployment job '{name}'")
            environment = entry.get("environment")
        elif "job" in entry:
            name = str(entry["job"])
            steps = _parse_steps(entry.get("steps"), f"Job '{name}'")
            environment = None
        else:
            raise PipelineError(f"Stage '{stage_name}': job needs a 'job' or 'deployment' key")

        jobs.append(
            Job(
                name=name,
                steps=steps,
                display_name=str(entry.get("displayName", "")),
                environment=str(environment) if environment else None,
            )
        )
    return jobs


def parse_pipeline(raw_data: Any, source: str = "<memory>") -> Pipeline:
    """Build a Pipeline from parsed YAML.

    Raises:
        PipelineError: If the definition is invalid.
    """
    if not isinstance(raw_data, dict):
        raise PipelineError(f"Pipeline must contain a YAML mapping: {source}")

    raw_stages = raw_data.get("stages")
    if not isinstance(raw_stages, list) or not raw_stages:
        raise PipelineError(f"Pipeline must declare at least one stage: {source}")
    if len(raw_stages) > MAX_STAGES:
        raise PipelineError(f"Pipeline exceeds maximum of {MAX_STAGES} stages: {source}")

    stages: list[Stage] = []
    previous: str | None = None
    for entry in raw_stages:
        if not isinstance(entry, dict) or not entry.get("stage"):
            raise PipelineError(f"Every stage needs a 'stage' name in {source}: {entry!r}")

        name = str(entry["stage"])
        if not STAGE_NAME_PATTERN.match(name):
            raise PipelineError(
                f"Stage name '{name}' may only contain letters, digits and underscores"
            )
        if any(s.name == name for s in stages):
            raise PipelineError(f"Duplicate stage name '{name}' in {source}")

        if "dependsOn" not in entry:
            depends_on = [previous] if previous else []
        elif entry["dependsOn"] is None:
            depends_on = []
        elif isinstance(entry["dependsOn"], str):
            depends_on = [entry["dependsOn"]]
        elif isinstance(entry["dependsOn"], list):
            depends_on = [str(d) for d in entry["dependsOn"]]
        else:
            raise PipelineError(f"Stage '{name}': dependsOn must be a string or a list")

        condition = str(entry.get("condition") or DEFAULT_CONDITION)
        try:
            tree = parse_condition(condition)
        except ConditionError as e:
            raise PipelineError(f"Stage '{name}': invalid condition: {e}") from e
        # Status functions only see the results of declared dependencies
        declared = {d.lower() for d in depends_on}
        outside = sorted(s for s in referenced_stages(tree) if s.lower() not in declared)
        if outside:
            raise PipelineError(
                f"Stage '{name}': condition refers to stages not in dependsOn: {outside}"
            )

        stages.append(
            Stage(
                name=name,
                depends_on=depends_on,
                condition=condition,
                display_name=str(entry.get("displayName", "")),
                jobs=_parse_jobs(entry.get("jobs"), name),
            )
        )
        previous = name

    known = {s.name for s in stages}
    for stage in stages:
        unknown = sorted(set(stage.depends_on) - known)
        if unknown:
            raise PipelineError(f"Stage '{stage.name}' depends on unknown stages: {unknown}")
        if stage.name in stage.depends_on:
            raise CyclicDependencyError(f"Stage '{stage.name}' cannot depend on itself")

    pipeline = Pipeline(
        name=str(raw_data.get("name") or Path(source).stem),
        stages=stages,
        variables=_parse_variables(raw_data.get("variables"), source),
    )
    # Fail at load time rather than mid-run
    execution_order(pipeline.stages)
    return pipeline


def load_pipeline(path: Path) -> Pipeline:
    """Load and validate a pipeline YAML file.

    Raises:
        PipelineError: If the file cannot be read or is invalid.
    """
    if not path.exists():
        raise PipelineError(f"Pipeline file not found: {path}")
    if path.stat().st_size > MAX_PIPELINE_FILE_SIZE_BYTES:
        raise PipelineError(
            f"Pipeline file exceeds maximum size of {MAX_PIPELINE_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        raw_data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise PipelineError(f"Invalid YAML in {path}: {e}") from e

    pipeline = parse_pipeline(raw_data, str(path))
    logger.info(
        "Loaded pipeline",
        extra={"pipeline": pipeline.name, "stages": [s.name for s in pipeline.stages]},
    )
    return pipeline


def execution_order(stages: list[Stage]) -> list[str]:
    """Return stage names in dependency order (dependencies first).

    Stages that become ready at the same time keep their declaration order.

    Raises:
        CyclicDependencyError: If a cycle is detected.
    """
    position = {stage.name: index for index, stage in enumerate(stages)}
    dependents: dict[str, list[str]] = {stage.name: [] for stage in stages}
    in_degree: dict[str, int] = {stage.name: 0 for stage in stages}

    for stage in stages:
        for dep in stage.depends_on:
            if dep in dependents:
                dependents[dep].append(stage.name)
                in_degree[stage.name] += 1

    # Kahn's algorithm
    result: list[str] = []
    queue = [name for name, degree in in_degree.items() if degree == 0]

    while queue:
        queue.sort(key=position.__getitem__)
        current = queue.pop(0)
        result.append(current)

        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    if len(result) != len(stages):
        cycle_nodes = [name for name, degree in in_degree.items() if degree > 0]
        raise CyclicDependencyError(f"Circular dependency detected involving: {cycle_nodes}")

    return result


# =============================================================================
# Execution
# =============================================================================


@dataclass
class StepContext:
    """What an action sees while it runs.

    ``set_variable`` mirrors ``##vso[task.setvariable]``: later stages can
    read the value in their conditions and steps.
    """

    stage: str
    job: str
    task: str
    inputs: dict[str, Any]
    variables: dict[str, str]

    def get_variable(self, name: str, default: str | None = None) -> str | None:
        lowered = name.lower()
        for key, value in self.variables.items():
            if key.lower() == lowered:
                return value
        return default

    def set_variable(self, name: str, value: Any) -> None:
        self.variables[name] = "" if value is None else str(value)
        logger.debug("Variable set", extra={"stage": self.stage, "variable": name})


# Actions may be plain functions or coroutines
Action = Callable[[StepContext], Any]


@dataclass
class StageRecord:
    name: str
    result: StageResult
    condition: str = DEFAULT_CONDITION
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    error: str | None = None
    error_type: str | None = None
    failed_task: str | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.name,
            "result": self.result.value,
            "condition": self.condition,
            "durationSeconds": round(self.duration_seconds, 3),
            "error": self.error,
            "errorType": self.error_type,
            "failedTask": self.failed_task,
        }


@dataclass
class PlannedStage:
    name: str
    depends_on: list[str]
    condition: str
    will_run: bool
    tasks: list[str]


class PipelineRun:
    """Executes a pipeline's stages in dependency order.

    Stages run one at a time. Each stage's condition is evaluated against
    the results of its direct dependencies and the run variables.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        actions: Mapping[str, Action],
        variables: Mapping[str, str] | None = None,
    ) -> None:
        missing = sorted(pipeline.tasks - set(actions))
        if missing:
            raise PipelineError(f"No action registered for tasks: {missing}")

        self._pipeline = pipeline
        self._actions = dict(actions)
        self._variables: dict[str, str] = {**pipeline.variables, **(variables or {})}
        self._records: dict[str, StageRecord] = {}
        self._canceled = False

    @property
    def variables(self) -> dict[str, str]:
        return self._variables

    @property
    def records(self) -> list[StageRecord]:
        return list(self._records.values())

    @property
    def canceled(self) -> bool:
        return self._canceled

    @property
    def succeeded(self) -> bool:
        """True when no stage failed or was canceled."""
        return not self._canceled and all(
            r.result in (StageResult.SUCCEEDED, StageResult.SKIPPED)
            for r in self._records.values()
        )

    def result(self, stage: str) -> StageResult | None:
        record = self._records.get(stage)
        return record.result if record else None

    def cancel(self) -> None:
        """Cancel the run; stages not yet started only run if their condition allows it."""
        self._canceled = True
        logger.warning("Pipeline run canceled", extra={"pipeline": self._pipeline.name})

    def _context(self, stage: Stage, results: Mapping[str, StageResult]) -> ConditionContext:
        return ConditionContext(
            dependencies={d: results[d].value for d in stage.depends_on},
            variables=self._variables,
            canceled=self._canceled,
        )

    def plan(self) -> list[PlannedStage]:
        """Predict which stages would run if every executed stage succeeded."""
        simulated: dict[str, StageResult] = {}
        planned: list[PlannedStage] = []

        for name in execution_order(self._pipeline.stages):
            stage = self._pipeline.stage(name)
            will_run = to_bool(
                evaluate(parse_condition(stage.condition), self._context(stage, simulated))
            )
            simulated[name] = StageResult.SUCCEEDED if will_run else StageResult.SKIPPED
            planned.append(
                PlannedStage(
                    name=name,
                    depends_on=list(stage.depends_on),
                    condition=stage.condition,
                    will_run=will_run,
                    tasks=stage.tasks,
                )
            )
        return planned

    async def run(self) -> list[StageRecord]:
        """Run all stages in dependency order.

        Raises:
            asyncio.CancelledError: Re-raised after the running stage is recorded.
        """
        results: dict[str, StageResult] = {}
        logger.info("Pipeline run started", extra={"pipeline": self._pipeline.name})

        for name in execution_order(self._pipeline.stages):
            stage = self._pipeline.stage(name)
            record = StageRecord(name=name, result=StageResult.SKIPPED, condition=stage.condition)
            self._records[name] = record

            try:
                should_run = to_bool(
                    evaluate(parse_condition(stage.condition), self._context(stage, results))
                )
            except ConditionError as e:
                record.result = StageResult.FAILED
                record.error = f"Condition evaluation failed: {e}"
                record.end_time = datetime.now(UTC)
                results[name] = record.result
                logger.error("Stage condition failed", extra={"stage": name, "error": str(e)})
                continue

            if not should_run:
                record.result = StageResult.CANCELED if self._canceled else StageResult.SKIPPED
                record.end_time = datetime.now(UTC)
                results[name] = record.result
                logger.info(
                    "Stage skipped",
                    extra={"stage": name, "result": record.result.value, "condition": stage.condition},
                )
                continue

            await self._run_stage(stage, record)
            results[name] = record.result

        logger.info(
            "Pipeline run finished",
            extra={
                "pipeline": self._pipeline.name,
                "succeeded": self.succeeded,
                "results": {n: r.result.value for n, r in self._records.items()},
            },
        )
        return self.records

    async def _run_stage(self, stage: Stage, record: StageRecord) -> None:
        logger.info("Stage started", extra={"stage": stage.name})
        record.start_time = datetime.now(UTC)
        record.result = StageResult.SUCCEEDED

        try:
            for job in stage.jobs:
                for step in job.steps:
                    context = StepContext(
                        stage=stage.name,
                        job=job.name,
                        task=step.task,
                        inputs=dict(step.inputs),
                        variables=self._variables,
                    )
                    outcome = self._actions[step.task](context)
                    if inspect.isawaitable(outcome):
                        await outcome
        except asyncio.CancelledError:
            record.result = StageResult.CANCELED
            self._canceled = True
            raise
        except Exception as e:
            # Any action failure fails the stage; the run continues
            record.result = StageResult.FAILED
            record.error = str(e)
            record.error_type = type(e).__name__
            record.failed_task = step.task
            logger.error(
                "Stage failed",
                extra={
                    "stage": stage.name,
                    "task": step.task,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
        finally:
            record.end_time = datetime.now(UTC)

        if record.result == StageResult.SUCCEEDED:
            logger.info(
                "Stage succeeded",
                extra={"stage": stage.name, "duration_seconds": record.duration_seconds},
            )
