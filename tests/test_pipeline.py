"""Tests for pipeline parsing, ordering and local execution."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest
import yaml

from deployer.pipeline import (
    CyclicDependencyError,
    PipelineError,
    PipelineRun,
    Stage,
    StageRecord,
    StageResult,
    StepContext,
    execution_order,
    load_pipeline,
    parse_pipeline,
)


def _stage(name: str, *tasks: str, **extra: Any) -> dict[str, Any]:
    return {
        "stage": name,
        "jobs": [{"job": name, "steps": [{"task": t} for t in tasks or (name.lower(),)]}],
        **extra,
    }


def _pipeline(*stages: dict[str, Any], **extra: Any) -> dict[str, Any]:
    return {"name": "test", "stages": list(stages), **extra}


class Recorder:
    """Collects the tasks executed by a run."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    def action(self, context: StepContext) -> None:
        self.calls.append(f"{context.stage}.{context.task}")

    def failing(self, context: StepContext) -> None:
        self.calls.append(f"{context.stage}.{context.task}")
        raise RuntimeError("task exploded")

    def actions(self, *names: str, failing: tuple[str, ...] = ()) -> dict[str, Any]:
        return {n: (self.failing if n in failing else self.action) for n in names}


class TestParsePipeline:
    def test_implicit_dependency_on_previous_stage(self) -> None:
        pipeline = parse_pipeline(_pipeline(_stage("Build"), _stage("Validate"), _stage("Deploy")))

        assert pipeline.stage("Build").depends_on == []
        assert pipeline.stage("Validate").depends_on == ["Build"]
        assert pipeline.stage("Deploy").depends_on == ["Validate"]
        assert pipeline.stage("Deploy").condition == "succeeded()"

    def test_explicit_dependencies(self) -> None:
        pipeline = parse_pipeline(
            _pipeline(
                _stage("A"),
                _stage("B", dependsOn=[]),
                _stage("C", dependsOn=["A", "B"]),
                _stage("D", dependsOn="A"),
            )
        )

        assert pipeline.stage("B").depends_on == []
        assert pipeline.stage("C").depends_on == ["A", "B"]
        assert pipeline.stage("D").depends_on == ["A"]

    def test_deployment_job(self) -> None:
        raw = _pipeline(
            {
                "stage": "Deploy",
                "jobs": [
                    {
                        "deployment": "DeployKeyVault",
                        "environment": "dev",
                        "strategy": {
                            "runOnce": {
                                "deploy": {
                                    "steps": [
                                        {"task": "deploy-keyvault"},
                                        {"task": "store-secret", "inputs": {"rotate": True}},
                                    ]
                                }
                            }
                        },
                    }
                ],
            }
        )
        job = parse_pipeline(raw).stage("Deploy").jobs[0]

        assert job.name == "DeployKeyVault"
        assert job.environment == "dev"
        assert [s.task for s in job.steps] == ["deploy-keyvault", "store-secret"]
        assert job.steps[1].inputs == {"rotate": True}

    def test_variables_mapping_and_list(self) -> None:
        mapping = parse_pipeline(_pipeline(_stage("A"), variables={"env": "dev", "n": 3}))
        listed = parse_pipeline(
            _pipeline(
                _stage("A"),
                variables=[{"name": "env", "value": "dev"}, {"group": "shared-secrets"}],
            )
        )

        assert mapping.variables == {"env": "dev", "n": "3"}
        assert listed.variables == {"env": "dev"}

    @pytest.mark.parametrize(
        ("raw", "message"),
        [
            ([], "YAML mapping"),
            ({"stages": []}, "at least one stage"),
            (_pipeline({"jobs": []}), "needs a 'stage' name"),
            (_pipeline(_stage("Bad-Name")), "letters, digits and underscores"),
            (_pipeline(_stage("A"), _stage("A")), "Duplicate stage"),
            (_pipeline(_stage("A", dependsOn=["Missing"])), "unknown stages"),
            (_pipeline({"stage": "A", "jobs": []}), "at least one job"),
            (_pipeline({"stage": "A", "jobs": [{"job": "j", "steps": []}]}), "at least one step"),
            (_pipeline({"stage": "A", "jobs": [{"job": "j", "steps": [{"script": "x"}]}]}), "needs a 'task'"),
            (_pipeline({"stage": "A", "jobs": [{"pool": "x"}]}), "'job' or 'deployment'"),
            (_pipeline(_stage("A", condition="eq(")), "invalid condition"),
            (
                _pipeline(_stage("A"), _stage("B"), _stage("C", condition="succeeded('A')")),
                "refers to stages not in dependsOn",
            ),
            (_pipeline(_stage("A", condition="not(failed('Other'))", dependsOn=[])), "not in dependsOn"),
            (_pipeline(_stage("A"), variables="x"), "mapping or a list"),
        ],
    )
    def test_invalid(self, raw: Any, message: str) -> None:
        with pytest.raises(PipelineError, match=message.replace("(", r"\(")):
            parse_pipeline(raw)

    def test_self_dependency(self) -> None:
        with pytest.raises(CyclicDependencyError, match="itself"):
            parse_pipeline(_pipeline(_stage("A", dependsOn=["A"])))

    def test_cycle(self) -> None:
        with pytest.raises(CyclicDependencyError, match="Circular"):
            parse_pipeline(_pipeline(_stage("A", dependsOn=["B"]), _stage("B", dependsOn=["A"])))

    def test_condition_stage_names_case_insensitive(self) -> None:
        pipeline = parse_pipeline(
            _pipeline(_stage("Build"), _stage("Deploy", condition="succeededOrFailed('build')"))
        )
        assert pipeline.stages[1].depends_on == ["Build"]

    def test_name_defaults_to_file_stem(self) -> None:
        pipeline = parse_pipeline({"stages": [_stage("A")]}, "pipelines/deploy.yml")
        assert pipeline.name == "deploy"


class TestExecutionOrder:
    def test_dependencies_first(self) -> None:
        stages = [
            Stage(name="Verify", depends_on=["Jit"]),
            Stage(name="Jit", depends_on=["Vm"]),
            Stage(name="Vm"),
        ]
        assert execution_order(stages) == ["Vm", "Jit", "Verify"]

    def test_declaration_order_for_ties(self) -> None:
        stages = [
            Stage(name="Build"),
            Stage(name="Reset", depends_on=["Build"]),
            Stage(name="Jit", depends_on=["Build"]),
        ]
        assert execution_order(stages) == ["Build", "Reset", "Jit"]


class TestLoadPipeline:
    def test_load(self, tmp_path: Path) -> None:
        path = tmp_path / "azure-pipelines.yml"
        path.write_text(yaml.safe_dump(_pipeline(_stage("Build"))))
        assert load_pipeline(path).stages[0].name == "Build"

    def test_missing(self, tmp_path: Path) -> None:
        with pytest.raises(PipelineError, match="not found"):
            load_pipeline(tmp_path / "missing.yml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "azure-pipelines.yml"
        path.write_text("stages: [unclosed")
        with pytest.raises(PipelineError, match="Invalid YAML"):
            load_pipeline(path)


class TestPipelineRun:
    """Tests for stage execution semantics."""

    @pytest.mark.asyncio
    async def test_runs_in_order(self) -> None:
        recorder = Recorder()
        pipeline = parse_pipeline(_pipeline(_stage("Build"), _stage("Deploy")))
        run = PipelineRun(pipeline, recorder.actions("build", "deploy"))

        await run.run()

        assert recorder.calls == ["Build.build", "Deploy.deploy"]
        assert run.succeeded is True
        assert run.result("Deploy") == StageResult.SUCCEEDED

    def test_missing_actions(self) -> None:
        pipeline = parse_pipeline(_pipeline(_stage("Build")))
        with pytest.raises(PipelineError, match="No action registered"):
            PipelineRun(pipeline, {})

    @pytest.mark.asyncio
    async def test_async_actions_awaited(self) -> None:
        seen: list[str] = []

        async def action(context: StepContext) -> None:
            await asyncio.sleep(0)
            seen.append(context.task)

        run = PipelineRun(parse_pipeline(_pipeline(_stage("A"))), {"a": action})
        await run.run()

        assert seen == ["a"]

    @pytest.mark.asyncio
    async def test_failure_skips_dependents_and_continues(self) -> None:
        recorder = Recorder()
        pipeline = parse_pipeline(
            _pipeline(
                _stage("Build"),
                _stage("Deploy", "deploy", "after"),
                _stage("Verify"),
                _stage("Cleanup", condition="always()"),
            )
        )
        run = PipelineRun(
            pipeline,
            recorder.actions("build", "deploy", "after", "verify", "cleanup", failing=("deploy",)),
        )

        records = {r.name: r for r in await run.run()}

        assert records["Deploy"].result == StageResult.FAILED
        assert records["Deploy"].failed_task == "deploy"
        assert records["Deploy"].error == "task exploded"
        assert records["Deploy"].error_type == "RuntimeError"
        # Remaining steps of a failed stage do not run
        assert "Deploy.after" not in recorder.calls
        assert records["Verify"].result == StageResult.SKIPPED
        assert records["Cleanup"].result == StageResult.SUCCEEDED
        assert run.succeeded is False

    @pytest.mark.asyncio
    async def test_skipped_dependency_skips_dependents(self) -> None:
        recorder = Recorder()
        pipeline = parse_pipeline(
            _pipeline(
                _stage("Build"),
                _stage("Deploy", condition="eq(variables['Build.SourceBranch'], 'refs/heads/main')"),
                _stage("Verify"),
            )
        )
        run = PipelineRun(
            pipeline,
            recorder.actions("build", "deploy", "verify"),
            variables={"Build.SourceBranch": "refs/heads/feature"},
        )

        await run.run()

        assert run.result("Deploy") == StageResult.SKIPPED
        assert run.result("Verify") == StageResult.SKIPPED
        # Skipped stages do not fail the run
        assert run.succeeded is True

    @pytest.mark.asyncio
    async def test_variables_flow_between_stages(self) -> None:
        def store(context: StepContext) -> None:
            context.set_variable("secretAction", "rotated")

        def reset(context: StepContext) -> None:
            assert context.get_variable("SECRETACTION") == "rotated"

        pipeline = parse_pipeline(
            _pipeline(
                _stage("Store", "store"),
                _stage("Reset", "reset", condition="eq(variables['secretAction'], 'rotated')"),
            )
        )
        run = PipelineRun(pipeline, {"store": store, "reset": reset})
        await run.run()

        assert run.result("Reset") == StageResult.SUCCEEDED
        assert run.variables["secretAction"] == "rotated"

    @pytest.mark.asyncio
    async def test_run_variables_override_pipeline_variables(self) -> None:
        pipeline = parse_pipeline(
            _pipeline(
                _stage("A", condition="eq(variables['env'], 'prod')"),
                variables={"env": "dev"},
            )
        )
        recorder = Recorder()
        run = PipelineRun(pipeline, recorder.actions("a"), variables={"env": "prod"})
        await run.run()

        assert recorder.calls == ["A.a"]

    @pytest.mark.asyncio
    async def test_condition_error_fails_stage(self) -> None:
        pipeline = parse_pipeline(_pipeline(_stage("A", condition="gt(1, variables['count'])")))
        run = PipelineRun(pipeline, Recorder().actions("a"), variables={"count": "many"})

        records = await run.run()

        assert records[0].result == StageResult.FAILED
        assert "Condition evaluation failed" in (records[0].error or "")

    @pytest.mark.asyncio
    async def test_cancel_skips_remaining_stages(self) -> None:
        run: PipelineRun

        def cancel(context: StepContext) -> None:
            run.cancel()

        pipeline = parse_pipeline(
            _pipeline(_stage("A"), _stage("B"), _stage("C", condition="always()"))
        )
        run = PipelineRun(pipeline, {"a": cancel, "b": Recorder().action, "c": Recorder().action})
        await run.run()

        assert run.result("B") == StageResult.CANCELED
        assert run.result("C") == StageResult.SUCCEEDED
        assert run.succeeded is False

    @pytest.mark.asyncio
    async def test_cancelled_error_propagates(self) -> None:
        async def interrupted(context: StepContext) -> None:
            raise asyncio.CancelledError()

        run = PipelineRun(parse_pipeline(_pipeline(_stage("A"))), {"a": interrupted})

        with pytest.raises(asyncio.CancelledError):
            await run.run()

        assert run.result("A") == StageResult.CANCELED
        assert run.canceled is True

    def test_plan(self) -> None:
        pipeline = parse_pipeline(
            _pipeline(
                _stage("Build"),
                _stage("Deploy", condition="and(succeeded(), eq(variables['branch'], 'main'))"),
                _stage("Verify"),
            )
        )
        actions = Recorder().actions("build", "deploy", "verify")

        on_main = PipelineRun(pipeline, actions, variables={"branch": "main"}).plan()
        on_feature = PipelineRun(pipeline, actions, variables={"branch": "feature"}).plan()

        assert [p.will_run for p in on_main] == [True, True, True]
        assert [p.will_run for p in on_feature] == [True, False, False]
        assert on_main[1].tasks == ["deploy"]

    def test_stage_record_to_dict(self) -> None:
        record = StageRecord(name="Build", result=StageResult.SUCCEEDED)
        data = record.to_dict()

        assert data["stage"] == "Build"
        assert data["result"] == "Succeeded"
        assert data["durationSeconds"] == 0.0
