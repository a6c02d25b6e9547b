from __future__ import annotations

import sys
from dataclasses import replace

import pytest

from matrixci.engine import evaluate, run, trigger_matches
from matrixci.errors import ResolutionError, StepFailure
from matrixci.executors import CancelToken, DryRunExecutor, ShellExecutor, StepOutcome
from matrixci.expr import parse_template
from matrixci.loader import parse_pipeline
from matrixci.model import CANCELLED, FAILURE, SKIPPED, SUCCESS, JobResult, Trigger, TriggerEvent
from matrixci.secrets import MappingSecretProvider, SecretRef

PUSH_MASTER = TriggerEvent("push", branch="master")

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell")


def single(steps, **job):
    body = {"steps": steps}
    body.update(job)
    definition = parse_pipeline({"jobs": {"j": body}})
    return evaluate(definition, PUSH_MASTER)


class TestEvaluate:
    def test_reference_expands_to_seven_instances(self, reference):
        instances = evaluate(reference, PUSH_MASTER, MappingSecretProvider())
        assert [i.key for i in instances] == ["coverage", "lint", "lint", "test", "test", "test", "test"]

    def test_same_inputs_same_instances(self, reference):
        secrets = MappingSecretProvider({"CODECOV_TOKEN": "t"})
        assert evaluate(reference, PUSH_MASTER, secrets) == evaluate(reference, PUSH_MASTER, secrets)

    def test_untriggered_event_gives_nothing(self, reference):
        assert evaluate(reference, TriggerEvent("push", branch="feature/x")) == ()
        assert evaluate(reference, TriggerEvent("schedule")) == ()

    def test_pull_request_on_any_branch(self, reference):
        assert len(evaluate(reference, TriggerEvent("pull_request", branch="feature/x"))) == 7


class TestTriggerMatching:
    def test_branch_globs(self):
        t = Trigger("push", branches=("release/*",))
        assert trigger_matches(t, TriggerEvent("push", branch="release/1.0"))
        assert not trigger_matches(t, TriggerEvent("push", branch="main"))
        assert not trigger_matches(t, TriggerEvent("push"))

    def test_branches_ignore(self):
        t = Trigger("push", branches_ignore=("wip/*",))
        assert not trigger_matches(t, TriggerEvent("push", branch="wip/a"))
        assert trigger_matches(t, TriggerEvent("push", branch="main"))

    def test_paths(self):
        t = Trigger("push", paths=("src/*",))
        assert trigger_matches(t, TriggerEvent("push", changed_files=("README.md", "src/lib.rs")))
        assert not trigger_matches(t, TriggerEvent("push", changed_files=("README.md",)))


class TestRunScenarios:
    def test_lint_format_check_only_where_field_present(self, reference, scripted):
        lint = [i for i in evaluate(reference, PUSH_MASTER) if i.key == "lint"]
        assert len(lint) == 2
        executor = scripted()
        all_features, no_std = (run(i, executor) for i in lint)

        assert all_features.status == SUCCESS
        assert [r.status for r in all_features.steps] == [SUCCESS] * 5
        assert no_std.status == SUCCESS
        assert [r.status for r in no_std.steps] == [SUCCESS, SUCCESS, SKIPPED, SUCCESS, SUCCESS]
        assert "Check formatting" not in executor.names(lint[1].label)
        assert "Check formatting" in executor.names(lint[0].label)

    def test_three_step_lint_job(self, scripted):
        definition = parse_pipeline(
            {
                "jobs": {
                    "lint": {
                        "strategy": {
                            "matrix": {
                                "features": [{"name": "all features", "check_formatting": True}, {"name": "no_std"}]
                            }
                        },
                        "steps": [
                            {"name": "checkout", "uses": "actions/checkout@v2"},
                            {"name": "clippy", "run": "cargo clippy"},
                            {"name": "fmt", "run": "cargo fmt -- --check", "if": "matrix.features.check_formatting"},
                        ],
                    }
                }
            }
        )
        instances = evaluate(definition, PUSH_MASTER)
        assert len(instances) == 2
        executor = scripted()
        results = [run(i, executor) for i in instances]
        assert executor.names(instances[0].label) == ["checkout", "clippy", "fmt"]
        assert executor.names(instances[1].label) == ["checkout", "clippy"]
        assert [r.status for r in results] == [SUCCESS, SUCCESS]
        assert results[1].steps[2].skip is not None

    def test_clippy_args_substituted_per_variant(self, reference, scripted):
        lint = [i for i in evaluate(reference, PUSH_MASTER) if i.key == "lint"]
        executor = scripted()
        run(lint[1], executor)
        clippy = [c for c in executor.calls if c.name == "Run clippy"][0]
        assert clippy.params == {
            "command": "clippy",
            "args": "--no-default-features --manifest-path binrw/Cargo.toml -- -D warnings",
        }
        assert clippy.env["CARGO_TERM_COLOR"] == "always"

    @posix_only
    def test_coverage_upload_skipped_without_token(self, reference, tmp_path):
        (coverage,) = [i for i in evaluate(reference, PUSH_MASTER) if i.key == "coverage"]
        actions = DryRunExecutor()
        result = run(coverage, ShellExecutor(tmp_path, fallback=actions), MappingSecretProvider({}))
        assert result.status == SUCCESS
        assert result.outputs == {"has_codecov": {"result": ""}}
        assert [r.status for r in result.steps] == [SUCCESS] * 4 + [SKIPPED]
        assert "codecov/codecov-action@v1" not in [c.action for c in actions.calls]

    @posix_only
    def test_coverage_upload_with_token(self, reference, tmp_path):
        (coverage,) = [i for i in evaluate(reference, PUSH_MASTER) if i.key == "coverage"]
        actions = DryRunExecutor()
        secrets = MappingSecretProvider({"CODECOV_TOKEN": "s3cr3t"})
        result = run(coverage, ShellExecutor(tmp_path, fallback=actions), secrets)
        assert result.status == SUCCESS
        # the echoed token never reaches the steps context
        assert result.outputs == {"has_codecov": {"result": "***"}}
        upload = actions.calls[-1]
        assert upload.action == "codecov/codecov-action@v1"
        assert upload.params == {"token": SecretRef("CODECOV_TOKEN")}

    def test_coverage_secret_embedded_in_run(self, reference, scripted):
        (coverage,) = [i for i in evaluate(reference, PUSH_MASTER) if i.key == "coverage"]
        executor = scripted({"Determine whether codecov.io secret is available": StepOutcome.success(result="***")})
        run(coverage, executor, MappingSecretProvider({"CODECOV_TOKEN": "s3cr3t"}))
        check = [c for c in executor.calls if c.step.id == "has_codecov"][0]
        assert str(check.run) == "echo '::set-output name=result::***'"
        assert "s3cr3t" not in repr(check)
        assert check.revealed_run() == "echo '::set-output name=result::s3cr3t'"
        assert executor.calls[-1].revealed_params()["token"] == "s3cr3t"

    @posix_only
    def test_empty_token_counts_as_unset(self, reference, tmp_path):
        (coverage,) = [i for i in evaluate(reference, PUSH_MASTER) if i.key == "coverage"]
        actions = DryRunExecutor()
        run(coverage, ShellExecutor(tmp_path, fallback=actions), MappingSecretProvider({"CODECOV_TOKEN": ""}))
        assert "codecov/codecov-action@v1" not in [c.action for c in actions.calls]

    def test_missing_output_compares_as_zero(self, reference, scripted):
        (coverage,) = [i for i in evaluate(reference, PUSH_MASTER) if i.key == "coverage"]
        executor = scripted()
        result = run(coverage, executor, MappingSecretProvider({"CODECOV_TOKEN": "s3cr3t"}))
        assert result.status == SUCCESS
        assert result.steps[-1].status == SKIPPED
        assert "Upload to codecov.io" not in executor.names()

    def test_upload_guarded_on_isset(self, scripted):
        definition = parse_pipeline(
            {
                "jobs": {
                    "coverage": {
                        "name": "Code coverage",
                        "steps": [
                            {"name": "Run tarpaulin", "uses": "actions-rs/tarpaulin@v0.1"},
                            {"name": "Upload to codecov.io", "uses": "codecov/codecov-action@v1",
                             "with": {"token": "${{ secrets.CODECOV_TOKEN }}"}, "if": "isSet(CODECOV_TOKEN)"},
                        ],
                    }
                }
            }
        )
        (coverage,) = evaluate(definition, PUSH_MASTER)
        executor = scripted()
        result = run(coverage, executor, MappingSecretProvider({}))
        assert result.status == SUCCESS
        assert [r.status for r in result.steps] == [SUCCESS, SKIPPED]
        assert executor.names() == ["Run tarpaulin"]

        executor = scripted()
        run(coverage, executor, MappingSecretProvider({"CODECOV_TOKEN": "t"}))
        assert executor.names() == ["Run tarpaulin", "Upload to codecov.io"]

    def test_guarded_step_env_with_absent_field_is_skipped(self, scripted):
        definition = parse_pipeline(
            {
                "jobs": {
                    "lint": {
                        "strategy": {
                            "matrix": {
                                "features": [
                                    {"name": "all", "check_formatting": True, "fmt_args": "--check"},
                                    {"name": "no_std"},
                                ]
                            }
                        },
                        "steps": [
                            {"name": "clippy", "run": "cargo clippy"},
                            {"name": "fmt", "run": "cargo fmt -- $FMT_ARGS",
                             "if": "matrix.features.check_formatting",
                             "env": {"FMT_ARGS": "${{ matrix.features.fmt_args }}"}},
                            {"name": "docs", "run": "cargo doc"},
                        ],
                    }
                }
            }
        )
        all_features, no_std = evaluate(definition, PUSH_MASTER)
        executor = scripted()
        result = run(no_std, executor)
        assert result.status == SUCCESS
        assert [(r.name, r.status) for r in result.steps] == [
            ("clippy", SUCCESS), ("fmt", SKIPPED), ("docs", SUCCESS),
        ]
        run(all_features, executor)
        fmt = [c for c in executor.calls if c.name == "fmt"][0]
        assert fmt.env["FMT_ARGS"] == "--check"

    def test_step_name_sees_own_env(self, scripted):
        (inst,) = single([{"name": "build ${{ env.TARGET }}", "run": "make", "env": {"TARGET": "wasm"}}])
        result = run(inst, scripted())
        assert result.steps[0].name == "build wasm"


class TestRunSemantics:
    def test_fail_fast_within_instance(self, scripted):
        (inst,) = single([{"name": "A", "run": "a"}, {"name": "B", "run": "b"}, {"name": "C", "run": "c"}])
        executor = scripted({"B": StepOutcome.failure("boom")})
        result = run(inst, executor)
        assert result.status == FAILURE
        assert executor.names() == ["A", "B"]
        assert isinstance(result.error, StepFailure)
        assert result.error.step == "B"
        assert result.error.job == "j"

    def test_executor_exception_is_step_failure(self, scripted):
        (inst,) = single([{"name": "A", "run": "a"}, {"name": "B", "run": "b"}])
        executor = scripted(raises={"A": RuntimeError("crash")})
        result = run(inst, executor)
        assert result.status == FAILURE
        assert "RuntimeError: crash" in result.error.message
        assert executor.names() == ["A"]

    def test_outputs_visible_to_later_steps(self, scripted):
        (inst,) = single(
            [
                {"id": "detect", "name": "detect", "run": "x"},
                {"name": "use", "uses": "a@v1", "with": {"v": "${{ steps.detect.outputs.result }}"},
                 "if": "steps.detect.outputs.result == 'yes'"},
            ]
        )
        executor = scripted({"detect": StepOutcome.success(result="yes")})
        result = run(inst, executor)
        assert result.status == SUCCESS
        assert executor.calls[-1].params == {"v": "yes"}
        assert result.outputs == {"detect": {"result": "yes"}}

    def test_skipped_step_produces_no_outputs(self, scripted):
        (inst,) = single(
            [
                {"id": "first", "name": "first", "run": "x"},
                {"id": "second", "name": "second", "run": "y", "if": False},
                {"name": "third", "run": "z", "if": "steps.first.outputs.v == 1 && !steps.second.outputs.v"},
            ]
        )
        executor = scripted({"first": StepOutcome.success(v=1)})
        result = run(inst, executor)
        assert executor.names() == ["first", "third"]
        assert result.outputs == {"first": {"v": 1}}

    def test_absent_field_renders_empty(self, scripted):
        definition = parse_pipeline(
            {
                "jobs": {
                    "j": {
                        "strategy": {"matrix": {"f": [{"name": "a", "extra": "--x"}, {"name": "b"}]}},
                        "steps": [{"name": "build", "uses": "b@v1",
                                   "with": {"args": "build ${{ matrix.f.extra }}", "raw": "${{ matrix.f.extra }}"}},
                                  {"name": "after", "run": "echo ${{ matrix.f.extra }}"}],
                    }
                }
            }
        )
        with_extra, without = evaluate(definition, PUSH_MASTER)
        executor = scripted()
        assert run(with_extra, executor).status == SUCCESS
        result = run(without, executor)
        assert result.status == SUCCESS
        build, after = [c for c in executor.calls if c.instance == without.label]
        assert build.params == {"args": "build ", "raw": ""}
        assert after.run == "echo "

    def test_unresolvable_reference_fails_instance(self, scripted):
        (inst,) = single([{"name": "a", "run": "echo"}, {"name": "b", "run": "echo"}])
        # a hand-made step that slipped past load-time checks
        broken = replace(inst.job.steps[1], params={"x": parse_template("${{ matrix.os }}")})
        inst = replace(inst, job=replace(inst.job, steps=(inst.job.steps[0], broken)))
        executor = scripted()
        result = run(inst, executor)
        assert result.status == FAILURE
        assert isinstance(result.error, ResolutionError)
        assert result.error.reference == "matrix.os"
        assert executor.names() == ["a"]

    def test_every_step_guarded_off_is_skipped_entirely(self, scripted):
        (inst,) = single([{"run": "a", "if": False}, {"run": "b", "if": "false"}])
        result = run(inst, scripted())
        assert result.status == SKIPPED
        assert result.ok

    def test_job_guard(self, scripted):
        (inst,) = single([{"run": "a"}], **{"if": "isSet(DEPLOY_KEY)"})
        executor = scripted()
        result = run(inst, executor)
        assert result.status == SKIPPED
        assert result.steps == []
        assert executor.calls == []

    def test_cancel_before_first_step(self, scripted):
        (inst,) = single([{"run": "a"}, {"run": "b"}])
        token = CancelToken()
        token.cancel()
        executor = scripted()
        result = run(inst, executor, cancel=token)
        assert result.status == CANCELLED
        assert executor.calls == []

    def test_cancel_between_steps(self, scripted):
        (inst,) = single([{"name": "a", "run": "a"}, {"name": "b", "run": "b"}])
        token = CancelToken()

        class CancellingExecutor(scripted):
            def execute(self, step, cancel=None):
                outcome = super().execute(step, cancel)
                token.cancel()
                return outcome

        executor = CancellingExecutor()
        result = run(inst, executor, cancel=token)
        assert result.status == CANCELLED
        assert executor.names() == ["a"]

    def test_step_env_and_rendered_run(self, scripted):
        (inst,) = single(
            [{"name": "echo", "run": "echo ${{ env.GREETING }}", "env": {"GREETING": "hi", "TOKEN": "${{ secrets.T }}"}}]
        )
        executor = scripted()
        run(inst, executor, MappingSecretProvider({"T": "xyz"}))
        call = executor.calls[0]
        assert call.run == "echo hi"
        assert call.revealed_env()["TOKEN"] == "xyz"
        assert str(call.env["TOKEN"]) == "***"


@pytest.mark.parametrize("status", [SUCCESS, SKIPPED])
def test_job_result_ok_statuses(status):
    (inst,) = single([{"run": "a"}])
    assert JobResult(inst, status).ok


@pytest.mark.parametrize("status", [FAILURE, CANCELLED])
def test_job_result_not_ok_statuses(status):
    (inst,) = single([{"run": "a"}])
    assert not JobResult(inst, status).ok
