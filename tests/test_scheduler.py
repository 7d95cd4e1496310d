"""
Scheduling tests: dependency propagation, always-run jobs, fail-fast,
timeouts, cancellation and the push / pull_request split.

Every job runs real (tiny) shell commands in a temporary directory.

Run with:
    pytest tests/test_scheduler.py -v
"""

import threading

import pytest

from jobgraph.dsl import job, matrix, on_pull_request, on_push, pipeline, sh, uses
from jobgraph.model import RunStatus, Status


def _statuses(run):
    return {k: i.status for k, i in run.instances.items()}


class TestPropagation:
    def test_default_and_always_dependents(self, run_pipeline):
        pipe = pipeline(
            "p",
            job("A", sh("ok", "true")),
            job("B", sh("fail", "exit 1")),
            job("C", sh("never", "true"), needs=["A", "B"]),
            job("D", sh("report", "true"), needs=["A", "B"], condition="always()"),
        )
        run = run_pipeline(pipe)

        assert _statuses(run) == {
            "A": Status.SUCCEEDED,
            "B": Status.FAILED,
            "C": Status.SKIPPED,
            "D": Status.SUCCEEDED,
        }
        assert run.instances["C"].reason == "dependency B failed"
        assert run.status == RunStatus.FAILED

    def test_skips_cascade(self, run_pipeline):
        pipe = pipeline(
            "p",
            job("a", sh("fail", "false")),
            job("b", sh("x", "true"), needs="a"),
            job("c", sh("x", "true"), needs="b"),
        )
        run = run_pipeline(pipe)
        assert run.instances["b"].status == Status.SKIPPED
        assert run.instances["c"].status == Status.SKIPPED
        assert run.instances["c"].reason == "dependency b skipped"

    def test_failure_condition_runs_only_after_failure(self, run_pipeline):
        pipe = pipeline(
            "p",
            job("a", sh("ok", "true")),
            job("notify", sh("x", "true"), needs="a", condition="failure()"),
        )
        run = run_pipeline(pipe)
        assert run.instances["notify"].status == Status.SKIPPED
        assert run.status == RunStatus.SUCCEEDED

    def test_all_succeed(self, run_pipeline):
        pipe = pipeline(
            "p",
            job("tests", sh("t", "true"), matrix=matrix(os=["linux", "mac"])),
            job("deploy", sh("d", "true"), needs="tests"),
        )
        run = run_pipeline(pipe)
        assert set(_statuses(run).values()) == {Status.SUCCEEDED}
        assert run.status == RunStatus.SUCCEEDED
        assert run.finished_at is not None

    def test_dependent_starts_after_dependency_finished(self, run_pipeline):
        pipe = pipeline(
            "p",
            job("a", sh("slow", "sleep 0.2")),
            job("b", sh("x", "true"), needs="a"),
        )
        run = run_pipeline(pipe)
        assert run.instances["b"].started_at >= run.instances["a"].finished_at

    def test_status_events_recorded(self, run_pipeline):
        run = run_pipeline(pipeline("p", job("a", sh("ok", "true"))))
        run_level = [(e.old, e.new) for e in run.events if e.key is None]
        assert run_level == [("pending", "running"), ("running", "succeeded")]
        assert [(e.old, e.new) for e in run.events if e.key == "a"] == [
            ("pending", "running"),
            ("running", "succeeded"),
        ]


class TestConditions:
    def test_context_condition_pre_skips(self, run_pipeline):
        pipe = pipeline(
            "p",
            job("pr-only", sh("x", "true"), condition="event == 'pull_request'"),
            job("after", sh("x", "true"), needs="pr-only"),
        )
        run = run_pipeline(pipe)
        assert run.instances["pr-only"].status == Status.SKIPPED
        assert run.instances["pr-only"].reason == "condition false"
        assert run.instances["after"].status == Status.SKIPPED
        assert run.status == RunStatus.SUCCEEDED

    def test_matrix_condition(self, run_pipeline):
        pipe = pipeline(
            "p",
            job(
                "t",
                sh("x", "true"),
                matrix=matrix(os=["linux", "windows"]),
                condition="matrix.os != 'windows'",
            ),
        )
        run = run_pipeline(pipe)
        assert run.instances["t (linux)"].status == Status.SUCCEEDED
        assert run.instances["t (windows)"].status == Status.SKIPPED

    @pytest.fixture
    def build_and_mutants(self):
        return pipeline(
            "p",
            job("build", sh("b", "sleep 0.1")),
            job("mutants", sh("m", "true"), needs="build", condition="event == 'pull_request'"),
        )

    def test_mutants_waits_for_build_on_pull_request(self, run_pipeline, build_and_mutants, pr_to_main):
        run = run_pipeline(build_and_mutants, pr_to_main)
        blocked = [e for e in run.events if e.key == "mutants"]
        assert blocked[0].old == "blocked"
        assert run.instances["mutants"].status == Status.SUCCEEDED
        assert run.instances["mutants"].started_at >= run.instances["build"].finished_at

    def test_mutants_skipped_on_push(self, run_pipeline, build_and_mutants):
        run = run_pipeline(build_and_mutants)
        assert run.instances["build"].status == Status.SUCCEEDED
        assert run.instances["mutants"].status == Status.SKIPPED
        assert run.instances["mutants"].reason == "condition false"

    def test_condition_error_fails_closed(self, run_pipeline):
        pipe = pipeline("p", job("a", sh("x", "true"), condition="github.event_name == 'push'"))
        run = run_pipeline(pipe)
        assert run.instances["a"].status == Status.SKIPPED
        assert run.instances["a"].reason.startswith("condition error")


class TestFailFast:
    def test_run_fail_fast_cancels_waiting_and_lets_running_finish(self, run_pipeline):
        # X fails while Y still waits for a worker slot and Z is running
        pipe = pipeline(
            "p",
            job("Z", sh("slow", "sleep 0.5")),
            job("X", sh("fail", "exit 1")),
            job("Y", sh("x", "true")),
        )
        run = run_pipeline(pipe, fail_fast=True, max_workers=2)

        assert run.instances["X"].status == Status.FAILED
        assert run.instances["Y"].status == Status.CANCELLED
        assert run.instances["Y"].started_at is None
        assert "fail-fast" in run.instances["Y"].reason
        assert run.instances["Z"].status == Status.SUCCEEDED
        assert run.status == RunStatus.FAILED

    def test_without_fail_fast_independent_jobs_continue(self, run_pipeline):
        pipe = pipeline(
            "p",
            job("X", sh("fail", "exit 1")),
            job("Y", sh("slow", "sleep 0.2")),
            job("Z", sh("x", "true"), needs="Y"),
        )
        run = run_pipeline(pipe)
        assert run.instances["Z"].status == Status.SUCCEEDED
        assert run.status == RunStatus.FAILED

    def test_template_fail_fast_cancels_pending_siblings(self, run_pipeline):
        pipe = pipeline(
            "p",
            job(
                "t",
                sh("x", "test ${{ matrix.n }} -ne 1"),
                matrix=matrix(n=[1, 2, 3]),
                max_parallel=1,
            ),
        )
        run = run_pipeline(pipe)
        assert run.instances["t (1)"].status == Status.FAILED
        assert run.instances["t (2)"].status == Status.CANCELLED
        assert run.instances["t (3)"].status == Status.CANCELLED

    def test_template_fail_fast_signals_running_siblings(self, run_pipeline):
        pipe = pipeline(
            "p",
            job(
                "t",
                sh("x", "if [ ${{ matrix.n }} = 1 ]; then exit 1; else sleep 5; fi"),
                matrix=matrix(n=[1, 2]),
            ),
        )
        run = run_pipeline(pipe)
        assert run.instances["t (1)"].status == Status.FAILED
        assert run.instances["t (2)"].status == Status.CANCELLED
        assert run.instances["t (2)"].reason == "fail-fast: t (1) failed"

    def test_template_fail_fast_disabled(self, run_pipeline):
        pipe = pipeline(
            "p",
            job(
                "t",
                sh("x", "test ${{ matrix.n }} -ne 1"),
                matrix=matrix(n=[1, 2, 3]),
                max_parallel=1,
                fail_fast=False,
            ),
        )
        run = run_pipeline(pipe)
        assert run.instances["t (1)"].status == Status.FAILED
        assert run.instances["t (2)"].status == Status.SUCCEEDED
        assert run.instances["t (3)"].status == Status.SUCCEEDED


class TestConcurrency:
    def test_max_parallel(self, engine, push_main):
        running = {"now": 0, "peak": 0}

        def observer(event):
            if event.key is None:
                return
            if event.new == "running":
                running["now"] += 1
                running["peak"] = max(running["peak"], running["now"])
            elif event.old == "running":
                running["now"] -= 1

        engine.add_observer(observer)
        pipe = pipeline("p", job("t", sh("x", "sleep 0.1"), matrix=matrix(n=[1, 2, 3]), max_parallel=1))
        run = engine.run(pipe, push_main)
        assert run.status == RunStatus.SUCCEEDED
        assert running["peak"] == 1

    def test_max_workers(self, engine, push_main):
        running = {"now": 0, "peak": 0}

        def observer(event):
            if event.key is None:
                return
            if event.new == "running":
                running["now"] += 1
                running["peak"] = max(running["peak"], running["now"])
            elif event.old == "running":
                running["now"] -= 1

        engine.add_observer(observer)
        pipe = pipeline("p", *[job(f"j{i}", sh("x", "sleep 0.1")) for i in range(4)])
        engine.run(pipe, push_main, max_workers=2)
        assert running["peak"] == 2


class TestTimeouts:
    def test_job_timeout(self, run_pipeline):
        pipe = pipeline("p", job("slow", sh("x", "sleep 5"), timeout=0.3))
        run = run_pipeline(pipe)
        assert run.instances["slow"].status == Status.FAILED
        assert run.instances["slow"].reason == "timeout"

    def test_step_timeout(self, run_pipeline):
        pipe = pipeline("p", job("slow", sh("x", "sleep 5", timeout=0.3)))
        run = run_pipeline(pipe)
        assert run.instances["slow"].status == Status.FAILED
        assert run.instances["slow"].steps[0].exit_code == 124

    def test_run_timeout(self, run_pipeline):
        pipe = pipeline(
            "p",
            job("slow", sh("x", "sleep 5")),
            job("next", sh("x", "true"), needs="slow"),
        )
        run = run_pipeline(pipe, timeout=0.3)
        assert run.instances["slow"].status == Status.FAILED
        assert run.instances["slow"].reason == "timeout"
        assert run.instances["next"].status == Status.CANCELLED
        assert run.instances["next"].reason == "run timeout"
        assert run.status == RunStatus.FAILED


class TestCancellation:
    def test_cancel_running_run(self, engine, push_main):
        pipe = pipeline(
            "p",
            job("slow", sh("x", "sleep 5")),
            job("next", sh("x", "true"), needs="slow"),
        )
        run = engine.trigger(pipe, push_main)
        timer = threading.Timer(0.3, engine.cancel, [run.id])
        timer.start()
        try:
            engine.execute(run)
        finally:
            timer.cancel()

        assert run.instances["slow"].status == Status.CANCELLED
        assert run.instances["next"].status == Status.CANCELLED
        assert run.status == RunStatus.CANCELLED

    def test_cancel_before_execution(self, engine, push_main):
        pipe = pipeline("p", job("a", sh("x", "true")), job("b", sh("x", "true"), needs="a"))
        run = engine.trigger(pipe, push_main)
        assert engine.cancel(run.id) is True
        assert run.status == RunStatus.CANCELLED
        assert set(_statuses(run).values()) == {Status.CANCELLED}
        # nothing left to execute
        assert engine.execute(run) is run
        assert engine.cancel(run.id) is False

    def test_cancel_unknown_run(self, engine):
        assert engine.cancel("nope") is False

    def test_cancel_during_cleanup_keeps_earlier_failure(self, engine, push_main):
        pipe = pipeline(
            "p",
            job(
                "a",
                sh("build", "exit 1"),
                sh("cleanup", "sleep 5", condition="always()"),
            ),
        )
        run = engine.trigger(pipe, push_main)
        timer = threading.Timer(0.5, engine.cancel, [run.id])
        timer.start()
        try:
            engine.execute(run)
        finally:
            timer.cancel()

        steps = run.instances["a"].steps
        assert [s.status for s in steps] == [Status.FAILED, Status.CANCELLED]
        assert run.instances["a"].status == Status.FAILED
        assert run.status == RunStatus.FAILED

    def test_cancel_racing_execution_settles_consistently(self, engine, push_main):
        pipe = pipeline("p", job("a", sh("x", "true")), job("b", sh("x", "true"), needs="a"))
        for _ in range(20):
            run = engine.trigger(pipe, push_main)
            errors = []

            def _execute():
                try:
                    engine.execute(run)
                except Exception as e:
                    errors.append(e)

            worker = threading.Thread(target=_execute)
            worker.start()
            engine.cancel(run.id)
            worker.join(timeout=10)

            assert not worker.is_alive()
            assert errors == []
            assert run.terminal
            assert all(i.status.terminal for i in run.instances.values())


class TestSteps:
    def test_steps_stop_after_failure_but_always_steps_run(self, run_pipeline, tmp_path):
        pipe = pipeline(
            "p",
            job(
                "a",
                sh("A", "true"),
                sh("B", "exit 3"),
                sh("C", "touch skipped.txt"),
                sh("D", "touch cleanup.txt", condition="always()"),
            ),
        )
        run = run_pipeline(pipe)
        steps = run.instances["a"].steps
        assert [s.status for s in steps] == [Status.SUCCEEDED, Status.FAILED, Status.SKIPPED, Status.SUCCEEDED]
        assert steps[1].exit_code == 3
        assert (tmp_path / "cleanup.txt").exists()
        assert not (tmp_path / "skipped.txt").exists()
        assert run.instances["a"].status == Status.FAILED

    def test_binary_output_does_not_fail_step(self, run_pipeline):
        pipe = pipeline(
            "p",
            job("bin", sh("emit", "printf '\\377\\376ok'"), sh("after", "true", condition="always()")),
        )
        run = run_pipeline(pipe)
        inst = run.instances["bin"]
        assert inst.status == Status.SUCCEEDED
        assert [s.status for s in inst.steps] == [Status.SUCCEEDED, Status.SUCCEEDED]

    def test_continue_on_error(self, run_pipeline):
        pipe = pipeline(
            "p",
            job("a", sh("flaky", "exit 1", continue_on_error=True), sh("next", "true")),
        )
        run = run_pipeline(pipe)
        steps = run.instances["a"].steps
        assert steps[0].status == Status.FAILED and steps[0].tolerated
        assert steps[1].status == Status.SUCCEEDED
        assert run.instances["a"].status == Status.SUCCEEDED

    def test_outputs_and_env(self, run_pipeline):
        pipe = pipeline(
            "p",
            job(
                "a",
                sh("emit", 'echo "os=$MATRIX_OS-$GREETING" >> "$JOBGRAPH_OUTPUT"'),
                matrix=matrix(os=["linux"]),
                env={"GREETING": "hi"},
            ),
        )
        run = run_pipeline(pipe)
        assert run.instances["a (linux)"].steps[0].outputs == {"os": "linux-hi"}

    def test_step_cwd(self, run_pipeline, tmp_path):
        (tmp_path / "sub").mkdir()
        pipe = pipeline("p", job("a", sh("x", "touch here.txt", cwd="sub")))
        run = run_pipeline(pipe)
        assert run.status == RunStatus.SUCCEEDED
        assert (tmp_path / "sub" / "here.txt").exists()

    def test_unknown_action_fails_step(self, run_pipeline):
        pipe = pipeline("p", job("a", uses("actions/checkout@v3")))
        run = run_pipeline(pipe)
        assert run.instances["a"].status == Status.FAILED
        assert run.instances["a"].steps[0].exit_code == 127


class TestTriggers:
    @pytest.fixture
    def rust_like(self):
        return pipeline(
            "rust",
            job(
                "tests",
                sh("Test", "echo --features=${{ matrix.features }}"),
                matrix=matrix(os=["ubuntu-latest", "macOS-latest"], features=["", "s3"]),
            ),
            job(
                "cargo-mutants",
                sh("Run", "mkdir -p mutants.out && echo caught > mutants.out/outcomes.txt"),
                uses("upload-artifact", "Archive", inputs={"name": "mutation-report", "path": "mutants.out"}),
                needs="tests",
            ),
            job(
                "pr-mutants",
                sh("Diff", "echo diff against ${{ base_ref }} > git.diff"),
                uses(
                    "upload-artifact",
                    "Archive diff",
                    condition="always()",
                    inputs={"name": "mutants-incremental.out", "path": "git.diff"},
                ),
                condition="event == 'pull_request'",
            ),
            on=[on_push("main"), on_pull_request()],
        )

    def test_push_to_main(self, rust_like, run_pipeline, engine, push_main):
        run = run_pipeline(rust_like, push_main)

        assert len(run.instances) == 6
        assert run.instances["pr-mutants"].status == Status.SKIPPED
        assert run.instances["cargo-mutants"].status == Status.SUCCEEDED
        assert run.instances["cargo-mutants"].produced == ["mutation-report"]
        assert run.status == RunStatus.SUCCEEDED
        art = engine.broker.fetch(run.id, "mutation-report")
        assert art.producer == "cargo-mutants"
        assert art.metadata["format"] == "tar.gz"

    def test_pull_request(self, rust_like, run_pipeline, engine, pr_to_main):
        run = run_pipeline(rust_like, pr_to_main)

        assert run.instances["pr-mutants"].status == Status.SUCCEEDED
        art = engine.broker.fetch(run.id, "mutants-incremental.out")
        assert art.payload == b"diff against main\n"

    def test_push_to_other_branch_is_ignored(self, rust_like, engine):
        from jobgraph.model import RunContext

        assert engine.run(rust_like, RunContext.push("refs/heads/dev")) is None
        assert engine.runs == {}


class TestConfigurationErrors:
    def test_missing_dependency_fails_run_without_instances(self, engine, push_main):
        pipe = pipeline("p", job("b", sh("x", "true"), needs="a"))
        run = engine.run(pipe, push_main)
        assert run.status == RunStatus.FAILED
        assert run.instances == {}
        assert "missing job 'a'" in run.error

    def test_cycle_marks_instances_invalid(self, engine, push_main, tmp_path):
        pipe = pipeline(
            "p",
            job("a", sh("x", "touch ran.txt"), needs="b"),
            job("b", sh("x", "touch ran.txt"), needs="a"),
        )
        run = engine.run(pipe, push_main)
        assert run.status == RunStatus.FAILED
        assert {i.status for i in run.instances.values()} == {Status.BLOCKED}
        assert run.instances["a"].reason == "invalid: dependency cycle"
        assert not (tmp_path / "ran.txt").exists()

    def test_bad_matrix_fails_run(self, engine, push_main):
        pipe = pipeline("p", job("t", sh("x", "true"), matrix=matrix(os=["a"], exclude=[{"arch": "x"}])))
        run = engine.run(pipe, push_main)
        assert run.status == RunStatus.FAILED
        assert "malformed matrix exclude" in run.error


class TestPlan:
    def test_plan_reports_levels_and_skips(self, engine, push_main):
        pipe = pipeline(
            "p",
            job("tests", sh("t", "true"), matrix=matrix(os=["a", "b"])),
            job("mutants", sh("m", "true"), needs="tests"),
            job("pr", sh("p", "true"), condition="event == 'pull_request'"),
        )
        result = engine.plan(pipe, push_main)
        assert result.levels == [["tests (a)", "tests (b)", "pr"], ["mutants"]]
        assert result.skipped == {"pr": "condition false"}
        assert result.run.id not in engine.runs
