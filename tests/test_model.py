import pytest

from jobgraph.dsl import build, job, matrix, on_pull_request, on_push, pipeline, sh, uses
from jobgraph.model import EventKind, RunContext, Status, Step, TriggerRule, short_ref


class TestRunContext:
    def test_string_event_is_coerced(self):
        ctx = RunContext("push", ref="refs/heads/main")
        assert ctx.event is EventKind.PUSH
        assert ctx.branch == "main"

    def test_pull_request(self):
        ctx = RunContext.pull_request("main", head_ref="refs/heads/feature")
        assert ctx.ref == "refs/heads/feature"
        assert ctx.as_dict()["base_ref"] == "main"

    def test_unknown_event(self):
        with pytest.raises(ValueError):
            RunContext("schedule", ref="x")

    def test_short_ref(self):
        assert short_ref("refs/tags/v1") == "v1"
        assert short_ref("abc123") == "abc123"
        assert short_ref(None) is None


class TestTriggers:
    def test_push_branch_globs(self):
        rule = TriggerRule(EventKind.PUSH, ["main", "release/*"])
        assert rule.matches(RunContext.push("refs/heads/release/2.0"))
        assert not rule.matches(RunContext.push("refs/heads/dev"))
        assert not rule.matches(RunContext.pull_request("main"))

    def test_pull_request_matches_base_branch(self):
        rule = TriggerRule(EventKind.PULL_REQUEST, ["main"])
        assert rule.matches(RunContext.pull_request("refs/heads/main", head_ref="refs/heads/x"))
        assert not rule.matches(RunContext.pull_request("develop"))

    def test_pipeline_accepts(self):
        pipe = pipeline("p", job("a", sh("x", "true")), on=[on_push("main"), on_pull_request()])
        assert pipe.accepts(RunContext.push("refs/heads/main"))
        assert pipe.accepts(RunContext.pull_request("anything"))
        assert not pipe.accepts(RunContext.push("refs/heads/dev"))


class TestSteps:
    def test_step_needs_exactly_one_body(self):
        with pytest.raises(ValueError):
            Step(name="x")
        with pytest.raises(ValueError):
            Step(name="x", run="true", uses="a")

    def test_kinds(self):
        assert sh("a", "true").kind == "command"
        assert uses("upload-artifact", inputs={"name": "r"}).kind == "action"

    def test_status_terminal(self):
        assert Status.SKIPPED.terminal
        assert not Status.BLOCKED.terminal


class TestDsl:
    def test_job_defaults_cwd_and_needs(self):
        j = job("t", sh("a", "true"), sh("b", "true", cwd="other"), needs="build", cwd="src")
        assert j.needs == ["build"]
        assert [s.cwd for s in j.steps] == ["src", "other"]

    def test_job_without_steps(self):
        with pytest.raises(ValueError):
            job("empty")

    def test_builder(self):
        j = (
            build("tests")
            .depends_on("lint")
            .when("event == 'push'")
            .with_matrix(os=["linux", "mac"])
            .strategy(fail_fast=False, max_parallel=1)
            .with_env(LEVEL=2)
            .define_step("Test", "make test")
            .use_action("upload-artifact", "Archive", name="report", path="out")
            .timeout_after(30)
            .build()
        )
        assert j.needs == ["lint"]
        assert j.condition == "event == 'push'"
        assert j.matrix.axes == {"os": ["linux", "mac"]}
        assert j.fail_fast is False and j.max_parallel == 1
        assert j.env == {"LEVEL": "2"}
        assert j.steps[1].inputs == {"name": "report", "path": "out"}
        assert j.timeout == 30

    def test_axis_names_include_only_axes(self):
        j = job("t", sh("a", "true"), matrix=matrix(os=["linux"], include=[{"os": "mac", "arch": "arm"}]))
        assert j.axis_names == ["os", "arch"]
