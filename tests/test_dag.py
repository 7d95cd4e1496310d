"""
Instance graph tests: construction, validation, readiness, transitions.

Run with:
    pytest tests/test_dag.py -v
"""

import pytest

from jobgraph.dag import InstanceGraph
from jobgraph.dsl import job, matrix, sh
from jobgraph.errors import ConfigurationError, InvalidTransition
from jobgraph.model import Status


def _job(name, **kw):
    return job(name, sh("noop", "true"), **kw)


class TestConstruction:
    def test_needs_expands_to_every_instance(self):
        g = InstanceGraph([
            _job("tests", matrix=matrix(os=["linux", "mac"], py=["3.11", "3.12"])),
            _job("mutants", needs="tests"),
        ])
        assert len(g) == 5
        assert len(g.dependencies("mutants")) == 4
        assert g.status("mutants") == Status.BLOCKED
        assert g.status("tests (linux, 3.11)") == Status.PENDING

    def test_matching_policy_pairs_by_shared_axes(self):
        g = InstanceGraph([
            _job("build", matrix=matrix(os=["linux", "mac"])),
            _job("test", needs="build", needs_policy="matching", matrix=matrix(os=["linux", "mac"])),
        ])
        assert g.dependencies("test (linux)") == ["build (linux)"]
        assert g.dependencies("test (mac)") == ["build (mac)"]

    def test_missing_dependency(self):
        with pytest.raises(ConfigurationError, match="missing job 'build'"):
            InstanceGraph([_job("test", needs="build")])

    def test_duplicate_names(self):
        with pytest.raises(ConfigurationError, match="duplicate"):
            InstanceGraph([_job("a"), _job("a")])

    def test_unknown_needs_policy(self):
        with pytest.raises(ConfigurationError, match="needs_policy"):
            InstanceGraph([_job("a"), _job("b", needs="a", needs_policy="some")])

    def test_siblings(self):
        g = InstanceGraph([_job("t", matrix=matrix(os=["a", "b", "c"]))])
        assert g.siblings("t (a)") == ["t (b)", "t (c)"]


class TestValidation:
    def test_levels(self):
        g = InstanceGraph([
            _job("a"),
            _job("b", needs="a"),
            _job("c", needs="a"),
            _job("d", needs=["b", "c"]),
        ])
        assert g.levels() == [["a"], ["b", "c"], ["d"]]

    def test_cycle_detected(self):
        g = InstanceGraph([_job("a", needs="b"), _job("b", needs="a"), _job("c")])
        with pytest.raises(ConfigurationError) as exc:
            g.validate()
        assert "cycle" in exc.value.message
        assert exc.value.details["jobs"] == ["a", "b"]

    def test_self_cycle(self):
        g = InstanceGraph([_job("a", needs="a")])
        with pytest.raises(ConfigurationError):
            g.validate()


class TestReadiness:
    def test_ready_after_success(self):
        g = InstanceGraph([_job("a"), _job("b", needs="a")])
        assert g.ready() == ["a"]
        g.transition("a", Status.RUNNING)
        assert g.ready() == []
        g.transition("a", Status.SUCCEEDED)
        assert g.ready() == ["b"]

    def test_failed_dependency_is_unsatisfiable(self):
        g = InstanceGraph([_job("a"), _job("b", needs="a")])
        g.transition("a", Status.RUNNING)
        g.transition("a", Status.FAILED)
        assert g.ready() == []
        assert g.unsatisfiable() == {"b": "a"}

    def test_always_run_ready_once_dependencies_terminal(self):
        g = InstanceGraph([_job("a"), _job("b"), _job("report", needs=["a", "b"], condition="always()")])
        g.transition("a", Status.RUNNING)
        g.transition("a", Status.FAILED)
        assert "report" not in g.ready()
        g.transition("b", Status.SKIPPED)
        assert "report" in g.ready()
        assert g.unsatisfiable() == {}


class TestTransitions:
    def test_listener_sees_every_change(self):
        seen = []
        g = InstanceGraph([_job("a")], listener=lambda k, old, new, r: seen.append((k, old, new, r)))
        g.transition("a", Status.RUNNING)
        g.transition("a", Status.SUCCEEDED, "ok")
        assert seen == [
            ("a", Status.PENDING, Status.RUNNING, None),
            ("a", Status.RUNNING, Status.SUCCEEDED, "ok"),
        ]

    def test_terminal_status_is_final(self):
        g = InstanceGraph([_job("a")])
        g.transition("a", Status.SKIPPED)
        with pytest.raises(InvalidTransition):
            g.transition("a", Status.RUNNING)

    def test_cannot_skip_running_instance(self):
        g = InstanceGraph([_job("a")])
        g.transition("a", Status.RUNNING)
        with pytest.raises(InvalidTransition):
            g.transition("a", Status.SKIPPED)

    def test_all_terminal(self):
        g = InstanceGraph([_job("a"), _job("b", needs="a")])
        g.transition("a", Status.CANCELLED)
        assert not g.all_terminal()
        g.transition("b", Status.CANCELLED)
        assert g.all_terminal()
