# jobgraph_workflow.py
# Pipeline for jobgraph itself: test matrix, a slower suite gated on the
# matrix, and a pull-request-only diff report.
from __future__ import annotations

from jobgraph.dsl import job, matrix, on_pull_request, on_push, pipeline, sh, uses


def build_pipeline():
    return pipeline(
        "jobgraph",
        job(
            "tests",
            sh("Show version", "python --version"),
            sh("Install", "pip install -e '.[test]'"),
            sh("Test", "pytest -q -k '${{ matrix.suite }}'"),
            matrix=matrix(
                python=["3.10", "3.11", "3.12"],
                suite=["not server", "server"],
                exclude=[{"python": "3.10", "suite": "server"}],
            ),
            fail_fast=True,
        ),
        job(
            "slow-tests",
            sh("Full suite", "mkdir -p reports && pytest -q --junitxml=reports/junit.xml"),
            uses("upload-artifact", "Archive results", inputs={"name": "test-report", "path": "reports"}),
            needs="tests",
        ),
        job(
            "pr-diff",
            sh("Relative diff", "git diff origin/${{ base_ref }}.. | tee git.diff"),
            uses(
                "upload-artifact",
                "Archive diff",
                condition="always()",
                inputs={"name": "pr-diff", "path": "git.diff"},
            ),
            condition="event == 'pull_request'",
        ),
        on=[on_push("main"), on_pull_request()],
        env={"CI": "1", "PYTHONDONTWRITEBYTECODE": "1"},
    )
