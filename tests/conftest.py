import pytest

from jobgraph.artifacts import ArtifactBroker, MemoryArtifactStore
from jobgraph.config import Settings
from jobgraph.engine import Engine
from jobgraph.model import RunContext
from jobgraph.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    set_console(Console(quiet=True))
    yield


@pytest.fixture
def settings(tmp_path):
    return Settings(max_workers=4, workdir=str(tmp_path))


@pytest.fixture
def broker():
    return ArtifactBroker(MemoryArtifactStore())


@pytest.fixture
def engine(settings, broker):
    return Engine(settings, broker=broker)


@pytest.fixture
def push_main():
    return RunContext.push("refs/heads/main", sha="deadbeef")


@pytest.fixture
def pr_to_main():
    return RunContext.pull_request("main", head_ref="refs/heads/feature/x", sha="cafef00d")


@pytest.fixture
def run_pipeline(engine, push_main):
    """Trigger + execute; returns the finished Run."""
    def _run(pipe, context=None, **kwargs):
        run = engine.run(pipe, context or push_main, **kwargs)
        assert run is not None, "pipeline was not triggered"
        return run
    return _run
