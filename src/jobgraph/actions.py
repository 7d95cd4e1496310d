# actions.py
"""
The boundary between the orchestrator and the outside world.

Every step ends up as `invoke(action_id, inputs, env, workdir)` returning
(exit_status, produced_outputs). Command bodies go through ShellInvoker;
named actions are looked up in an ActionRegistry. The core never looks
inside an action.
"""
from __future__ import annotations

import io
import logging
import os
import signal
import subprocess
import tarfile
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .artifacts import Artifact, ArtifactBroker
from .errors import ArtifactConflict, ArtifactNotFound, CancellationRequested, StepFailure, StepTimeout

logger = logging.getLogger(__name__)

EXIT_TIMEOUT = 124
EXIT_UNKNOWN_ACTION = 127
EXIT_CANCELLED = 130
OUTPUT_ENV = "JOBGRAPH_OUTPUT"
_POLL_SECONDS = 0.05


@dataclass
class ActionResult:
    exit_status: int
    outputs: Dict[str, str] = field(default_factory=dict)
    log: str = ""
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


@dataclass
class ActionCall:
    """Everything an action callable is handed."""
    action_id: str
    inputs: Dict[str, str]
    env: Dict[str, str]
    workdir: Path
    run_id: str = ""
    instance_key: str = ""
    broker: ArtifactBroker | None = None
    cancel: threading.Event | None = None
    produced: List[str] = field(default_factory=list)
    consumed: List[str] = field(default_factory=list)

    def publish(self, name: str, payload: bytes, metadata: Optional[Dict[str, str]] = None) -> Artifact:
        if self.broker is None:
            raise RuntimeError("no artifact broker attached")
        art = self.broker.publish(self.run_id, self.instance_key, name, payload, metadata=metadata)
        self.produced.append(name)
        return art

    def fetch(self, name: str) -> Artifact:
        if self.broker is None:
            raise RuntimeError("no artifact broker attached")
        art = self.broker.fetch(self.run_id, name)
        self.consumed.append(name)
        return art


ActionFn = Callable[[ActionCall], Optional[ActionResult]]


def _parse_outputs(text: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for line in text.splitlines():
        if "=" in line:
            k, v = line.split("=", 1)
            out[k.strip()] = v
    return out


def _kill(proc: subprocess.Popen) -> None:
    """Kill the whole process group so grandchildren release the output pipe."""
    if os.name == "posix":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except ProcessLookupError:
            return
    proc.kill()


# ---------------------------------------------------------------------
# Command bodies
# ---------------------------------------------------------------------

class ShellInvoker:
    """Runs command bodies through the shell, honouring timeout and cancellation."""

    def __init__(self, shell: str | None = None, tail: int = 4000):
        self.shell = shell
        self.tail = tail

    def invoke(
        self,
        command: str,
        env: Dict[str, str],
        workdir: Path,
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> ActionResult:
        if not workdir.exists():
            return ActionResult(1, reason=f"working directory not found: {workdir}")

        full_env = os.environ.copy()
        full_env.update(env)
        fd, out_path = tempfile.mkstemp(prefix="jobgraph-out-")
        os.close(fd)
        full_env[OUTPUT_ENV] = out_path

        deadline = None if timeout is None else time.monotonic() + timeout
        try:
            proc = subprocess.Popen(
                command,
                shell=True,
                executable=self.shell,
                cwd=str(workdir),
                env=full_env,
                encoding="utf-8",
                errors="replace",
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=os.name == "posix",
            )
            chunks: List[str] = []
            reason = None
            while True:
                try:
                    out, _ = proc.communicate(timeout=_POLL_SECONDS)
                    chunks.append(out or "")
                    break
                except subprocess.TimeoutExpired:
                    if cancel is not None and cancel.is_set():
                        reason = "cancelled"
                    elif deadline is not None and time.monotonic() >= deadline:
                        reason = "timeout"
                    else:
                        continue
                    _kill(proc)
                    out, _ = proc.communicate()
                    chunks.append(out or "")
                    break

            log = "".join(chunks)[-self.tail:]
            if reason == "timeout":
                return ActionResult(EXIT_TIMEOUT, log=log, reason="timeout")
            if reason == "cancelled":
                return ActionResult(EXIT_CANCELLED, log=log, reason="cancelled")
            outputs = _parse_outputs(Path(out_path).read_text(encoding="utf-8", errors="replace"))
            return ActionResult(proc.returncode, outputs=outputs, log=log)
        finally:
            Path(out_path).unlink(missing_ok=True)


# ---------------------------------------------------------------------
# Named actions
# ---------------------------------------------------------------------

def _normalise(action_id: str) -> List[str]:
    """actions/upload-artifact@v3 -> [exact, without @ref, bare name]"""
    bare = action_id.split("@", 1)[0]
    return list(dict.fromkeys([action_id, bare, bare.rsplit("/", 1)[-1]]))


class ActionRegistry:
    def __init__(self):
        self._actions: Dict[str, ActionFn] = {}

    def register(self, action_id: str, fn: ActionFn | None = None):
        """Register directly or use as a decorator."""
        if fn is None:
            def deco(f: ActionFn) -> ActionFn:
                self._actions[action_id] = f
                return f
            return deco
        self._actions[action_id] = fn
        return fn

    def resolve(self, action_id: str) -> ActionFn | None:
        for candidate in _normalise(action_id):
            if candidate in self._actions:
                return self._actions[candidate]
        return None

    def __contains__(self, action_id: str) -> bool:
        return self.resolve(action_id) is not None

    def invoke(self, call: ActionCall, *, timeout: float | None = None) -> ActionResult:
        fn = self.resolve(call.action_id)
        if fn is None:
            return ActionResult(EXIT_UNKNOWN_ACTION, reason=f"unknown action {call.action_id!r}")

        box: Dict[str, object] = {}

        def _call() -> None:
            try:
                res = fn(call)
                box["result"] = res if res is not None else ActionResult(0)
            except Exception as e:
                box["error"] = e

        # daemon: an action that never returns must not hold up interpreter exit
        worker = threading.Thread(target=_call, name=f"action:{call.action_id}", daemon=True)
        worker.start()
        deadline = None if timeout is None else time.monotonic() + timeout
        while worker.is_alive():
            if call.cancel is not None and call.cancel.is_set():
                return ActionResult(EXIT_CANCELLED, reason="cancelled")
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning("action %s timed out after %ss, abandoning it", call.action_id, timeout)
                return ActionResult(EXIT_TIMEOUT, reason="timeout")
            worker.join(_POLL_SECONDS)

        try:
            if "error" in box:
                raise box["error"]
            return box["result"]
        except CancellationRequested:
            return ActionResult(EXIT_CANCELLED, reason="cancelled")
        except StepTimeout:
            return ActionResult(EXIT_TIMEOUT, reason="timeout")
        except StepFailure as e:
            return ActionResult(e.exit_code or 1, reason=e.reason)
        except (ArtifactConflict, ArtifactNotFound) as e:
            return ActionResult(1, reason=str(e))
        except Exception as e:
            logger.exception("action %s raised", call.action_id)
            return ActionResult(1, reason=f"{type(e).__name__}: {e}")

    @property
    def names(self) -> List[str]:
        return sorted(self._actions)


def upload_artifact(call: ActionCall) -> ActionResult:
    """inputs: name, and either content or path (file, or directory -> tar.gz)."""
    name = call.inputs.get("name") or "artifact"
    if "content" in call.inputs:
        call.publish(name, call.inputs["content"].encode("utf-8"), {"format": "raw"})
        return ActionResult(0, outputs={"artifact": name})

    src = call.workdir / call.inputs.get("path", ".")
    if not src.exists():
        return ActionResult(1, reason=f"nothing to upload at {src}")
    if src.is_file():
        call.publish(name, src.read_bytes(), {"format": "raw", "filename": src.name})
    else:
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w:gz") as tar:
            for f in sorted(src.rglob("*")):
                if f.is_file():
                    tar.add(str(f), arcname=str(f.relative_to(src)).replace("\\", "/"), recursive=False)
        call.publish(name, buf.getvalue(), {"format": "tar.gz"})
    return ActionResult(0, outputs={"artifact": name})


def download_artifact(call: ActionCall) -> ActionResult:
    """inputs: name, path (destination directory; defaults to workdir)."""
    name = call.inputs.get("name", "")
    art = call.fetch(name)
    dest = call.workdir / call.inputs.get("path", ".")
    dest.mkdir(parents=True, exist_ok=True)
    if art.metadata.get("format") == "tar.gz":
        with tarfile.open(fileobj=io.BytesIO(art.payload), mode="r:gz") as tar:
            tar.extractall(path=str(dest), filter="data")
        target = dest
    else:
        target = dest / art.metadata.get("filename", name)
        target.write_bytes(art.payload)
    return ActionResult(0, outputs={"download-path": str(target)})


def default_registry() -> ActionRegistry:
    reg = ActionRegistry()
    reg.register("upload-artifact", upload_artifact)
    reg.register("download-artifact", download_artifact)
    return reg
