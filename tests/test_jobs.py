"""Tests for mltproxy.jobs: running derivation requests as subprocesses."""

import subprocess
import sys
from pathlib import Path

import pytest

from mltproxy.actions import FinalizeAction
from mltproxy.errors import ToolNotFoundError
from mltproxy.jobs import SubprocessJobQueue, resolve_tool
from mltproxy.models import DerivationRequest, JobOutcome


class RecordingAction:
    def __init__(self):
        self.outcomes = []

    def on_complete(self, outcome):
        self.outcomes.append(outcome)
        return outcome.success


def _request(code, action=None, output=Path("/tmp/H.pending.mp4")):
    return DerivationRequest(
        resource="/media/a.mov",
        args=("-c", code),
        output_path=output,
        label="Make proxy for a.mov",
        completion_action=action or RecordingAction(),
        program="python",
    )


@pytest.fixture
def python_tool(monkeypatch):
    monkeypatch.setenv("MLTPROXY_PYTHON_PATH", sys.executable)


class TestResolveTool:
    def test_env_override(self, python_tool):
        assert resolve_tool("python") == Path(sys.executable)

    def test_env_override_must_exist(self, monkeypatch, tmp_path):
        monkeypatch.setenv("MLTPROXY_NOPE_PATH", str(tmp_path / "missing"))
        monkeypatch.setattr("shutil.which", lambda name: None)
        with pytest.raises(ToolNotFoundError, match="MLTPROXY_NOPE_PATH"):
            resolve_tool("nope")

    def test_path_lookup(self, monkeypatch):
        monkeypatch.delenv("MLTPROXY_FFMPEG_PATH", raising=False)
        monkeypatch.setattr("shutil.which", lambda name: f"/usr/bin/{name}")
        assert resolve_tool("ffmpeg") == Path("/usr/bin/ffmpeg")


class TestExecute:
    def test_success(self, python_tool):
        outcome = SubprocessJobQueue().execute(_request("pass"))
        assert outcome == JobOutcome(success=True, returncode=0)

    def test_failure_keeps_stderr(self, python_tool):
        code = "import sys; sys.stderr.write('Conversion failed!'); sys.exit(3)"
        outcome = SubprocessJobQueue().execute(_request(code))
        assert not outcome.success
        assert outcome.returncode == 3
        assert outcome.message == "Conversion failed!"

    def test_message_truncated(self, python_tool):
        code = "import sys; sys.stderr.write('x' * 5000 + 'END'); sys.exit(1)"
        outcome = SubprocessJobQueue().execute(_request(code))
        assert len(outcome.message) == 2000
        assert outcome.message.endswith("END")

    def test_missing_tool(self, monkeypatch):
        monkeypatch.delenv("MLTPROXY_PYTHON_PATH", raising=False)
        monkeypatch.setattr("shutil.which", lambda name: None)
        outcome = SubprocessJobQueue().execute(_request("pass"))
        assert not outcome.success
        assert "Tool not found: python" in outcome.message

    def test_timeout(self, python_tool, monkeypatch):
        def fake_run(*args, **kwargs):
            raise subprocess.TimeoutExpired(cmd=args[0], timeout=kwargs["timeout"])

        monkeypatch.setattr("mltproxy.jobs.subprocess.run", fake_run)
        outcome = SubprocessJobQueue(timeout=5).execute(_request("pass"))
        assert not outcome.success
        assert "Timed out" in outcome.message


class TestQueue:
    def test_completion_called_once(self, python_tool):
        action = RecordingAction()
        queue = SubprocessJobQueue(max_workers=2)
        future = queue.add(_request("pass", action))
        queue.shutdown()
        assert len(action.outcomes) == 1
        assert action.outcomes[0].success
        assert future.result() is True

    def test_finalize_after_job(self, python_tool, tmp_path):
        pending = tmp_path / "H.pending.mp4"
        code = f"open({str(pending)!r}, 'wb').write(b'proxy')"
        queue = SubprocessJobQueue()
        queue.add(_request(code, FinalizeAction(pending), pending))
        queue.shutdown()
        assert (tmp_path / "H.mp4").read_bytes() == b"proxy"
        assert not pending.exists()

    def test_failed_job_reported(self, python_tool):
        action = RecordingAction()
        queue = SubprocessJobQueue()
        future = queue.add(_request("raise SystemExit(2)", action))
        queue.shutdown()
        assert action.outcomes[0].returncode == 2
        assert future.result() is False

    def test_undecodable_stderr_still_completes(self, python_tool):
        action = RecordingAction()
        code = r"import sys; sys.stderr.buffer.write(b'\xff\xfe title=caf\xe9\n'); sys.exit(1)"
        queue = SubprocessJobQueue()
        future = queue.add(_request(code, action))
        queue.shutdown()
        assert future.result() is False
        assert len(action.outcomes) == 1
        assert action.outcomes[0].returncode == 1
        assert "title=caf\ufffd" in action.outcomes[0].message

    def test_crashing_execute_still_completes(self, python_tool, monkeypatch):
        def broken_run(*args, **kwargs):
            raise UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")

        monkeypatch.setattr("mltproxy.jobs.subprocess.run", broken_run)
        action = RecordingAction()
        queue = SubprocessJobQueue()
        future = queue.add(_request("pass", action))
        queue.shutdown()
        assert future.result() is False
        assert len(action.outcomes) == 1
        assert "UnicodeDecodeError" in action.outcomes[0].message

    def test_failing_completion_action_logged(self, python_tool, caplog):
        class Broken(RecordingAction):
            def on_complete(self, outcome):
                super().on_complete(outcome)
                raise RuntimeError("boom")

        action = Broken()
        queue = SubprocessJobQueue()
        future = queue.add(_request("pass", action))
        queue.shutdown()
        assert future.result() is False
        assert len(action.outcomes) == 1
        assert "Completion action failed" in caplog.text

    def test_finished_jobs_are_forgotten(self, python_tool):
        queue = SubprocessJobQueue(max_workers=2)
        futures = [queue.add(_request("pass")) for _ in range(3)]
        queue.shutdown()
        assert all(f.done() for f in futures)
        assert queue.futures == set()
