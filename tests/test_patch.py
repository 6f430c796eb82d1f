import subprocess
import sys
import threading

import pytest

from hdiff_updater import patch
from hdiff_updater.errors import PatchError
from hdiff_updater.patch import HPatchZ
from hdiff_updater.proc import Cancelled, run_quiet


class ScriptedRun:
    """Replaces run_quiet; each call pops the next scripted exit code."""

    def __init__(self, codes, write_output=True):
        self.codes = list(codes)
        self.write_output = write_output
        self.cmds = []

    def __call__(self, cmd, check=True, **kw):
        self.cmds.append(cmd)
        code = self.codes.pop(0)
        if code:
            raise subprocess.CalledProcessError(code, cmd, "", "bad diff\n")
        if self.write_output:
            with open(cmd[3], "wb") as f:
                f.write(b"patched")
        return subprocess.CompletedProcess(cmd, 0, "", "")


def test_command_line(tmp_path, monkeypatch):
    run = ScriptedRun([0])
    monkeypatch.setattr(patch, "run_quiet", run)
    out = tmp_path / "sub" / "a.bin.new"
    HPatchZ("hpatchz").apply(tmp_path / "a.bin", tmp_path / "a.hdiff", out)
    assert run.cmds == [["hpatchz", str(tmp_path / "a.bin"), str(tmp_path / "a.hdiff"), str(out), "-f"]]
    assert out.read_bytes() == b"patched"


def test_no_old_file_passes_empty_path(tmp_path, monkeypatch):
    run = ScriptedRun([0])
    monkeypatch.setattr(patch, "run_quiet", run)
    HPatchZ("hpatchz").apply(None, tmp_path / "a.hdiff", tmp_path / "a.bin.new")
    assert run.cmds[0][1] == ""


def test_failure_carries_stderr(tmp_path, monkeypatch):
    monkeypatch.setattr(patch, "run_quiet", ScriptedRun([1]))
    with pytest.raises(PatchError) as exc:
        HPatchZ("hpatchz").apply(tmp_path / "a", tmp_path / "d", tmp_path / "o")
    assert "exited with 1" in str(exc.value)
    assert exc.value.stderr == "bad diff"


def test_retries(tmp_path, monkeypatch):
    run = ScriptedRun([1, 1, 0])
    monkeypatch.setattr(patch, "run_quiet", run)
    HPatchZ("hpatchz", retries=2).apply(tmp_path / "a", tmp_path / "d", tmp_path / "o")
    assert len(run.cmds) == 3

    run = ScriptedRun([1, 1])
    monkeypatch.setattr(patch, "run_quiet", run)
    with pytest.raises(PatchError):
        HPatchZ("hpatchz", retries=1).apply(tmp_path / "a", tmp_path / "d", tmp_path / "o")
    assert len(run.cmds) == 2


def test_success_without_output_is_an_error(tmp_path, monkeypatch):
    monkeypatch.setattr(patch, "run_quiet", ScriptedRun([0], write_output=False))
    with pytest.raises(PatchError, match="wrote no"):
        HPatchZ("hpatchz").apply(tmp_path / "a", tmp_path / "d", tmp_path / "o")


def test_missing_executable(tmp_path, monkeypatch):
    monkeypatch.setenv("HDIFF_HPATCHZ", str(tmp_path / "does-not-exist"))
    hp = HPatchZ()
    assert hp.executable is None
    with pytest.raises(PatchError, match="not found"):
        hp.apply(tmp_path / "a", tmp_path / "d", tmp_path / "o")


# ----- run_quiet -----


def test_run_quiet_captures_output():
    res = run_quiet([sys.executable, "-c", "import sys; print('out'); print('err', file=sys.stderr)"])
    assert res.returncode == 0
    assert res.stdout.strip() == "out" and res.stderr.strip() == "err"


def test_run_quiet_check():
    with pytest.raises(subprocess.CalledProcessError) as exc:
        run_quiet([sys.executable, "-c", "import sys; sys.exit(3)"])
    assert exc.value.returncode == 3
    assert run_quiet([sys.executable, "-c", "import sys; sys.exit(3)"], check=False).returncode == 3


def test_run_quiet_cancel():
    stop = threading.Event()
    stop.set()
    with pytest.raises(Cancelled):
        run_quiet([sys.executable, "-c", "import time; time.sleep(30)"], cancel_event=stop)
