# hdiff_updater/proc.py
from __future__ import annotations
import logging, os, subprocess, threading, time

logger = logging.getLogger(__name__)

# Windows flags to hide console windows
CREATE_NO_WINDOW = 0x08000000
STARTF_USESHOWWINDOW = 0x00000001
SW_HIDE = 0


class Cancelled(Exception):
    """Raised when a child process is stopped through its cancel event."""
    pass


def _startupinfo_windows():
    if os.name != "nt":
        return None
    si = subprocess.STARTUPINFO()
    si.dwFlags |= STARTF_USESHOWWINDOW
    si.wShowWindow = SW_HIDE
    return si


def _reader(pipe, sink_list):
    try:
        for line in iter(pipe.readline, ''):
            sink_list.append(line)
    finally:
        pipe.close()


def run_quiet(cmd: list[str],
              cwd: str | None = None,
              check: bool = True,
              cancel_event: threading.Event | None = None,
              poll_interval: float = 0.05) -> subprocess.CompletedProcess:
    """
    Spawn a process with NO console window (on Windows) and capture its output.

    With a cancel_event the child is terminated as soon as the event is set and
    Cancelled is raised. Tools whose output must never be half-written (the
    patcher) are run without one.
    """
    logger.debug("run: %s", " ".join(str(c) for c in cmd))
    p = subprocess.Popen(
        [str(c) for c in cmd], cwd=cwd, shell=False,
        stdin=subprocess.DEVNULL, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
        text=True, errors="replace", bufsize=1,
        startupinfo=_startupinfo_windows(),
        creationflags=CREATE_NO_WINDOW if os.name == "nt" else 0,
    )

    out_chunks: list[str] = []
    err_chunks: list[str] = []
    readers = [
        threading.Thread(target=_reader, args=(p.stdout, out_chunks), daemon=True),
        threading.Thread(target=_reader, args=(p.stderr, err_chunks), daemon=True),
    ]
    for t in readers:
        t.start()

    try:
        while p.poll() is None:
            if cancel_event is not None and cancel_event.is_set():
                p.terminate()
                try:
                    p.wait(timeout=2)
                except subprocess.TimeoutExpired:
                    p.kill()
                    p.wait()
                raise Cancelled(" ".join(str(c) for c in cmd[:2]))
            time.sleep(poll_interval)
    finally:
        for t in readers:
            t.join(timeout=1)

    out, err = "".join(out_chunks), "".join(err_chunks)
    if check and p.returncode != 0:
        raise subprocess.CalledProcessError(p.returncode, cmd, out, err)
    return subprocess.CompletedProcess(cmd, p.returncode, out, err)
