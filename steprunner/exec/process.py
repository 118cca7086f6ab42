"""
Process launching with live output streaming.

A child's stdout and stderr are drained concurrently, one thread per pipe,
so a chatty child can never block on a full pipe while the other is read.
Each line is echoed with a '[source][out]' / '[source][err]' prefix.
"""

import logging
import os
import signal
import subprocess
import sys
import threading
from typing import IO, Dict, List, Optional

from ..exceptions import ExitError, SpawnError, StepTimeoutError

logger = logging.getLogger(__name__)

# How long drain threads may keep reading after a timed out child was killed
DRAIN_GRACE_SEC = 2.0


def stream_output(pipe: IO[str], prefix: str, stream_name: str) -> None:
    """Echo every line of a pipe to the named console stream until EOF."""
    for line in iter(pipe.readline, ''):
        line = line.rstrip('\r\n')
        # Resolved per line so redirected/captured streams are honoured
        target = sys.stdout if stream_name == "out" else sys.stderr
        print(f"[{prefix}][{stream_name}] {line}", file=target, flush=True)
    pipe.close()


def kill_process_group(process: subprocess.Popen) -> None:
    """Kill a child started in its own session together with its descendants."""
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        # Whole group already gone
        process.kill()


def run_and_stream(
    argv: List[str],
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    source: str = "proc",
    timeout_sec: Optional[float] = None,
) -> None:
    """
    Spawn a child process and stream its output until it exits.

    Args:
        argv: Program followed by its arguments
        env: Complete environment for the child (None inherits ours)
        cwd: Working directory (None keeps ours)
        source: Prefix tag for echoed lines
        timeout_sec: Kill the child and its descendants after this many seconds

    Raises:
        SpawnError: The program could not be started
        StepTimeoutError: The child outlived timeout_sec and was killed
        ExitError: The child exited with a non-zero status
    """
    program = argv[0]
    logger.debug(f"Spawning {argv!r} (cwd={cwd or '.'})")

    try:
        process = subprocess.Popen(
            argv,
            cwd=cwd,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors='replace',
            bufsize=1,
            start_new_session=timeout_sec is not None,
        )
    except OSError as e:
        raise SpawnError(program, e) from e

    stdout_thread = threading.Thread(
        target=stream_output,
        args=(process.stdout, source, "out"),
        name=f"{source}-stdout",
    )
    stderr_thread = threading.Thread(
        target=stream_output,
        args=(process.stderr, source, "err"),
        name=f"{source}-stderr",
    )
    stdout_thread.daemon = True
    stderr_thread.daemon = True
    stdout_thread.start()
    stderr_thread.start()

    timed_out = False
    try:
        process.wait(timeout=timeout_sec)
    except subprocess.TimeoutExpired:
        timed_out = True
        logger.warning(f"'{program}' exceeded {timeout_sec}s, killing it")
        kill_process_group(process)
        process.wait()

    # Both pipes must be fully drained before the step counts as finished.
    # After a timeout, a descendant that escaped the kill may hold them open.
    drain_timeout = DRAIN_GRACE_SEC if timed_out else None
    stdout_thread.join(drain_timeout)
    stderr_thread.join(drain_timeout)

    if timed_out:
        raise StepTimeoutError(program, timeout_sec)

    exit_code = process.returncode
    logger.debug(f"'{program}' exited with status {exit_code}")
    if exit_code != 0:
        raise ExitError(program, exit_code)
