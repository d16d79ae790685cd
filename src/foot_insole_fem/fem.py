from __future__ import annotations

import json
import logging
import re
import subprocess
import time
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel

from .config import find_febio_bin
from .errors import PipelineError, SolverTimeout
from .types import RunSettings

logger = logging.getLogger(__name__)

NORMAL_TERMINATION = "N O R M A L   T E R M I N A T I O N"
ERROR_TERMINATION = "E R R O R   T E R M I N A T I O N"
_CONVERGED_RE = re.compile(r"converged at time\s*:\s*([-+]?(?:\d+\.\d*|\.\d+|\d+)(?:[Ee][-+]?\d+)?)")

# Waits longer than this are treated as "no limit".
_UNBOUNDED_S = 1e9

JobStatus = Literal["success", "timeout", "partial", "failed"]


class JobRunResult(BaseModel):
    status: JobStatus
    failure_reason: str | None = None
    returncode: int | None = None
    elapsed_ms: int
    normal_termination: bool = False
    error_termination: bool = False
    converged_steps: int = 0
    last_converged_time: float | None = None
    stdout_tail: str = ""
    log_tail: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "success"


def _tail(text: str, *, max_chars: int = 4000) -> str:
    if len(text) <= max_chars:
        return text
    return text[-max_chars:]


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True) + "\n", encoding="utf-8")


def _read_text(path: Path) -> str:
    if not path.exists():
        return ""
    return path.read_text(encoding="utf-8", errors="ignore")


def inspect_log(text: str) -> dict[str, Any]:
    """Termination banners and converged time points found in a FEBio log."""
    times = [float(m.group(1)) for m in _CONVERGED_RE.finditer(text)]
    return {
        "normal_termination": NORMAL_TERMINATION in text,
        "error_termination": ERROR_TERMINATION in text,
        "converged_steps": len(times),
        "last_converged_time": times[-1] if times else None,
    }


def febio_command(febio_bin: str, settings: RunSettings) -> list[str]:
    return [febio_bin, "-i", str(settings.run_filename), "-o", str(settings.run_logname)]


def _classify(*, timed_out: bool, returncode: int | None, log_info: dict[str, Any]) -> tuple[JobStatus, str | None]:
    if timed_out:
        return "timeout", "solver exceeded max_total_wait"
    if log_info["normal_termination"] and not returncode:
        return "success", None
    if log_info["converged_steps"] > 0:
        return "partial", "solver stopped before normal termination"
    if returncode:
        return "failed", f"solver exited with code {returncode}"
    return "failed", "solver log shows no converged step"


def _run_internal(command: list[str], settings: RunSettings, cwd: Path) -> tuple[int | None, bool, str]:
    timeout = None if settings.max_total_wait >= _UNBOUNDED_S else settings.max_total_wait
    try:
        completed = subprocess.run(command, cwd=str(cwd), capture_output=True, text=True, timeout=timeout, check=False)
    except subprocess.TimeoutExpired as e:
        out = e.stdout.decode(errors="ignore") if isinstance(e.stdout, bytes) else (e.stdout or "")
        return None, True, out
    return completed.returncode, False, (completed.stdout or "") + (completed.stderr or "")


def _stop(proc: subprocess.Popen) -> None:
    proc.terminate()
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def _run_external(command: list[str], settings: RunSettings, cwd: Path) -> tuple[int | None, bool, str, str | None]:
    """
    Start the solver detached from our pipes and poll its log every `t_check`
    seconds until it exits or `max_total_wait` elapses.
    """
    stdout_path = settings.run_logname.with_name(settings.run_logname.name + ".stdout")
    start = time.monotonic()
    deadline = start + min(settings.max_total_wait, _UNBOUNDED_S)
    log_deadline = start + settings.max_log_check_time
    offset = 0
    failure: str | None = None
    timed_out = False

    with stdout_path.open("w", encoding="utf-8") as out:
        proc = subprocess.Popen(command, cwd=str(cwd), stdout=out, stderr=subprocess.STDOUT, text=True)
        while proc.poll() is None:
            now = time.monotonic()
            if now >= deadline:
                logger.warning("solver still running after %.1fs; terminating", now - start)
                _stop(proc)
                timed_out = True
                break
            if settings.run_logname.exists():
                if settings.disp_log_on:
                    text = _read_text(settings.run_logname)
                    for line in text[offset:].splitlines():
                        if "converged at time" in line or "TERMINATION" in line:
                            logger.info("febio: %s", line.strip())
                    offset = len(text)
            elif now >= log_deadline:
                logger.error("no solver log after %.1fs; terminating", settings.max_log_check_time)
                _stop(proc)
                failure = f"log file not created within {settings.max_log_check_time}s"
                break
            time.sleep(settings.t_check)

    return proc.returncode, timed_out, _read_text(stdout_path), failure


def run_job(
    settings: RunSettings,
    *,
    febio_bin: str | None = None,
    command: list[str] | None = None,
) -> JobRunResult:
    """
    Run the solver on `settings.run_filename` and report how far it got.
    External process failures are reported in the result, never raised.
    `command` overrides the solver command line (the log path is still taken from settings).
    """
    start = time.perf_counter()

    def elapsed_ms() -> int:
        return int((time.perf_counter() - start) * 1000)

    if not settings.run_filename.exists():
        return JobRunResult(status="failed", failure_reason=f"input file not found: {settings.run_filename}", elapsed_ms=elapsed_ms())
    if command is None:
        febio_bin = febio_bin or find_febio_bin()
        if febio_bin is None:
            return JobRunResult(
                status="failed", failure_reason="febio not found (set FEBIO_BIN or install FEBio)", elapsed_ms=elapsed_ms()
            )
        command = febio_command(febio_bin, settings)

    cwd = settings.run_filename.parent
    settings.run_logname.parent.mkdir(parents=True, exist_ok=True)
    if settings.run_logname.exists():
        settings.run_logname.unlink()
    logger.info("running %s (%s mode)", " ".join(command), settings.run_mode)

    failure: str | None = None
    try:
        if settings.run_mode == "internal":
            returncode, timed_out, output = _run_internal(command, settings, cwd)
        else:
            returncode, timed_out, output, failure = _run_external(command, settings, cwd)
    except OSError as e:
        return JobRunResult(status="failed", failure_reason=f"solver execution OS error: {e}", elapsed_ms=elapsed_ms())

    log_text = _read_text(settings.run_logname)
    log_info = inspect_log(log_text)
    status, reason = _classify(timed_out=timed_out, returncode=returncode, log_info=log_info)
    if failure is not None:
        status, reason = "failed", failure

    if settings.disp_on and output:
        for line in _tail(output, max_chars=1000).splitlines():
            logger.info("febio> %s", line)
    result = JobRunResult(
        status=status,
        failure_reason=reason,
        returncode=returncode,
        elapsed_ms=elapsed_ms(),
        stdout_tail=_tail(output),
        log_tail=_tail(log_text),
        **log_info,
    )
    logger.info("solver %s after %d ms (%d converged steps)", result.status, result.elapsed_ms, result.converged_steps)
    return result


def raise_for_status(result: JobRunResult) -> None:
    """Strict callers: timeout -> SolverTimeout, failed -> PipelineError."""
    if result.status == "timeout":
        raise SolverTimeout(result.failure_reason or "solver timed out", stage="solve")
    if result.status == "failed":
        raise PipelineError(result.failure_reason or "solver failed", stage="solve")
