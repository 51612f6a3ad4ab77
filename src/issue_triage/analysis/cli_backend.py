"""Subprocess-based analysis capability for CLI agents."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import tempfile
import time
from collections.abc import Iterator
from pathlib import Path

from issue_triage.analysis.base import (
    PROGRESS_KIND,
    RESULT_KIND,
    SUCCESS_SUBTYPE,
    AgentMessage,
    AnalysisError,
    AnalysisOptions,
)

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 0.1
TIMEOUT_EXIT_CODE = 124
_STDERR_TAIL_CHARS = 2_000


class CliAgentCapability:
    """Run an agent CLI from a command template and stream its stdout.

    Each stdout line becomes a ``progress`` message. The terminal message
    carries the whole stdout as the result when the process exits with 0 and
    printed something; otherwise it is an error result.
    """

    def __init__(self, *, name: str, command_template: str) -> None:
        self.name = name
        self.command_template = command_template

    def invoke(self, prompt: str, options: AnalysisOptions) -> Iterator[AgentMessage]:
        with tempfile.TemporaryDirectory(prefix=f"issue-triage-{self.name}-") as scratch:
            scratch_dir = Path(scratch)
            prompt_file = scratch_dir / "prompt.txt"
            prompt_file.write_text(prompt, "utf-8")
            run_args = build_run_args(
                command_template=self.command_template,
                prompt=prompt,
                prompt_file=prompt_file,
                max_steps=options.max_steps,
            )
            env = os.environ.copy()
            env["ISSUE_TRIAGE_AGENT"] = self.name
            yield from _stream_subprocess(
                run_args=run_args,
                env=env,
                cwd=options.working_directory,
                timeout_seconds=options.timeout_seconds,
                stdout_path=scratch_dir / "stdout.txt",
                stderr_path=scratch_dir / "stderr.txt",
            )


def build_run_args(
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    max_steps: int,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise AnalysisError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise AnalysisError(
            "Agent command template must include {prompt} or {prompt_file}.",
            transient=False,
        )
    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            max_steps=int(max_steps),
        )
    except (KeyError, IndexError) as error:
        raise AnalysisError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise AnalysisError("Agent command template rendered empty command.", transient=False)
    return argv


def _stream_subprocess(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    cwd: Path,
    timeout_seconds: int,
    stdout_path: Path,
    stderr_path: Path,
) -> Iterator[AgentMessage]:
    with (
        stdout_path.open("w", encoding="utf-8") as stdout_handle,
        stderr_path.open("w", encoding="utf-8") as stderr_handle,
    ):
        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                cwd=str(cwd),
                env=env,
                stdout=stdout_handle,
                stderr=stderr_handle,
                stdin=subprocess.DEVNULL,
                text=True,
            )
        except FileNotFoundError as error:
            raise AnalysisError(
                f"Agent command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise AnalysisError(f"Agent failed to start: {error}", transient=True) from error

    start_monotonic = time.monotonic()
    offset = 0
    pending = ""
    returncode: int | None = None
    try:
        with stdout_path.open("r", encoding="utf-8", errors="replace") as reader:
            while True:
                returncode = process.poll()
                chunk = reader.read()
                if chunk:
                    offset += len(chunk)
                    pending += chunk
                    *lines, pending = pending.split("\n")
                    for line in lines:
                        yield AgentMessage(kind=PROGRESS_KIND, details={"line": line})
                if returncode is not None:
                    break
                if time.monotonic() - start_monotonic >= timeout_seconds:
                    _terminate_process(process)
                    returncode = TIMEOUT_EXIT_CODE
                    yield AgentMessage(
                        kind=RESULT_KIND,
                        subtype="error_timeout",
                        details={
                            "exit_code": returncode,
                            "timed_out": True,
                            "timeout_seconds": timeout_seconds,
                        },
                    )
                    return
                time.sleep(POLL_INTERVAL_SECONDS)
    finally:
        if process.poll() is None:
            _terminate_process(process)

    if pending:
        yield AgentMessage(kind=PROGRESS_KIND, details={"line": pending})

    output = stdout_path.read_text("utf-8", errors="replace").strip()
    if returncode == 0 and output:
        yield AgentMessage(
            kind=RESULT_KIND,
            subtype=SUCCESS_SUBTYPE,
            result=output,
            details={"exit_code": 0, "output_chars": offset},
        )
        return

    stderr_tail = stderr_path.read_text("utf-8", errors="replace")[-_STDERR_TAIL_CHARS:]
    logger.debug("Agent exited with %s; stderr tail: %s", returncode, stderr_tail)
    yield AgentMessage(
        kind=RESULT_KIND,
        subtype="error_exit" if returncode != 0 else "error_empty_output",
        details={"exit_code": returncode, "stderr": stderr_tail.strip()},
    )


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
