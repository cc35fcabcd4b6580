import os
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional, Sequence


class ExecutorError(RuntimeError):
    """Raised when executor fails to run a command."""


class ExecutorTimeoutError(ExecutorError):
    """Raised when a command runs past its timeout."""


@dataclass
class ExecResult:
    command: List[str]
    returncode: int
    stdout: str
    stderr: str
    elapsed_seconds: float

    def write_logs(self, log_dir: Path, stem: str) -> None:
        log_dir.mkdir(parents=True, exist_ok=True)
        (log_dir / f"{stem}.stdout.log").write_text(self.stdout, encoding="utf-8")
        (log_dir / f"{stem}.stderr.log").write_text(self.stderr, encoding="utf-8")


def _decode_bytes(b: Optional[bytes]) -> str:
    if b is None:
        return ""
    if isinstance(b, str):
        return b
    return b.decode("utf-8", errors="replace")


def format_command(args: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(x)) for x in args)


class BaseExecutor:
    """Abstract executor interface."""

    def run(
        self,
        args: Sequence[str],
        *,
        env_name: Optional[str] = None,
        cwd: Optional[str] = None,
        capture_output: bool = True,
        check: bool = True,
        extra_env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> ExecResult:
        raise NotImplementedError


class LocalExecutor(BaseExecutor):
    """Runs collaborator tools on the current machine, optionally inside a conda env."""

    def __init__(self, conda_executable: Optional[str] = None) -> None:
        self.conda_exec = conda_executable or "conda"

    def _build_command(self, args: Sequence[str], env_name: Optional[str]) -> List[str]:
        if env_name:
            return [
                self.conda_exec,
                "run",
                "-n",
                env_name,
                *[str(a) for a in args],
            ]
        return [str(a) for a in args]

    def run(
        self,
        args: Sequence[str],
        *,
        env_name: Optional[str] = None,
        cwd: Optional[str] = None,
        capture_output: bool = True,
        check: bool = True,
        extra_env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> ExecResult:
        full_cmd = self._build_command(args, env_name)
        process_env = os.environ.copy()
        if extra_env:
            process_env.update(extra_env)

        start = time.monotonic()
        try:
            completed = subprocess.run(
                full_cmd,
                cwd=cwd,
                capture_output=capture_output,
                text=False,
                env=process_env,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            missing = full_cmd[0] if full_cmd else "<unknown>"
            raise ExecutorError(f"Executable not found: {missing}") from exc
        except subprocess.TimeoutExpired as exc:
            raise ExecutorTimeoutError(
                f"Command timed out after {timeout}s: {format_command(full_cmd)}"
            ) from exc
        elapsed = time.monotonic() - start

        stdout = _decode_bytes(completed.stdout)
        stderr = _decode_bytes(completed.stderr)

        if check and completed.returncode != 0:
            raise ExecutorError(
                f"Command failed with code {completed.returncode}: {format_command(full_cmd)}\n"
                f"STDOUT:\n{stdout}\nSTDERR:\n{stderr}"
            )

        return ExecResult(
            command=list(full_cmd),
            returncode=completed.returncode,
            stdout=stdout,
            stderr=stderr,
            elapsed_seconds=elapsed,
        )


def create_executor(exec_type: str = "local", conda_executable: Optional[str] = None) -> BaseExecutor:
    exec_type = exec_type.lower()
    if exec_type == "local":
        return LocalExecutor(conda_executable=conda_executable)
    raise ValueError(f"Unsupported executor type: {exec_type}")
