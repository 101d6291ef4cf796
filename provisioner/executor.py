"""Step execution: subprocess running and outcome classification.

The StepExecutor runs a step's action exactly once per call and turns
whatever happened (exit status, exception) into a StepOutcome.
"""

import asyncio
import concurrent.futures
import logging
import os
import subprocess
import time
from dataclasses import dataclass
from typing import Optional, Sequence, Mapping

from .errors import ActionError, CredentialError, VerificationTimeout
from .models import Step, StepOutcome, OutcomeStatus
from .variables import VariableContext

logger = logging.getLogger(__name__)

# Long enough for a pip install of vllm on a slow link
DEFAULT_COMMAND_TIMEOUT = 3600.0

# How much of stdout/stderr is kept as the step's diagnostic output
OUTPUT_TAIL_CHARS = 2000


@dataclass
class CommandResult:
    """Exit status and captured streams of one subprocess."""

    returncode: int
    stdout: str = ""
    stderr: str = ""
    args: tuple = ()

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined output tail, stderr last since that is where errors go."""
        text = "\n".join(part.strip() for part in (self.stdout, self.stderr) if part and part.strip())
        if len(text) > OUTPUT_TAIL_CHARS:
            text = "..." + text[-OUTPUT_TAIL_CHARS:]
        return text


def run_command_sync(
    args: Sequence[str],
    env: Optional[Mapping[str, str]] = None,
    input_text: Optional[str] = None,
    timeout: Optional[float] = DEFAULT_COMMAND_TIMEOUT,
    cwd: Optional[str] = None,
) -> CommandResult:
    """Run a subprocess to completion in the calling thread.

    A missing binary or an expired timeout is reported as a non-zero
    result rather than raised.
    """
    full_env = None
    if env:
        full_env = dict(os.environ)
        full_env.update(env)
    try:
        result = subprocess.run(
            list(args),
            input=input_text,
            capture_output=True,
            text=True,
            env=full_env,
            cwd=cwd,
            timeout=timeout,
        )
        return CommandResult(result.returncode, result.stdout or "", result.stderr or "", tuple(args))
    except subprocess.TimeoutExpired:
        return CommandResult(124, "", f"Timeout expired after {timeout}s", tuple(args))
    except FileNotFoundError:
        return CommandResult(127, "", f"{args[0]}: command not found", tuple(args))
    except PermissionError as e:
        return CommandResult(126, "", str(e), tuple(args))


async def run_command(
    args: Sequence[str],
    env: Optional[Mapping[str, str]] = None,
    input_text: Optional[str] = None,
    timeout: Optional[float] = DEFAULT_COMMAND_TIMEOUT,
    cwd: Optional[str] = None,
) -> CommandResult:
    """Run a subprocess in a worker thread and return its CommandResult.

    Runs in a thread pool so the event loop stays free to handle signals
    and cancellation while a long install is in progress. ``input_text``
    may carry a secret and is never logged.
    """
    logger.debug(f"Running command: {' '.join(args)}")

    loop = asyncio.get_running_loop()
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        result = await loop.run_in_executor(
            pool, lambda: run_command_sync(args, env, input_text, timeout, cwd)
        )

    if result.stdout:
        logger.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr:
        logger.debug(f"stderr: {result.stderr.strip()}")
    logger.debug(f"Command finished with returncode: {result.returncode}")
    return result


class StepExecutor:
    """Runs one attempt of a step's action and classifies the result.

    Classification:
    - CommandResult with exit 0, or no result at all: SUCCEEDED
    - non-zero exit: FAILED, or SUCCEEDED_WITH_WARNING for best-effort steps
    - ActionError / unexpected exception: FAILED with the error as reason
    - VerificationTimeout: FAILED with the last observed state as output

    CredentialError and asyncio cancellation propagate to the caller.
    """

    async def execute(self, step: Step, context: VariableContext) -> StepOutcome:
        start_time = time.monotonic()
        captures = {}

        try:
            result = await step.action(context)
        except asyncio.CancelledError:
            raise
        except CredentialError:
            raise
        except VerificationTimeout as e:
            return self._failed(step, str(e), e.last_observed, start_time)
        except ActionError as e:
            return self._failed(step, str(e), e.output, start_time)
        except Exception as e:
            logger.exception(f"Step '{step.name}' raised")
            return self._failed(step, f"{type(e).__name__}: {e}", None, start_time)

        if isinstance(result, dict):
            captures = {k: str(v) for k, v in result.items()}
            result = None

        if result is None or result.ok:
            return StepOutcome(
                step=step.name,
                status=OutcomeStatus.SUCCEEDED,
                output=result.output if result is not None else None,
                attempts=1,
                elapsed=time.monotonic() - start_time,
                captures=captures,
            )

        reason = f"exit status {result.returncode}"
        if step.best_effort:
            logger.warning(f"{step.label}: {reason} (best effort, continuing)")
            return StepOutcome(
                step=step.name,
                status=OutcomeStatus.SUCCEEDED_WITH_WARNING,
                reason=reason,
                output=result.output,
                attempts=1,
                elapsed=time.monotonic() - start_time,
                hint=step.hint,
            )
        return self._failed(step, reason, result.output, start_time)

    @staticmethod
    def _failed(step: Step, reason: str, output: Optional[str], start_time: float) -> StepOutcome:
        return StepOutcome(
            step=step.name,
            status=OutcomeStatus.FAILED,
            reason=reason,
            output=output,
            attempts=1,
            elapsed=time.monotonic() - start_time,
            hint=step.hint,
        )
