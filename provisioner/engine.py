"""Provisioning execution engine.

The Sequencer runs a plan of Steps against the host, one at a time, in
dependency order: probe, skip or execute, retry, verify, and decide
whether the run continues or aborts.
"""

import asyncio
import time
import uuid
import logging
from enum import Enum
from typing import List, Optional, Dict

from pynnex import with_emitters, emitter

from .errors import CredentialError, PlanError, VerificationTimeout
from .executor import StepExecutor
from .models import (
    Step,
    StepOutcome,
    OutcomeStatus,
    RunReport,
    RunStatus,
)
from .probes import ProbeState, check_precondition
from .variables import VariableContext

logger = logging.getLogger(__name__)


class SequencerState(Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    ABORTED = "Aborted"


def order_steps(steps: List[Step]) -> List[Step]:
    """Order steps so every step comes after the steps it requires.

    Plan order is kept wherever the requirements allow it.

    Raises:
        PlanError: duplicate step names, unknown requirements, or a cycle
    """
    by_name: Dict[str, Step] = {}
    for step in steps:
        if step.name in by_name:
            raise PlanError(f"Duplicate step name: {step.name}")
        by_name[step.name] = step

    for step in steps:
        for dep in step.requires:
            if dep not in by_name:
                raise PlanError(f"Step '{step.name}' requires unknown step '{dep}'")

    ordered: List[Step] = []
    placed = set()
    remaining = list(steps)
    while remaining:
        for step in remaining:
            if all(dep in placed for dep in step.requires):
                ordered.append(step)
                placed.add(step.name)
                remaining.remove(step)
                break
        else:
            names = ", ".join(s.name for s in remaining)
            raise PlanError(f"Dependency cycle between steps: {names}")
    return ordered


@with_emitters
class Sequencer:
    """Executes a provisioning plan against the host.

    The sequencer handles:
    - Dependency ordering of the plan
    - Idempotence: steps whose precondition holds are skipped
    - Retry with backoff for flaky actions
    - Postcondition verification after an action
    - Abort on fatal failures, continue past non-fatal ones
    - Cooperative cancellation between steps

    Emitters:
        step_started(step_name)
        step_finished(step_name, outcome)
        run_finished(report)
    """

    @emitter
    def step_started(self):
        pass

    @emitter
    def step_finished(self):
        pass

    @emitter
    def run_finished(self):
        pass

    def __init__(
        self,
        steps: List[Step],
        context: Optional[VariableContext] = None,
        executor: Optional[StepExecutor] = None,
        dry_run: bool = False,
        run_id: Optional[str] = None,
    ):
        self.steps = order_steps(steps)
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.context = context or VariableContext(self.run_id)
        self.executor = executor or StepExecutor()
        self.dry_run = dry_run
        self.state = SequencerState.PENDING
        self._cancel_requested = False

    def cancel(self) -> None:
        """Stop after the current step finishes. Safe to call from a signal handler."""
        if not self._cancel_requested:
            logger.warning("Cancellation requested, stopping after the current step")
        self._cancel_requested = True

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested

    async def run(self) -> RunReport:
        """Run every step of the plan once.

        Returns:
            RunReport with the outcome of each attempted step
        """
        if self.state is not SequencerState.PENDING:
            raise RuntimeError(f"Sequencer already used (state {self.state.value})")

        self.state = SequencerState.RUNNING
        start_time = time.monotonic()
        outcomes: List[StepOutcome] = []
        failed_names = set()

        logger.info(
            f"Starting provisioning run {self.run_id}: {len(self.steps)} steps"
            f"{' (dry run)' if self.dry_run else ''}"
        )

        for i, step in enumerate(self.steps):
            if self._cancel_requested:
                last = outcomes[-1].step if outcomes else None
                return self._finish(outcomes, start_time, aborted=True, aborted_at=last, reason="cancelled")

            logger.info(f"[{i + 1}/{len(self.steps)}] {step.label}")
            self.step_started.emit(step.name)

            blocked_by = [dep for dep in step.requires if dep in failed_names]
            if blocked_by:
                outcome = StepOutcome(
                    step=step.name,
                    status=OutcomeStatus.FAILED,
                    reason=f"blocked by failed step(s): {', '.join(blocked_by)}",
                    hint=step.hint,
                )
            else:
                try:
                    outcome = await self._run_step(step)
                except CredentialError as e:
                    outcome = StepOutcome(
                        step=step.name,
                        status=OutcomeStatus.FAILED,
                        reason=f"credential error: {e}",
                        attempts=1,
                        hint=step.hint,
                    )
                    self._record(outcomes, outcome)
                    return self._finish(
                        outcomes, start_time, aborted=True, aborted_at=step.name, reason=outcome.reason,
                    )

            self._record(outcomes, outcome)

            if outcome.failed:
                failed_names.add(step.name)
                if self._cancel_requested:
                    return self._finish(
                        outcomes, start_time, aborted=True, aborted_at=step.name, reason="cancelled",
                    )
                if step.fatal:
                    return self._finish(
                        outcomes, start_time, aborted=True, aborted_at=step.name,
                        reason=f"{step.name}: {outcome.reason}",
                    )
                logger.warning(f"{step.label} failed but is not fatal, continuing")

        return self._finish(outcomes, start_time)

    async def _run_step(self, step: Step) -> StepOutcome:
        """Probe, then execute (with retries) if needed."""
        loop = asyncio.get_running_loop()
        state = await loop.run_in_executor(None, check_precondition, step)

        if state is ProbeState.ALREADY_SATISFIED:
            logger.info(f"{step.label}: already satisfied, skipping")
            return StepOutcome(step=step.name, status=OutcomeStatus.SKIPPED, reason="already satisfied")

        if self.dry_run:
            logger.info(f"{step.label}: would run")
            return StepOutcome(step=step.name, status=OutcomeStatus.PLANNED, reason="dry run")

        return await self._execute_with_retry(step)

    async def _execute_with_retry(self, step: Step) -> StepOutcome:
        """Execute a step up to its retry policy's attempt count."""
        start_time = time.monotonic()
        max_attempts = max(1, step.retry.max_attempts)
        outcome = None

        for attempt in range(1, max_attempts + 1):
            outcome = await self.executor.execute(step, self.context)

            if outcome.ok and step.postcondition is not None:
                outcome = await self._verify(step, outcome)

            if outcome.ok:
                break

            if attempt < max_attempts:
                delay = step.retry.delay_for(attempt)
                logger.warning(
                    f"{step.label}: attempt {attempt}/{max_attempts} failed "
                    f"({outcome.reason}), retrying in {delay:g}s"
                )
                if delay > 0:
                    await asyncio.sleep(delay)
                if self._cancel_requested:
                    break

        return StepOutcome(
            step=outcome.step,
            status=outcome.status,
            reason=outcome.reason,
            output=outcome.output,
            attempts=attempt,
            elapsed=time.monotonic() - start_time,
            captures=outcome.captures,
            hint=outcome.hint,
        )

    async def _verify(self, step: Step, outcome: StepOutcome) -> StepOutcome:
        verifier = step.postcondition()
        try:
            await verifier.require()
        except VerificationTimeout as e:
            return StepOutcome(
                step=step.name,
                status=OutcomeStatus.FAILED,
                reason=str(e),
                output=e.last_observed,
                hint=step.hint,
            )
        return outcome

    def _record(self, outcomes: List[StepOutcome], outcome: StepOutcome) -> None:
        outcomes.append(outcome)
        if outcome.captures:
            self.context.add_captures(outcome.captures)
            logger.info(f"Captured: {outcome.captures}")
        if outcome.failed:
            logger.error(f"{outcome.step} failed: {outcome.reason}")
        self.step_finished.emit(outcome.step, outcome)

    def _finish(
        self,
        outcomes: List[StepOutcome],
        start_time: float,
        aborted: bool = False,
        aborted_at: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> RunReport:
        elapsed = time.monotonic() - start_time
        if not aborted:
            self.state = SequencerState.COMPLETED
            status = RunStatus.COMPLETED
            logger.info(
                f"Provisioning complete: {len(outcomes)}/{len(self.steps)} steps, "
                f"{elapsed:.2f}s, {len([o for o in outcomes if o.failed])} non-fatal failure(s)"
            )
        else:
            self.state = SequencerState.ABORTED
            status = RunStatus.ABORTED
            logger.error(f"Provisioning aborted at {aborted_at or 'start of run'}: {reason}")

        report = RunReport(
            run_id=self.run_id,
            status=status,
            outcomes=outcomes,
            aborted_at=aborted_at,
            reason=reason,
            captures=self.context.all_captures,
            elapsed=elapsed,
            dry_run=self.dry_run,
        )
        self.run_finished.emit(report)
        return report
