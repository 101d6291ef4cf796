"""Idempotent host provisioning for a vLLM inference endpoint.

This package provides a small provisioning engine and the plan that turns
a fresh GPU host into a vLLM server published over Tailscale.

Key components:
- Sequencer: Runs a plan of steps, skipping those already satisfied
- Step: A probe, an action, and how failures are handled
- StepExecutor: Runs one action and classifies the outcome
- Verifier: Bounded readiness polling
- RunReport / StepOutcome: Results of a run
- render_report: Human-readable run summary
- build_plan: The vLLM + Tailscale provisioning plan
"""

from .models import (
    Step,
    RetryPolicy,
    StepOutcome,
    OutcomeStatus,
    RunReport,
    RunStatus,
    ServiceDescriptor,
    RestartPolicy,
    Endpoint,
)
from .engine import Sequencer, SequencerState, order_steps
from .executor import StepExecutor, CommandResult, run_command
from .probes import Probe, ProbeState, check_precondition
from .verifier import Verifier, Health
from .reporter import render_report
from .variables import VariableContext
from .plan import build_plan

__all__ = [
    'Sequencer',
    'SequencerState',
    'order_steps',
    'Step',
    'RetryPolicy',
    'StepOutcome',
    'OutcomeStatus',
    'RunReport',
    'RunStatus',
    'ServiceDescriptor',
    'RestartPolicy',
    'Endpoint',
    'StepExecutor',
    'CommandResult',
    'run_command',
    'Probe',
    'ProbeState',
    'check_precondition',
    'Verifier',
    'Health',
    'render_report',
    'VariableContext',
    'build_plan',
]
