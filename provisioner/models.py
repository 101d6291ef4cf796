"""Data models for provisioning plans and run results.

These dataclasses define the structure of a provisioning plan (steps and
the services they install) and the results of executing one.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Callable, Awaitable, Any, TYPE_CHECKING

if TYPE_CHECKING:
    from .verifier import Verifier


class OutcomeStatus(Enum):
    """Final state of a single step within one run."""
    SKIPPED = "Skipped"
    SUCCEEDED = "Succeeded"
    SUCCEEDED_WITH_WARNING = "Succeeded (warning)"
    FAILED = "Failed"
    PLANNED = "Would run"


class RunStatus(Enum):
    """Terminal status of a whole run."""
    COMPLETED = "Completed"
    ABORTED = "Aborted"


class RestartPolicy(Enum):
    """Supervisor restart policy, named as systemd spells it."""
    ALWAYS = "always"
    ON_FAILURE = "on-failure"


@dataclass
class RetryPolicy:
    """How often a flaky action is re-attempted before it counts as failed.

    ``max_attempts`` includes the first attempt (1 = no retry). The delay
    before attempt ``n + 1`` is ``backoff * multiplier ** (n - 1)``.
    """

    max_attempts: int = 1
    backoff: float = 0.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        return self.backoff * (self.multiplier ** (attempt - 1))


@dataclass
class Step:
    """A single unit of provisioning work.

    ``probe`` answers "does the desired end-state already hold?"; when it
    returns True the action is never run. A step without a probe always runs.
    ``action`` is an async callable taking the run's VariableContext and
    returning a CommandResult, a dict of captured values, or None.
    """

    name: str
    action: Callable[..., Awaitable[Any]]
    probe: Optional[Callable[[], bool]] = None

    # Optional readiness check polled after a successful action
    postcondition: Optional[Callable[[], 'Verifier']] = None

    # Error handling / retries
    fatal: bool = True
    best_effort: bool = False  # non-zero exit becomes a warning instead of a failure
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    # Names of steps that must run (and not fail) before this one
    requires: List[str] = field(default_factory=list)

    # Description for logging, and remediation text for the final report
    description: Optional[str] = None
    hint: Optional[str] = None

    @property
    def label(self) -> str:
        return self.description or self.name


@dataclass(frozen=True)
class StepOutcome:
    """Result of one step in one run. Immutable once produced."""

    step: str
    status: OutcomeStatus
    reason: Optional[str] = None  # Why it failed, or why it was skipped
    output: Optional[str] = None  # Last diagnostic output (stdout/stderr tail)
    attempts: int = 0
    elapsed: float = 0.0
    captures: Dict[str, str] = field(default_factory=dict)
    hint: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status is OutcomeStatus.FAILED

    @property
    def ok(self) -> bool:
        return self.status in (
            OutcomeStatus.SKIPPED,
            OutcomeStatus.SUCCEEDED,
            OutcomeStatus.SUCCEEDED_WITH_WARNING,
            OutcomeStatus.PLANNED,
        )


@dataclass
class RunReport:
    """Result of executing a complete plan.

    Outcomes are kept in execution order, one per attempted step.
    """

    run_id: str
    status: RunStatus
    outcomes: List[StepOutcome] = field(default_factory=list)
    aborted_at: Optional[str] = None
    reason: Optional[str] = None
    captures: Dict[str, str] = field(default_factory=dict)
    elapsed: float = 0.0
    dry_run: bool = False

    @property
    def completed(self) -> bool:
        return self.status is RunStatus.COMPLETED

    @property
    def failed(self) -> List[StepOutcome]:
        return [o for o in self.outcomes if o.failed]

    @property
    def skipped(self) -> List[StepOutcome]:
        return [o for o in self.outcomes if o.status is OutcomeStatus.SKIPPED]

    def get_failed_step(self) -> Optional[StepOutcome]:
        """Get the failed step that aborted the run, else the first failure."""
        if self.aborted_at:
            found = self.outcome_for(self.aborted_at)
            if found is not None and found.failed:
                return found
        failed = self.failed
        return failed[0] if failed else None

    def outcome_for(self, name: str) -> Optional[StepOutcome]:
        for outcome in self.outcomes:
            if outcome.step == name:
                return outcome
        return None


@dataclass
class ServiceDescriptor:
    """How a long-running process is launched and supervised."""

    name: str
    exec_start: List[str]
    description: str = ""
    working_directory: Optional[str] = None
    environment: Dict[str, str] = field(default_factory=dict)
    user: str = "root"
    restart: RestartPolicy = RestartPolicy.ALWAYS
    restart_sec: int = 10
    after: List[str] = field(default_factory=lambda: ["network.target"])
    wanted_by: str = "multi-user.target"

    # Desired state
    enabled: bool = True
    running: bool = True

    @property
    def unit_name(self) -> str:
        return f"{self.name}.service"


@dataclass
class Endpoint:
    """Where the provisioned API can be reached."""

    port: int
    hostname: Optional[str] = None  # Tailscale MagicDNS name
    ip: Optional[str] = None  # Tailscale IPv4
    https_port: int = 443

    @property
    def urls(self) -> List[str]:
        urls = []
        if self.hostname:
            if self.https_port == 443:
                urls.append(f"https://{self.hostname}")
            else:
                urls.append(f"https://{self.hostname}:{self.https_port}")
        if self.ip:
            urls.append(f"http://{self.ip}:{self.port}")
        if not urls:
            urls.append(f"http://localhost:{self.port}")
        return urls
