"""Precondition checks: does the desired end-state already hold?

Every probe is a read-only look at the host. A probe that cannot look
(missing file, permission denied, unknown command) answers False instead
of raising, so the owning step simply runs.
"""

import logging
import os
import shutil
import time
from enum import Enum
from typing import Callable, Optional, Sequence

import requests

from .errors import PreconditionProbeError
from .executor import run_command_sync
from .models import Step

logger = logging.getLogger(__name__)

# Probes must be quick; they are not actions
PROBE_COMMAND_TIMEOUT = 30.0


class ProbeState(Enum):
    ALREADY_SATISFIED = "already satisfied"
    NOT_SATISFIED = "not satisfied"


class Probe:
    """A named boolean check that remembers what it last observed.

    ``detail`` holds diagnostic text from the most recent call (command
    output, HTTP status, exception message); the verifier reports it when
    a wait times out.
    """

    def __init__(self, name: str, check: Callable[['Probe'], bool]):
        self.name = name
        self._check = check
        self.detail: Optional[str] = None

    def __call__(self) -> bool:
        self.detail = None
        return bool(self._check(self))

    def __repr__(self):
        return f"Probe({self.name!r})"


def check_precondition(step: Step) -> ProbeState:
    """Evaluate a step's precondition without mutating anything.

    Any error while probing is logged as a warning and treated as
    NOT_SATISFIED.
    """
    if step.probe is None:
        return ProbeState.NOT_SATISFIED
    try:
        satisfied = step.probe()
    except PreconditionProbeError as e:
        logger.warning(f"{step.label}: probe failed ({e}), treating as not satisfied")
        return ProbeState.NOT_SATISFIED
    except Exception as e:
        logger.warning(f"{step.label}: probe error {type(e).__name__}: {e}, treating as not satisfied")
        return ProbeState.NOT_SATISFIED
    return ProbeState.ALREADY_SATISFIED if satisfied else ProbeState.NOT_SATISFIED


# ─── Probe factories ─────────────────────────────────────────────────────────

def command_exists(name: str) -> Probe:
    """True when ``name`` resolves on PATH."""
    def check(probe: Probe) -> bool:
        path = shutil.which(name)
        probe.detail = path or f"{name} not found on PATH"
        return path is not None
    return Probe(f"command_exists({name})", check)


def file_exists(path: str) -> Probe:
    def check(probe: Probe) -> bool:
        exists = os.path.exists(path)
        probe.detail = f"{path} {'exists' if exists else 'missing'}"
        return exists
    return Probe(f"file_exists({path})", check)


def file_fresh(path: str, max_age: float) -> Probe:
    """True when ``path`` exists and was modified less than ``max_age`` seconds ago."""
    def check(probe: Probe) -> bool:
        try:
            age = time.time() - os.path.getmtime(path)
        except FileNotFoundError:
            probe.detail = f"{path} missing"
            return False
        probe.detail = f"{path} is {age / 3600:.1f}h old"
        return age < max_age
    return Probe(f"file_fresh({path})", check)


def file_contains(path: str, expected: str) -> Probe:
    """True when ``path`` holds exactly ``expected``."""
    def check(probe: Probe) -> bool:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                current = f.read()
        except FileNotFoundError:
            probe.detail = f"{path} missing"
            return False
        except PermissionError as e:
            raise PreconditionProbeError(f"cannot read {path}: {e}") from e
        same = current == expected
        probe.detail = f"{path} {'up to date' if same else 'differs'}"
        return same
    return Probe(f"file_contains({path})", check)


def command_succeeds(args: Sequence[str], env: Optional[dict] = None) -> Probe:
    """True when the command exits 0."""
    def check(probe: Probe) -> bool:
        result = run_command_sync(args, env=env, timeout=PROBE_COMMAND_TIMEOUT)
        probe.detail = result.output or f"exit status {result.returncode}"
        return result.ok
    return Probe(f"command_succeeds({' '.join(args)})", check)


def service_active(name: str) -> Probe:
    return command_succeeds(["systemctl", "is-active", "--quiet", name])


def service_enabled(name: str) -> Probe:
    return command_succeeds(["systemctl", "is-enabled", "--quiet", name])


def gpu_visible() -> Probe:
    """True when nvidia-smi can talk to a loaded driver."""
    return command_succeeds(["nvidia-smi"])


def python_module_importable(python: str, module: str) -> Probe:
    return command_succeeds([python, "-c", f"import {module}"])


def is_root() -> Probe:
    def check(probe: Probe) -> bool:
        euid = os.geteuid()
        probe.detail = f"euid={euid}"
        return euid == 0
    return Probe("is_root", check)


def http_ok(url: str, timeout: float = 5.0) -> Probe:
    """True when GET ``url`` answers with a 2xx status."""
    def check(probe: Probe) -> bool:
        try:
            resp = requests.get(url, timeout=timeout)
        except requests.RequestException as e:
            probe.detail = f"GET {url}: {e}"
            return False
        probe.detail = f"GET {url}: {resp.status_code} {resp.text[:200]}"
        return resp.ok
    return Probe(f"http_ok({url})", check)


def all_of(*probes: Probe) -> Probe:
    """True when every probe is true; stops at the first false one."""
    def check(probe: Probe) -> bool:
        for p in probes:
            if not p():
                probe.detail = f"{p.name}: {p.detail}"
                return False
        probe.detail = "all satisfied"
        return True
    return Probe(" and ".join(p.name for p in probes), check)


def negate(inner: Probe) -> Probe:
    def check(probe: Probe) -> bool:
        value = inner()
        probe.detail = inner.detail
        return not value
    return Probe(f"not {inner.name}", check)
