"""Action builders for plan steps.

Each builder returns an async callable ``action(context)`` suitable for
Step.action. Arguments may contain {variable} placeholders which are
resolved against the run's VariableContext when the action runs.
"""

import logging
import os
from typing import Callable, Optional, Sequence, Mapping

from .errors import ActionError
from .executor import CommandResult, run_command, DEFAULT_COMMAND_TIMEOUT
from .variables import VariableContext

logger = logging.getLogger(__name__)


def _resolve(context: VariableContext, template: str) -> str:
    value, missing = context.substitute(template)
    if missing:
        raise ActionError(f"Missing variables: {missing}")
    return value


def shell(*args: str, env: Optional[Mapping[str, str]] = None,
          timeout: float = DEFAULT_COMMAND_TIMEOUT, cwd: Optional[str] = None):
    """Run one command; its exit status decides the step outcome."""
    async def action(context: VariableContext) -> CommandResult:
        argv = [_resolve(context, a) for a in args]
        resolved_env = {k: _resolve(context, v) for k, v in (env or {}).items()}
        return await run_command(argv, env=resolved_env or None, timeout=timeout, cwd=cwd)
    action.__name__ = f"shell({' '.join(args)})"
    return action


def commands(*argvs: Sequence[str], env: Optional[Mapping[str, str]] = None,
             timeout: float = DEFAULT_COMMAND_TIMEOUT):
    """Run several commands in order, stopping at the first failure."""
    async def action(context: VariableContext) -> CommandResult:
        result = CommandResult(0)
        for argv in argvs:
            result = await shell(*argv, env=env, timeout=timeout)(context)
            if not result.ok:
                break
        return result
    return action


def write_file(path: str, content: str, mode: int = 0o644):
    """Write ``content`` to ``path`` atomically (temp file + rename)."""
    async def action(context: VariableContext) -> None:
        target = _resolve(context, path)
        directory = os.path.dirname(target)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{target}.tmp"
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                f.write(content)
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, target)
        except OSError as e:
            raise ActionError(f"Cannot write {target}: {e}") from e
        logger.info(f"Wrote {target}")
    return action


def make_dirs(path: str, mode: int = 0o755):
    async def action(context: VariableContext) -> None:
        target = _resolve(context, path)
        try:
            os.makedirs(target, mode=mode, exist_ok=True)
        except OSError as e:
            raise ActionError(f"Cannot create {target}: {e}") from e
    return action


def systemctl(*args: str):
    return shell("systemctl", *args, timeout=120)


def wait_for(make_verifier: Callable):
    """Poll a readiness check; times out as a failed step."""
    async def action(context: VariableContext) -> None:
        await make_verifier().require()
    return action


def require(check: Callable[[], bool], message: str):
    """Fail with ``message`` unless ``check()`` is true."""
    async def action(context: VariableContext) -> None:
        if not check():
            detail = getattr(check, 'detail', None)
            raise ActionError(message, output=detail)
    return action
