"""Scoped handling of the model-repository access token.

The token is read from the environment or prompted for, registered with
the log redaction filter, handed to the hub login over stdin, and
dropped when the scope ends. It is never written to a service
environment file or put on a command line.
"""

import getpass
import logging
import os
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional

from .errors import CredentialError
from .executor import run_command
from .logger import register_secret, forget_secret
from .probes import Probe
from .variables import VariableContext

logger = logging.getLogger(__name__)

TOKEN_ENV_VARS = ('HF_TOKEN', 'HUGGING_FACE_HUB_TOKEN')


def token_cache_paths(home: Optional[str] = None) -> List[str]:
    """Locations where the hub client caches a login, newest layout first."""
    home = home or os.path.expanduser('~')
    hf_home = os.environ.get('HF_HOME', os.path.join(home, '.cache', 'huggingface'))
    return [
        os.path.join(hf_home, 'token'),
        os.path.join(home, '.huggingface', 'token'),
    ]


def token_cached(home: Optional[str] = None) -> Probe:
    """True when a non-empty cached token file exists."""
    def check(probe: Probe) -> bool:
        for path in token_cache_paths(home):
            try:
                if os.path.getsize(path) > 0:
                    probe.detail = f"cached token at {path}"
                    return True
            except OSError:
                continue
        probe.detail = "no cached token"
        return False
    return Probe("token_cached", check)


def _read_token(prompt: Callable[[str], str], interactive: bool) -> str:
    for name in TOKEN_ENV_VARS:
        value = os.environ.get(name, '').strip()
        if value:
            logger.info(f"Using model repository token from ${name}")
            return value
    if not interactive:
        raise CredentialError(
            f"No token available: set {' or '.join(TOKEN_ENV_VARS)} or run interactively"
        )
    try:
        value = prompt("Hugging Face token: ").strip()
    except (EOFError, KeyboardInterrupt) as e:
        raise CredentialError("Token prompt aborted") from e
    if not value:
        raise CredentialError("Empty token")
    return value


@contextmanager
def scoped_token(
    prompt: Callable[[str], str] = getpass.getpass,
    interactive: bool = True,
) -> Iterator[str]:
    """Acquire the token for the duration of a ``with`` block."""
    token = _read_token(prompt, interactive)
    register_secret(token)
    try:
        yield token
    finally:
        forget_secret(token)
        del token


def hub_login(python: str, interactive: bool = True,
              prompt: Callable[[str], str] = getpass.getpass):
    """Action: log the hub client in so the model can be downloaded.

    Runs ``huggingface_hub.login`` inside the target virtualenv with the
    token on stdin. A rejected token raises CredentialError, which aborts
    the run without retrying.
    """
    script = (
        "import sys\n"
        "from huggingface_hub import login\n"
        "login(token=sys.stdin.readline().strip(), add_to_git_credential=False)\n"
    )

    async def action(context: VariableContext):
        with scoped_token(prompt, interactive) as token:
            result = await run_command([python, "-c", script], input_text=token + "\n", timeout=120)
            output = result.output.replace(token, '***')
        if not result.ok:
            raise CredentialError(f"Hub login rejected (exit status {result.returncode}): {output}")
        return None

    return action
