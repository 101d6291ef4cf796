"""systemd unit generation for ServiceDescriptors."""

import logging
import shlex
from typing import List

from .models import ServiceDescriptor

logger = logging.getLogger(__name__)

UNIT_DIR = '/etc/systemd/system'


def unit_path(descriptor: ServiceDescriptor, unit_dir: str = UNIT_DIR) -> str:
    return f"{unit_dir}/{descriptor.unit_name}"


def _escape_specifiers(text: str) -> str:
    # % starts a systemd specifier in both Environment= and ExecStart=
    return text.replace('%', '%%')


def _quote_environment(key: str, value: str) -> str:
    assignment = f"{key}={value}".replace('\\', '\\\\').replace('"', '\\"')
    return f'"{_escape_specifiers(assignment)}"'


def _format_exec_start(argv: List[str]) -> str:
    # One option per line, keeping "--flag value" pairs together
    if not argv:
        raise ValueError("exec_start must not be empty")
    groups: List[List[str]] = [[]]
    for arg in argv:
        if arg.startswith('--') and groups[-1]:
            groups.append([])
        groups[-1].append(_escape_specifiers(arg).replace('$', '$$'))
    return " \\\n    ".join(shlex.join(group) for group in groups)


def render_unit(descriptor: ServiceDescriptor) -> str:
    """Render the unit file text for a service descriptor.

    Output is deterministic for a given descriptor, so comparing it with
    the installed file tells whether the unit needs rewriting.
    """
    unit = [
        "[Unit]",
        f"Description={descriptor.description or descriptor.name}",
    ]
    if descriptor.after:
        unit.append(f"After={' '.join(descriptor.after)}")

    service = [
        "",
        "[Service]",
        "Type=simple",
        f"User={descriptor.user}",
    ]
    if descriptor.working_directory:
        service.append(f"WorkingDirectory={descriptor.working_directory}")
    for key, value in descriptor.environment.items():
        service.append(f"Environment={_quote_environment(key, value)}")
    service.append(f"ExecStart={_format_exec_start(descriptor.exec_start)}")
    service.append(f"Restart={descriptor.restart.value}")
    service.append(f"RestartSec={descriptor.restart_sec}")

    install = [
        "",
        "[Install]",
        f"WantedBy={descriptor.wanted_by}",
    ]

    return "\n".join(unit + service + install) + "\n"
