"""Variable substitution for provisioning commands and generated files.

Handles {variable} substitution in command and file templates, with support
for multiple variable sources and a defined resolution order.
"""

import re
import socket
import logging
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)


# Pattern to match {variable_name} in templates
VARIABLE_PATTERN = re.compile(r'\{(\w+)\}')


def get_system_variables(run_id: str) -> dict:
    """Get system-provided variables (always available).

    Args:
        run_id: Identifier of the current provisioning run

    Returns:
        Dictionary of system variable names to values
    """
    now = datetime.now()

    return {
        'run_id': run_id,
        'host': socket.gethostname(),
        'timestamp': now.isoformat(),
        'date': now.strftime('%Y-%m-%d'),
        'time': now.strftime('%H:%M:%S'),
    }


def merge_variable_sources(
    system_vars: dict,
    config_vars: Optional[dict] = None,
    captured_vars: Optional[dict] = None
) -> dict:
    """Merge variable sources with defined resolution order.

    Resolution order (highest priority first):
    1. Values captured by earlier steps (most recent)
    2. Configuration values
    3. System-provided values (lowest priority)
    """
    result = {}
    result.update(system_vars)

    if config_vars:
        result.update(config_vars)

    if captured_vars:
        result.update(captured_vars)

    return result


def substitute_variables(template: str, variables: dict) -> tuple[str, list[str]]:
    """Replace {variable} placeholders in a template string.

    Args:
        template: String containing {variable} placeholders
        variables: Dictionary of variable names to values

    Returns:
        Tuple of (substituted_string, list_of_missing_variables)
    """
    missing = []

    def replace(match: re.Match) -> str:
        var_name = match.group(1)
        if var_name in variables:
            value = variables[var_name]
            if not isinstance(value, str):
                value = str(value)
            return value
        else:
            missing.append(var_name)
            logger.warning(f"Missing variable: {{{var_name}}}")
            # Leave the placeholder in place so it's obvious
            return match.group(0)

    result = VARIABLE_PATTERN.sub(replace, template)
    return (result, missing)


class VariableContext:
    """Manages variables for a provisioning run.

    Values captured by actions (IP addresses, host names) accumulate as
    the plan executes and become available to later steps.
    """

    def __init__(self, run_id: str, config_vars: Optional[dict] = None):
        self.system_vars = get_system_variables(run_id)
        self.config_vars = config_vars or {}
        self.captured_vars: dict = {}

    def add_captures(self, captures: dict) -> None:
        """Add captured variables from a step outcome."""
        self.captured_vars.update(captures)

    def get_all(self) -> dict:
        """Get merged dictionary of all variables."""
        return merge_variable_sources(
            self.system_vars,
            self.config_vars,
            self.captured_vars
        )

    def get(self, name: str, default=None):
        return self.get_all().get(name, default)

    def substitute(self, template: str) -> tuple[str, list[str]]:
        """Substitute variables in a template.

        Returns:
            Tuple of (substituted_string, missing_variables)
        """
        return substitute_variables(template, self.get_all())

    @property
    def all_captures(self) -> dict:
        """Get all captured variables."""
        return dict(self.captured_vars)
