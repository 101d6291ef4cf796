"""Command-line entry point.

Provisions this host as a vLLM inference server published over Tailscale.
Safe to re-run: steps whose end-state already holds are skipped.

Usage:
    sudo provision --model google/gemma-3n-E4B-it
    sudo provision --config /etc/provisioner/settings.json --yes
    sudo HF_TOKEN=... provision --model google/gemma-3n-E4B-it --yes --no-prompt
    provision --model google/gemma-3n-E4B-it --dry-run
    provision --model google/gemma-3n-E4B-it --smoke

Exit status:
    0   run completed (non-fatal step failures are listed in the summary)
    1   run aborted at a fatal step
    2   usage, configuration, or host lock error
"""

import argparse
import asyncio
import logging
import signal
import sys
import uuid

from .client import smoke_test
from .engine import Sequencer
from .errors import ConfigError, HostLockError, PlanError
from .hostlock import HostLock
from .logger import setup_logging
from .models import StepOutcome
from .plan import build_plan, discover_endpoint
from .reporter import render_report
from .settings import Settings, ProvisionConfig, DEFAULT_SETTINGS_FILE
from .variables import VariableContext

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_USAGE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='provision',
        description='Provision a vLLM inference endpoint published over Tailscale',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument('--config', default=DEFAULT_SETTINGS_FILE, help='JSON settings file')
    parser.add_argument('--model', help='Model identifier to serve (e.g. google/gemma-3n-E4B-it)')
    parser.add_argument('--port', type=int, help='Port for the vLLM API server')
    parser.add_argument('--dry-run', action='store_true', help='Probe every step, change nothing')
    parser.add_argument('--yes', '-y', action='store_true', help='Skip the confirmation prompt')
    parser.add_argument('--no-prompt', action='store_true',
                        help='Never prompt for the Hugging Face token; read it from the environment only')
    parser.add_argument('--show-plan', action='store_true', help='List the steps and exit')
    parser.add_argument('--smoke', action='store_true', help='Only run a chat request against the local endpoint')
    parser.add_argument('--log-file', help='Provisioner log file')
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument('--verbose', '-v', action='store_true', help='Verbose output')
    verbosity.add_argument('--quiet', '-q', action='store_true', help='Only warnings and the summary')
    return parser


def load_config(args: argparse.Namespace) -> ProvisionConfig:
    settings = Settings(args.config)
    settings.set_multiple({
        'model_id': args.model,
        'port': args.port,
        'interactive': False if args.no_prompt else None,
    })
    return settings.build_config()


def print_plan_summary(config: ProvisionConfig, steps) -> None:
    """Print a summary of the plan."""
    print(f"\n{'='*60}")
    print(f"Model: {config.model_id}")
    print(f"Service: {config.service_name} on {config.host}:{config.port}")
    print(f"Virtualenv: {config.venv_path}")
    print(f"Steps: {len(steps)}")
    for i, step in enumerate(steps):
        flags = []
        if not step.fatal:
            flags.append('non-fatal')
        if step.best_effort:
            flags.append('best effort')
        if step.retry.max_attempts > 1:
            flags.append(f"{step.retry.max_attempts} attempts")
        suffix = f" [{', '.join(flags)}]" if flags else ''
        print(f"  {i+1}. {step.name}: {step.label}{suffix}")
    print(f"{'='*60}\n")


def confirm(prompt: str = 'Proceed? [y/N] ') -> bool:
    try:
        answer = input(prompt)
    except EOFError:
        return False
    return answer.strip().lower() in ('y', 'yes')


def _print_progress(step_name: str, outcome: StepOutcome) -> None:
    status = "✓" if outcome.ok else "✗"
    print(f"  {status} {step_name}: {outcome.status.value}")


async def run_plan(config: ProvisionConfig, sequencer: Sequencer, dry_run: bool, log_file) -> int:
    """Run the sequencer with signal-driven cancellation and print the summary."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, sequencer.cancel)
    try:
        report = await sequencer.run()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    endpoint = None
    if report.completed and not dry_run:
        endpoint = await discover_endpoint(config)

    print(render_report(report, endpoint, service_name=config.service_name, log_file=log_file))
    return EXIT_OK if report.completed else EXIT_ABORTED


async def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        console_level = logging.DEBUG
    elif args.quiet:
        console_level = logging.WARNING
    else:
        console_level = logging.INFO
    log_file = setup_logging(console_level, args.log_file)

    try:
        config = load_config(args)
    except ConfigError as e:
        logger.error(str(e))
        return EXIT_USAGE

    if args.smoke:
        ok, message = smoke_test(config.local_url, config.model_id)
        print(f"{'✓' if ok else '✗'} {message}")
        return EXIT_OK if ok else EXIT_ABORTED

    run_id = uuid.uuid4().hex[:12]
    context = VariableContext(run_id, config.as_variables())
    try:
        sequencer = Sequencer(build_plan(config), context=context, dry_run=args.dry_run, run_id=run_id)
    except PlanError as e:
        logger.error(f"Invalid plan: {e}")
        return EXIT_USAGE

    if args.show_plan or not args.quiet:
        print_plan_summary(config, sequencer.steps)
    if args.show_plan:
        return EXIT_OK

    if args.verbose:
        sequencer.step_finished.connect(_print_progress)

    if args.dry_run:
        return await run_plan(config, sequencer, True, log_file)

    if not args.yes and not confirm():
        print("Aborted by user")
        return EXIT_ABORTED

    lock = HostLock(run_id, config.lock_path)
    try:
        lock.acquire()
    except HostLockError as e:
        logger.error(str(e))
        return EXIT_USAGE
    except PermissionError as e:
        logger.error(f"Cannot take host lock {config.lock_path}: {e} (run as root)")
        return EXIT_USAGE

    try:
        return await run_plan(config, sequencer, False, log_file)
    finally:
        lock.release()


def run() -> None:
    """Console-script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == '__main__':
    run()
