import asyncio
import os
import signal

import pytest

from provisioner import cli
from provisioner.engine import Sequencer
from provisioner.executor import CommandResult
from provisioner.models import Step, Endpoint
from provisioner.settings import ProvisionConfig
from provisioner.variables import VariableContext


@pytest.fixture
def base_args(tmp_path, monkeypatch):
    monkeypatch.setenv('PROVISION_LOCK_PATH', str(tmp_path / 'provisioner.lock'))
    return ['--config', str(tmp_path / 'none.json'), '--log-file', str(tmp_path / 'provisioner.log')]


def fake_plan(returncode):
    ran = []

    async def action(context):
        ran.append(context.get('model_id'))
        return CommandResult(returncode, stderr='' if returncode == 0 else 'E: broken')

    def build(config):
        return [Step(name='only-step', action=action, hint='try again')]

    return build, ran


@pytest.fixture
def no_discovery(monkeypatch):
    async def discover(config):
        return Endpoint(port=config.port, hostname='gpu-box.ts.net')
    monkeypatch.setattr(cli, 'discover_endpoint', discover)


@pytest.mark.asyncio
async def test_missing_model_is_a_usage_error(base_args, monkeypatch):
    monkeypatch.delenv('PROVISION_MODEL_ID', raising=False)
    assert await cli.main(base_args + ['--show-plan']) == cli.EXIT_USAGE


@pytest.mark.asyncio
async def test_show_plan(base_args, capsys):
    assert await cli.main(base_args + ['--model', 'google/gemma-3n-E4B-it', '--show-plan']) == cli.EXIT_OK
    out = capsys.readouterr().out
    assert 'Model: google/gemma-3n-E4B-it' in out
    assert 'require-root' in out
    assert 'tailscale-serve' in out


@pytest.mark.asyncio
async def test_completed_run_exits_zero(base_args, monkeypatch, capsys, no_discovery):
    build, ran = fake_plan(0)
    monkeypatch.setattr(cli, 'build_plan', build)

    code = await cli.main(base_args + ['--model', 'm', '--yes'])

    assert code == cli.EXIT_OK
    assert ran == ['m']
    out = capsys.readouterr().out
    assert 'Provisioning completed' in out
    assert 'https://gpu-box.ts.net' in out


@pytest.mark.asyncio
async def test_aborted_run_exits_non_zero(base_args, monkeypatch, capsys, no_discovery):
    build, ran = fake_plan(1)
    monkeypatch.setattr(cli, 'build_plan', build)

    code = await cli.main(base_args + ['--model', 'm', '--yes', '--quiet'])

    assert code == cli.EXIT_ABORTED
    out = capsys.readouterr().out
    assert 'Aborted at: only-step' in out
    assert 'E: broken' in out
    assert 'Hint: try again' in out


@pytest.mark.asyncio
async def test_dry_run_executes_nothing(base_args, monkeypatch, capsys):
    build, ran = fake_plan(0)
    monkeypatch.setattr(cli, 'build_plan', build)

    code = await cli.main(base_args + ['--model', 'm', '--dry-run'])

    assert code == cli.EXIT_OK
    assert ran == []
    assert '1 step(s) would run: only-step' in capsys.readouterr().out


@pytest.mark.asyncio
async def test_declined_confirmation(base_args, monkeypatch):
    build, ran = fake_plan(0)
    monkeypatch.setattr(cli, 'build_plan', build)
    monkeypatch.setattr('builtins.input', lambda prompt: 'n')

    assert await cli.main(base_args + ['--model', 'm']) == cli.EXIT_ABORTED
    assert ran == []


@pytest.mark.asyncio
async def test_held_lock_is_a_usage_error(base_args, tmp_path, monkeypatch):
    from provisioner.hostlock import HostLock

    build, ran = fake_plan(0)
    monkeypatch.setattr(cli, 'build_plan', build)

    with HostLock('other-run', str(tmp_path / 'provisioner.lock')):
        code = await cli.main(base_args + ['--model', 'm', '--yes'])

    assert code == cli.EXIT_USAGE
    assert ran == []


@pytest.mark.asyncio
async def test_smoke(base_args, monkeypatch, capsys):
    monkeypatch.setattr(cli, 'smoke_test', lambda url, model: (True, 'Hello!'))
    assert await cli.main(base_args + ['--model', 'm', '--smoke']) == cli.EXIT_OK
    assert 'Hello!' in capsys.readouterr().out


def test_yes_only_skips_confirmation(tmp_path, monkeypatch):
    monkeypatch.delenv('PROVISION_INTERACTIVE', raising=False)
    parser = cli.build_parser()
    config_file = str(tmp_path / 'none.json')

    config = cli.load_config(parser.parse_args(['--config', config_file, '--model', 'm', '--yes']))
    assert config.interactive is True

    config = cli.load_config(parser.parse_args(['--config', config_file, '--model', 'm', '--yes', '--no-prompt']))
    assert config.interactive is False


@pytest.mark.asyncio
async def test_yes_still_prompts_for_token(tmp_path, monkeypatch):
    from provisioner import credentials

    monkeypatch.delenv('PROVISION_INTERACTIVE', raising=False)
    for name in credentials.TOKEN_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    prompted = []

    def prompt(text):
        prompted.append(text)
        return 'hf_typed'

    async def fake_run(args, input_text=None, timeout=None):
        return CommandResult(0, stdout='Login successful')

    monkeypatch.setattr(credentials, 'run_command', fake_run)
    args = cli.build_parser().parse_args(['--config', str(tmp_path / 'none.json'), '--model', 'm', '--yes'])
    config = cli.load_config(args)

    login = credentials.hub_login(config.venv_python, interactive=config.interactive, prompt=prompt)
    await login(VariableContext('r'))

    assert len(prompted) == 1


@pytest.mark.asyncio
async def test_sigterm_cancels_the_run(tmp_path, capsys):
    ran = []

    async def send_sigterm(context):
        os.kill(os.getpid(), signal.SIGTERM)
        await asyncio.sleep(0.05)
        return CommandResult(0)

    async def later(context):
        ran.append('later')
        return CommandResult(0)

    sequencer = Sequencer([Step(name='first', action=send_sigterm), Step(name='later', action=later)])
    code = await cli.run_plan(ProvisionConfig(model_id='m'), sequencer, False, None)

    assert code == cli.EXIT_ABORTED
    assert sequencer.cancelled
    assert ran == []
    assert 'Reason: cancelled' in capsys.readouterr().out
