import stat
import sys

import pytest

from provisioner import actions
from provisioner.errors import ActionError, CredentialError, VerificationTimeout
from provisioner.executor import CommandResult, StepExecutor, run_command, run_command_sync
from provisioner.models import Step, OutcomeStatus
from provisioner.variables import VariableContext


@pytest.fixture
def context():
    return VariableContext('test-run', {'venv_path': '/opt/vllm-env', 'port': 8000})


def test_missing_binary_is_a_result_not_an_exception():
    result = run_command_sync(['definitely-not-a-real-binary-xyz'])
    assert result.returncode == 127
    assert 'command not found' in result.stderr


@pytest.mark.asyncio
async def test_run_command_captures_streams_and_stdin():
    result = await run_command(
        [sys.executable, '-c', 'import sys; print(sys.stdin.read().upper()); sys.exit(3)'],
        input_text='secret',
    )
    assert result.returncode == 3
    assert result.stdout.strip() == 'SECRET'
    assert not result.ok


def test_output_tail_is_bounded():
    result = CommandResult(1, stdout='x' * 5000, stderr='error at the end')
    assert result.output.endswith('error at the end')
    assert len(result.output) <= 2003


@pytest.mark.asyncio
async def test_classification(context):
    executor = StepExecutor()

    async def ok(ctx):
        return CommandResult(0, stdout='done')

    async def bad(ctx):
        return CommandResult(2, stderr='E: Unable to locate package')

    async def raises(ctx):
        raise ActionError('disk full', output='No space left on device')

    async def times_out(ctx):
        raise VerificationTimeout('not ready', last_observed='503 Service Unavailable')

    async def bug(ctx):
        raise KeyError('oops')

    assert (await executor.execute(Step(name='a', action=ok), context)).status is OutcomeStatus.SUCCEEDED

    failed = await executor.execute(Step(name='b', action=bad), context)
    assert failed.status is OutcomeStatus.FAILED
    assert failed.reason == 'exit status 2'
    assert 'Unable to locate package' in failed.output

    warned = await executor.execute(Step(name='c', action=bad, best_effort=True), context)
    assert warned.status is OutcomeStatus.SUCCEEDED_WITH_WARNING

    action_error = await executor.execute(Step(name='d', action=raises), context)
    assert action_error.reason == 'disk full'
    assert action_error.output == 'No space left on device'

    timeout = await executor.execute(Step(name='e', action=times_out), context)
    assert timeout.status is OutcomeStatus.FAILED
    assert timeout.output == '503 Service Unavailable'

    unexpected = await executor.execute(Step(name='f', action=bug), context)
    assert unexpected.status is OutcomeStatus.FAILED
    assert unexpected.reason.startswith('KeyError')


@pytest.mark.asyncio
async def test_credential_error_propagates(context):
    async def login(ctx):
        raise CredentialError('bad token')

    with pytest.raises(CredentialError):
        await StepExecutor().execute(Step(name='login', action=login), context)


@pytest.mark.asyncio
async def test_dict_result_becomes_captures(context):
    async def discover(ctx):
        return {'tailscale_ip': '100.64.0.1', 'port': 8000}

    outcome = await StepExecutor().execute(Step(name='discover', action=discover), context)
    assert outcome.captures == {'tailscale_ip': '100.64.0.1', 'port': '8000'}


@pytest.mark.asyncio
async def test_shell_action_substitutes_variables(context, monkeypatch):
    seen = {}

    async def fake_run(argv, env=None, timeout=None, cwd=None):
        seen['argv'] = argv
        return CommandResult(0)

    monkeypatch.setattr(actions, 'run_command', fake_run)

    await actions.shell('{venv_path}/bin/pip', 'install', 'vllm')(context)
    assert seen['argv'] == ['/opt/vllm-env/bin/pip', 'install', 'vllm']

    with pytest.raises(ActionError):
        await actions.shell('{unknown}')(context)


@pytest.mark.asyncio
async def test_commands_stop_at_first_failure(context, monkeypatch):
    ran = []

    async def fake_run(argv, env=None, timeout=None, cwd=None):
        ran.append(argv[0])
        return CommandResult(1 if argv[0] == 'second' else 0)

    monkeypatch.setattr(actions, 'run_command', fake_run)

    result = await actions.commands(['first'], ['second'], ['third'])(context)
    assert ran == ['first', 'second']
    assert result.returncode == 1


@pytest.mark.asyncio
async def test_write_file_and_make_dirs(context, tmp_path):
    target = tmp_path / 'etc' / 'vllm.service'
    await actions.write_file(str(target), '[Unit]\n', mode=0o600)(context)
    assert target.read_text() == '[Unit]\n'
    assert stat.S_IMODE(target.stat().st_mode) == 0o600
    assert not (tmp_path / 'etc' / 'vllm.service.tmp').exists()

    models = tmp_path / 'models'
    await actions.make_dirs(str(models))(context)
    assert models.is_dir()


@pytest.mark.asyncio
async def test_require_action(context):
    await actions.require(lambda: True, 'must be root')(context)
    with pytest.raises(ActionError, match='must be root'):
        await actions.require(lambda: False, 'must be root')(context)
