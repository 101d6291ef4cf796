from provisioner.models import RunReport, RunStatus, StepOutcome, OutcomeStatus, Endpoint
from provisioner.reporter import render_report


def test_completed_report_lists_endpoints_and_logs():
    report = RunReport(
        run_id='abc123',
        status=RunStatus.COMPLETED,
        outcomes=[
            StepOutcome('install-vllm', OutcomeStatus.SKIPPED, reason='already satisfied'),
            StepOutcome('check-gpu', OutcomeStatus.SUCCEEDED_WITH_WARNING, reason='exit status 9',
                        hint='NVIDIA drivers not loaded. You may need to reboot.'),
            StepOutcome('start-service', OutcomeStatus.SUCCEEDED, attempts=2),
        ],
        elapsed=12.5,
    )
    endpoint = Endpoint(port=8000, hostname='gpu-box.tail1234.ts.net', ip='100.64.0.7')

    text = render_report(report, endpoint, log_file='/var/log/provisioner.log')

    assert 'Provisioning completed (run abc123, 12.5s)' in text
    assert '- install-vllm: Skipped' in text
    assert 'start-service: Succeeded (2 attempts)' in text
    assert 'hint: NVIDIA drivers not loaded. You may need to reboot.' in text
    assert '  - https://gpu-box.tail1234.ts.net' in text
    assert '  - http://100.64.0.7:8000' in text
    assert 'curl https://gpu-box.tail1234.ts.net/v1/models' in text
    assert 'To view Tailscale status:\n  tailscale status' in text
    assert 'journalctl -u vllm -f' in text
    assert '/var/log/provisioner.log' in text


def test_aborted_report_shows_failure_details():
    report = RunReport(
        run_id='abc123',
        status=RunStatus.ABORTED,
        outcomes=[
            StepOutcome('start-service', OutcomeStatus.FAILED, reason='vllm.service active not ready within 30s',
                        output='inactive (dead)', hint='Check logs with: journalctl -u vllm -f'),
        ],
        aborted_at='start-service',
        reason='start-service: not ready',
    )

    text = render_report(report, None)

    assert 'Provisioning aborted' in text
    assert 'Aborted at: start-service' in text
    assert 'Reason: start-service: not ready' in text
    assert '    inactive (dead)' in text
    assert 'Hint: Check logs with: journalctl -u vllm -f' in text
    assert 'accessible' not in text


def test_dry_run_report_lists_pending_steps():
    report = RunReport(
        run_id='r',
        status=RunStatus.COMPLETED,
        outcomes=[
            StepOutcome('apt-update', OutcomeStatus.SKIPPED),
            StepOutcome('install-vllm', OutcomeStatus.PLANNED),
        ],
        dry_run=True,
    )

    text = render_report(report)

    assert text.startswith('=' * 49 + '\nDry run completed')
    assert '1 step(s) would run: install-vllm' in text


def test_render_is_pure():
    report = RunReport(run_id='r', status=RunStatus.COMPLETED)
    assert render_report(report) == render_report(report)
    assert report.outcomes == []


def test_endpoint_urls_fall_back_to_localhost():
    assert Endpoint(port=8000).urls == ['http://localhost:8000']
    assert Endpoint(port=8000, hostname='h.ts.net', https_port=8443).urls == ['https://h.ts.net:8443']


def test_cancelled_run_does_not_show_output_of_a_successful_step():
    report = RunReport(
        run_id='r',
        status=RunStatus.ABORTED,
        outcomes=[StepOutcome('apt-update', OutcomeStatus.SUCCEEDED, output='Reading package lists...',
                              hint='unused')],
        aborted_at='apt-update',
        reason='cancelled',
    )

    text = render_report(report)

    assert 'Aborted at: apt-update' in text
    assert 'Reason: cancelled' in text
    assert 'Last output' not in text
    assert 'Reading package lists' not in text
    assert report.get_failed_step() is None


def test_cancelled_before_first_step():
    report = RunReport(run_id='r', status=RunStatus.ABORTED, reason='cancelled')

    text = render_report(report)

    assert 'Aborted at: before the first step' in text
    assert 'Last output' not in text
