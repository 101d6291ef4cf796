"""The provisioning plan for a vLLM inference host published over Tailscale.

build_plan() turns a ProvisionConfig into the ordered list of Steps the
Sequencer runs. Every step carries a probe, so a second run on an
unchanged host only skips.
"""

import json
import logging
from typing import List

from . import actions, probes
from .credentials import hub_login, token_cached
from .executor import run_command, run_command_sync
from .models import Step, RetryPolicy, ServiceDescriptor, RestartPolicy, Endpoint
from .probes import Probe
from .service import render_unit, unit_path
from .settings import ProvisionConfig
from .verifier import Verifier
from .variables import VariableContext

logger = logging.getLogger(__name__)

APT_PKGCACHE = '/var/cache/apt/pkgcache.bin'
APT_ENV = {'DEBIAN_FRONTEND': 'noninteractive'}
TAILSCALE_INSTALL_URL = 'https://tailscale.com/install.sh'

NETWORK_RETRY = RetryPolicy(max_attempts=3, backoff=10.0, multiplier=2.0)


def build_service(config: ProvisionConfig) -> ServiceDescriptor:
    """Describe the vLLM OpenAI-compatible API server unit."""
    exec_start = [
        config.venv_python, '-m', 'vllm.entrypoints.openai.api_server',
        '--model', config.model_id,
        '--host', config.host,
        '--port', str(config.port),
        '--max-model-len', str(config.max_model_len),
        '--dtype', config.dtype,
        '--tensor-parallel-size', str(config.tensor_parallel_size),
        '--download-dir', config.models_dir,
    ]
    if config.trust_remote_code:
        exec_start.append('--trust-remote-code')

    return ServiceDescriptor(
        name=config.service_name,
        description='vLLM API Server',
        exec_start=exec_start,
        working_directory=config.working_directory,
        environment={
            'PATH': f"{config.venv_path}/bin:/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
            'VLLM_LOGGING_LEVEL': config.vllm_log_level,
            'CUDA_VISIBLE_DEVICES': config.cuda_visible_devices,
        },
        restart=RestartPolicy(config.restart),
        restart_sec=config.restart_sec,
        enabled=config.service_enabled,
        running=config.service_running,
    )


def _install_unit(path: str, text: str, service_name: str):
    """Write the unit, reload systemd, and restart the service if it was running."""
    write = actions.write_file(path, text)
    reload = actions.systemctl('daemon-reload')
    try_restart = actions.systemctl('try-restart', service_name)

    async def action(context: VariableContext):
        await write(context)
        result = await reload(context)
        if not result.ok:
            return result
        return await try_restart(context)
    return action


def tailscale_serving(port: int) -> Probe:
    """True when tailscale serve already proxies to the local port."""
    def check(probe: Probe) -> bool:
        result = run_command_sync(['tailscale', 'serve', 'status'], timeout=probes.PROBE_COMMAND_TIMEOUT)
        probe.detail = result.output or f"exit status {result.returncode}"
        return result.ok and f"localhost:{port}" in result.stdout
    return Probe(f"tailscale_serving({port})", check)


def build_plan(config: ProvisionConfig) -> List[Step]:
    """Build the ordered provisioning steps for ``config``."""
    service = build_service(config)
    unit_file = unit_path(service)
    unit_text = render_unit(service)
    models_url = f"{config.local_url}/v1/models"

    def service_ready() -> Verifier:
        return Verifier(probes.service_active(service.name), interval=2.0, timeout=30.0,
                        name=f"{service.unit_name} active")

    def endpoint_ready() -> Verifier:
        return Verifier(probes.http_ok(models_url), interval=config.verify_interval,
                        timeout=config.verify_timeout, name=f"GET {models_url}")

    root = probes.is_root()
    tailscale_up = ['tailscale', 'up']
    if config.tailscale_auth_key_file:
        tailscale_up.append(f"--auth-key=file:{config.tailscale_auth_key_file}")

    if service.enabled:
        boot_step = Step(
            name='enable-service',
            description='Enable vLLM service',
            probe=probes.service_enabled(service.name),
            action=actions.commands(['systemctl', 'daemon-reload'], ['systemctl', 'enable', service.name]),
            requires=['write-service-unit'],
        )
    else:
        boot_step = Step(
            name='disable-service',
            description='Disable vLLM service at boot',
            probe=probes.negate(probes.service_enabled(service.name)),
            action=actions.systemctl('disable', service.name),
            requires=['write-service-unit'],
        )

    if service.running:
        run_steps = [
            Step(
                name='start-service',
                description='Start vLLM service',
                probe=probes.service_active(service.name),
                action=actions.systemctl('start', service.name),
                postcondition=service_ready,
                retry=RetryPolicy(max_attempts=2, backoff=5.0),
                hint=f"Check logs with: journalctl -u {service.name} -f",
                requires=[boot_step.name, 'hf-login', 'prepare-models-dir'],
            ),
            Step(
                name='verify-endpoint',
                description='Wait for the vLLM API to answer',
                probe=probes.http_ok(models_url),
                action=actions.wait_for(endpoint_ready),
                hint=f"Model download and load can take a while; check journalctl -u {service.name} -f",
                requires=['start-service'],
            ),
        ]
    else:
        run_steps = [
            Step(
                name='stop-service',
                description='Stop vLLM service',
                probe=probes.negate(probes.service_active(service.name)),
                action=actions.systemctl('stop', service.name),
                requires=[boot_step.name],
            ),
        ]

    steps = [
        Step(
            name='require-root',
            description='Check for root privileges',
            probe=root,
            action=actions.require(root, 'This tool must be run as root'),
            hint='Re-run with sudo',
        ),
        Step(
            name='apt-update',
            description='Update system packages',
            probe=probes.file_fresh(APT_PKGCACHE, config.apt_cache_max_age_hours * 3600),
            action=actions.commands(
                ['apt-get', 'update'],
                ['apt-get', 'upgrade', '-y'],
                env=APT_ENV,
            ),
            retry=NETWORK_RETRY,
            requires=['require-root'],
        ),
        Step(
            name='install-python',
            description='Install Python and essential packages',
            probe=probes.command_exists('python3'),
            action=actions.shell(
                'apt-get', 'install', '-y', 'python3', 'python3-pip', 'python3-venv', 'git', 'curl', 'wget',
                env=APT_ENV,
            ),
            retry=NETWORK_RETRY,
            requires=['apt-update'],
        ),
        Step(
            name='install-nvidia',
            description='Install NVIDIA driver and CUDA toolkit',
            probe=probes.gpu_visible(),
            action=actions.shell(
                'apt-get', 'install', '-y', config.driver_package, config.cuda_package,
                env=APT_ENV,
            ),
            retry=NETWORK_RETRY,
            requires=['apt-update'],
        ),
        Step(
            name='check-gpu',
            description='Verify the NVIDIA driver is loaded',
            probe=probes.gpu_visible(),
            action=actions.shell('nvidia-smi'),
            fatal=False,
            best_effort=True,
            hint='NVIDIA drivers not loaded. You may need to reboot.',
            requires=['install-nvidia'],
        ),
        Step(
            name='create-venv',
            description='Create Python virtual environment',
            probe=probes.file_exists(config.venv_python),
            action=actions.shell('python3', '-m', 'venv', config.venv_path),
            requires=['install-python'],
        ),
        Step(
            name='install-vllm',
            description='Install vLLM',
            probe=probes.python_module_importable(config.venv_python, 'vllm'),
            action=actions.commands(
                [config.venv_pip, 'install', '--upgrade', 'pip'],
                [config.venv_pip, 'install', 'vllm'],
            ),
            retry=NETWORK_RETRY,
            requires=['create-venv'],
        ),
        Step(
            name='install-hf-hub',
            description='Install Hugging Face hub client',
            probe=probes.python_module_importable(config.venv_python, 'huggingface_hub'),
            action=actions.shell(config.venv_pip, 'install', '--upgrade', 'huggingface_hub'),
            retry=NETWORK_RETRY,
            requires=['create-venv'],
        ),
        Step(
            name='hf-login',
            description='Set up Hugging Face authentication',
            probe=token_cached(),
            action=hub_login(config.venv_python, interactive=config.interactive),
            hint='Check the token at https://huggingface.co/settings/tokens and that the model license is accepted',
            requires=['install-hf-hub'],
        ),
        Step(
            name='prepare-models-dir',
            description='Create model download directory',
            probe=probes.file_exists(config.models_dir),
            action=actions.make_dirs(config.models_dir),
        ),
        Step(
            name='write-service-unit',
            description='Create vLLM systemd service',
            probe=probes.file_contains(unit_file, unit_text),
            action=_install_unit(unit_file, unit_text, service.name),
            requires=['install-vllm'],
        ),
        boot_step,
        *run_steps,
        Step(
            name='install-tailscale',
            description='Install Tailscale',
            probe=probes.command_exists('tailscale'),
            action=actions.shell('sh', '-c', f"curl -fsSL {TAILSCALE_INSTALL_URL} | sh"),
            retry=NETWORK_RETRY,
            requires=['install-python'],
        ),
        Step(
            name='tailscale-up',
            description='Connect to the tailnet',
            probe=probes.command_succeeds(['tailscale', 'status']),
            action=actions.shell(*tailscale_up, timeout=600),
            hint='Run "tailscale up" manually to authenticate this node, or set tailscale_auth_key_file',
            requires=['install-tailscale'],
        ),
    ]
    if service.running:
        steps.append(Step(
            name='tailscale-serve',
            description='Publish the vLLM endpoint on the tailnet',
            probe=tailscale_serving(config.port),
            action=actions.shell(
                'tailscale', 'serve', '--bg', f"--https={config.tailscale_https_port}",
                f"http://localhost:{config.port}",
            ),
            fatal=False,
            hint='Enable HTTPS certificates for the tailnet in the Tailscale admin console',
            requires=['tailscale-up', 'verify-endpoint'],
        ))
    return steps


async def discover_endpoint(config: ProvisionConfig) -> Endpoint:
    """Look up how the tailnet reaches this host.

    Missing values (Tailscale not connected) are left as None; the report
    then falls back to the local URL.
    """
    endpoint = Endpoint(port=config.port, https_port=config.tailscale_https_port)

    result = await run_command(['tailscale', 'ip', '-4'], timeout=30)
    if result.ok and result.stdout.strip():
        endpoint.ip = result.stdout.strip().splitlines()[0]

    result = await run_command(['tailscale', 'status', '--json'], timeout=30)
    if result.ok:
        try:
            dns_name = json.loads(result.stdout)['Self']['DNSName']
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Cannot parse tailscale status: {e}")
        else:
            endpoint.hostname = dns_name.rstrip('.') or None

    return endpoint
