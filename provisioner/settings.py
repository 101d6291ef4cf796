"""Settings management for the provisioner.

Resolution order (highest priority first): command-line overrides,
PROVISION_* environment variables, the JSON settings file, built-in
defaults.
"""

import json
import logging
import os
from dataclasses import dataclass, fields
from typing import Optional

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_FILE = '/etc/provisioner/settings.json'
ENV_PREFIX = 'PROVISION_'


@dataclass
class ProvisionConfig:
    """Validated configuration for one provisioning run."""

    model_id: str
    host: str = '0.0.0.0'
    port: int = 8000
    max_model_len: int = 4096
    dtype: str = 'auto'
    tensor_parallel_size: int = 1
    trust_remote_code: bool = True
    cuda_visible_devices: str = '0'
    vllm_log_level: str = 'DEBUG'
    venv_path: str = '/opt/vllm-env'
    models_dir: str = '/opt/models'
    working_directory: str = '/opt'
    service_name: str = 'vllm'
    restart: str = 'always'
    restart_sec: int = 10
    service_enabled: bool = True
    service_running: bool = True
    driver_package: str = 'nvidia-driver-535'
    cuda_package: str = 'nvidia-cuda-toolkit'
    apt_cache_max_age_hours: float = 24.0
    tailscale_https_port: int = 443
    tailscale_auth_key_file: str = ''
    verify_timeout: float = 120.0
    verify_interval: float = 5.0
    lock_path: str = '/run/provisioner.lock'
    interactive: bool = True

    @property
    def venv_python(self) -> str:
        return os.path.join(self.venv_path, 'bin', 'python')

    @property
    def venv_pip(self) -> str:
        return os.path.join(self.venv_path, 'bin', 'pip')

    @property
    def local_url(self) -> str:
        return f"http://localhost:{self.port}"

    def as_variables(self) -> dict:
        """Flat {name: value} view for command templating."""
        variables = {f.name: getattr(self, f.name) for f in fields(self)}
        variables['venv_python'] = self.venv_python
        variables['venv_pip'] = self.venv_pip
        variables['local_url'] = self.local_url
        return variables


def _default_settings() -> dict:
    """Return default settings (everything except the model)."""
    return {
        f.name: f.default for f in fields(ProvisionConfig)
        if f.name != 'model_id'
    }


def _coerce(name: str, value, template):
    """Convert a settings value to the type of its default."""
    if value is None:
        return template
    try:
        if isinstance(template, bool):
            if isinstance(value, str):
                return value.strip().lower() in ('1', 'true', 'yes', 'y', 'on')
            return bool(value)
        if isinstance(template, int):
            return int(value)
        if isinstance(template, float):
            return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {value!r}") from e
    return str(value)


class Settings:
    """Handles loading settings and building a ProvisionConfig."""

    def __init__(self, settings_file=None, environ=None):
        self.settings_file = settings_file or DEFAULT_SETTINGS_FILE
        self.environ = os.environ if environ is None else environ
        self.data = self._load_settings()

    def _load_settings(self):
        """Load settings from file over the defaults."""
        data = _default_settings()
        data['model_id'] = None
        if os.path.exists(self.settings_file):
            try:
                with open(self.settings_file, 'r') as f:
                    loaded = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise ConfigError(f"Cannot load settings from {self.settings_file}: {e}") from e
            if not isinstance(loaded, dict):
                raise ConfigError(f"{self.settings_file} must contain a JSON object")
            unknown = set(loaded) - set(data)
            if unknown:
                logger.warning(f"[Settings] Ignoring unknown keys: {sorted(unknown)}")
            data.update({k: v for k, v in loaded.items() if k in data})
            logger.info(f"[Settings] Loaded settings from {self.settings_file}")
        else:
            logger.debug(f"[Settings] {self.settings_file} not found, using defaults")

        for key in list(data):
            env_value = self.environ.get(ENV_PREFIX + key.upper())
            if env_value is not None:
                data[key] = env_value
        return data

    def set_multiple(self, updates):
        """Apply overrides (e.g. from the command line); None values are ignored."""
        self.data.update({k: v for k, v in updates.items() if v is not None})

    def build_config(self) -> ProvisionConfig:
        """Validate settings and return a ProvisionConfig.

        Raises:
            ConfigError: model_id missing or a value has the wrong type
        """
        defaults = _default_settings()
        model_id = (self.data.get('model_id') or '').strip()
        if not model_id:
            raise ConfigError(
                "model_id is required (--model, PROVISION_MODEL_ID, or 'model_id' in the settings file)"
            )

        values = {'model_id': model_id}
        for key, template in defaults.items():
            values[key] = _coerce(key, self.data.get(key, template), template)

        if not 0 < values['port'] < 65536:
            raise ConfigError(f"Invalid port: {values['port']}")
        if values['restart'] not in ('always', 'on-failure'):
            raise ConfigError(f"restart must be 'always' or 'on-failure', not {values['restart']!r}")
        if values['verify_interval'] <= 0 or values['verify_timeout'] <= 0:
            raise ConfigError("verify_interval and verify_timeout must be positive")

        return ProvisionConfig(**values)
