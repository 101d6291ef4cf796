import json

import pytest

from provisioner.errors import ConfigError
from provisioner.settings import Settings


def write_settings(tmp_path, data):
    path = tmp_path / 'settings.json'
    path.write_text(json.dumps(data))
    return str(path)


def test_defaults(tmp_path):
    settings = Settings(str(tmp_path / 'missing.json'), environ={})
    settings.set_multiple({'model_id': 'google/gemma-3n-E4B-it'})

    config = settings.build_config()

    assert config.port == 8000
    assert config.host == '0.0.0.0'
    assert config.max_model_len == 4096
    assert config.venv_python == '/opt/vllm-env/bin/python'
    assert config.restart == 'always'
    assert config.restart_sec == 10
    assert config.local_url == 'http://localhost:8000'


def test_model_id_is_required(tmp_path):
    settings = Settings(str(tmp_path / 'missing.json'), environ={})
    with pytest.raises(ConfigError, match='model_id is required'):
        settings.build_config()


def test_resolution_order(tmp_path):
    path = write_settings(tmp_path, {'model_id': 'from-file', 'port': 9000, 'max_model_len': 8192})
    settings = Settings(path, environ={'PROVISION_PORT': '9100', 'PROVISION_TRUST_REMOTE_CODE': 'no'})
    settings.set_multiple({'model_id': 'from-cli', 'port': None})

    config = settings.build_config()

    assert config.model_id == 'from-cli'
    assert config.port == 9100
    assert config.max_model_len == 8192
    assert config.trust_remote_code is False


def test_invalid_values(tmp_path):
    settings = Settings(write_settings(tmp_path, {'model_id': 'm', 'port': 'eighty'}), environ={})
    with pytest.raises(ConfigError, match='port'):
        settings.build_config()

    settings = Settings(write_settings(tmp_path, {'model_id': 'm', 'restart': 'sometimes'}), environ={})
    with pytest.raises(ConfigError, match='restart'):
        settings.build_config()


def test_unreadable_file(tmp_path):
    path = tmp_path / 'settings.json'
    path.write_text('{not json')
    with pytest.raises(ConfigError):
        Settings(str(path), environ={})


def test_as_variables(tmp_path):
    settings = Settings(write_settings(tmp_path, {'model_id': 'm'}), environ={})
    variables = settings.build_config().as_variables()
    assert variables['model_id'] == 'm'
    assert variables['venv_pip'] == '/opt/vllm-env/bin/pip'
