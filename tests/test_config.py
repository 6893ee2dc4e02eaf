"""Tests for config.py - engine configuration loading."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import (
    ConfigError,
    EngineConfig,
    ProviderSettings,
    discover_config_path,
    load_engine_config,
    load_params_file,
)

EXAMPLES_DIR = Path(__file__).parent.parent / 'examples'


class TestEngineConfig:
    """Tests for EngineConfig."""

    def test_defaults(self):
        config = EngineConfig()
        assert config.state_backend == 'file'
        assert config.state_dir == Path('.stack-state')
        assert config.parallelism == 4
        assert config.lock_expiry_seconds == 900.0
        assert config.refresh is False
        assert config.report_dir is None

    def test_from_dict(self, tmp_path):
        source = tmp_path / 'stack-driver.yaml'
        config = EngineConfig.from_dict({
            'state': {'backend': 'file', 'dir': 'state'},
            'lock': {'expiry_seconds': 60, 'retries': 2, 'retry_delay': 0.5},
            'parallelism': 2,
            'refresh': True,
            'pseudo_parameters': {'AWS::Region': 'eu-west-1'},
            'providers': {
                'AWS::S3::Bucket': {'replace_properties': ['BucketName'], 'root': 'res'},
            },
            'report_dir': 'reports',
        }, source_path=source)
        assert config.state_dir == tmp_path / 'state'
        assert config.report_dir == tmp_path / 'reports'
        assert config.lock_expiry_seconds == 60.0
        assert config.lock_retries == 2
        assert config.lock_retry_delay == 0.5
        assert config.parallelism == 2
        assert config.refresh is True
        assert config.pseudo_parameters == {'AWS::Region': 'eu-west-1'}
        bucket = config.provider_settings('AWS::S3::Bucket')
        assert bucket.replace_properties == ['BucketName']
        assert bucket.root == tmp_path / 'res'

    def test_absolute_paths_kept(self, tmp_path):
        config = EngineConfig.from_dict({'state': {'dir': str(tmp_path / 'abs')}},
                                        source_path=Path('/etc/stack-driver.yaml'))
        assert config.state_dir == tmp_path / 'abs'

    def test_http_backend(self):
        config = EngineConfig.from_dict({
            'state': {'backend': 'http', 'url': 'https://s.example', 'verify_tls': False},
        })
        assert config.state_url == 'https://s.example'
        assert config.state_verify_tls is False

    def test_http_requires_url(self):
        with pytest.raises(ConfigError, match='state_url'):
            EngineConfig(state_backend='http')

    def test_unknown_backend(self):
        with pytest.raises(ConfigError, match='state_backend'):
            EngineConfig(state_backend='s3')

    def test_invalid_parallelism(self):
        with pytest.raises(ConfigError, match='parallelism'):
            EngineConfig(parallelism=0)

    def test_invalid_expiry(self):
        with pytest.raises(ConfigError, match='lock_expiry_seconds'):
            EngineConfig(lock_expiry_seconds=0)

    def test_provider_fallback(self):
        config = EngineConfig(providers={'*': ProviderSettings(replace_properties=['Name'])})
        assert config.provider_settings('Any').replace_properties == ['Name']
        assert EngineConfig().provider_settings('Any') == ProviderSettings()


class TestDiscovery:
    """Tests for config file discovery."""

    def test_explicit(self, tmp_path):
        path = tmp_path / 'custom.yaml'
        path.write_text('parallelism: 1\n')
        assert discover_config_path(str(path)) == path

    def test_explicit_missing(self, tmp_path):
        with pytest.raises(ConfigError, match='not found'):
            discover_config_path(str(tmp_path / 'missing.yaml'))

    def test_env_var(self, tmp_path, monkeypatch):
        path = tmp_path / 'env.yaml'
        path.write_text('parallelism: 1\n')
        monkeypatch.setenv('STACK_DRIVER_CONFIG', str(path))
        assert discover_config_path() == path

    def test_env_var_missing(self, tmp_path, monkeypatch):
        monkeypatch.setenv('STACK_DRIVER_CONFIG', str(tmp_path / 'nope.yaml'))
        with pytest.raises(ConfigError, match='does not exist'):
            discover_config_path()

    def test_working_directory(self, tmp_path, monkeypatch):
        monkeypatch.delenv('STACK_DRIVER_CONFIG', raising=False)
        monkeypatch.chdir(tmp_path)
        (tmp_path / 'stack-driver.yaml').write_text('parallelism: 3\n')
        assert discover_config_path() == tmp_path / 'stack-driver.yaml'
        assert load_engine_config().parallelism == 3

    def test_no_file_uses_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv('STACK_DRIVER_CONFIG', raising=False)
        monkeypatch.chdir(tmp_path)
        assert discover_config_path() is None
        assert load_engine_config() == EngineConfig()


class TestLoadEngineConfig:

    def test_example_config(self):
        config = load_engine_config(str(EXAMPLES_DIR / 'stack-driver.yaml'))
        assert config.source_path == EXAMPLES_DIR / 'stack-driver.yaml'
        assert config.state_backend == 'file'
        assert config.lock_retries == 3
        assert 'AWS::Region' in config.pseudo_parameters
        table = config.provider_settings('AWS::DynamoDB::Table')
        assert 'KeySchema' in table.replace_properties

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / 'bad.yaml'
        path.write_text('parallelism: [1\n')
        with pytest.raises(ConfigError, match='Invalid YAML'):
            load_engine_config(str(path))

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / 'list.yaml'
        path.write_text('- a\n- b\n')
        with pytest.raises(ConfigError, match='YAML object'):
            load_engine_config(str(path))


class TestLoadParamsFile:

    def test_yaml_params(self, tmp_path):
        path = tmp_path / 'params.yaml'
        path.write_text('BucketName: acme-tfstate\nReadCapacityUnits: 5\n')
        assert load_params_file(str(path)) == {'BucketName': 'acme-tfstate', 'ReadCapacityUnits': 5}

    def test_json_params(self, tmp_path):
        path = tmp_path / 'params.json'
        path.write_text('{"Env": "prod"}')
        assert load_params_file(str(path)) == {'Env': 'prod'}

    def test_missing(self, tmp_path):
        with pytest.raises(ConfigError, match='Parameters file not found'):
            load_params_file(str(tmp_path / 'none.yaml'))
