import json
import logging

import pytest

from chronos.config import ChronosConfig, ConfigError, LogLevel


def write_config(tmp_path, content):
    path = tmp_path / 'chronos.json'
    path.write_text(content if isinstance(content, str) else json.dumps(content), encoding='utf-8')
    return str(path)


def test_defaults():
    config = ChronosConfig()
    assert config.max_mft_records == 1000
    assert config.output_path == 'timeline.html'
    assert config.display_timezone == 'UTC'
    assert config.log_level is LogLevel.INFO
    assert config.sqlite_path is None


def test_load_from_file(tmp_path):
    path = write_config(tmp_path, {
        'max_mft_records': 50000,
        'workers': 2,
        'display_timezone': 'America/New_York',
        'log_level': 'debug',
    })
    config = ChronosConfig.load(path)
    assert config.max_mft_records == 50000
    assert config.workers == 2
    assert config.log_level is LogLevel.DEBUG
    assert config.log_level.value == logging.DEBUG
    assert config.to_dict()['log_level'] == 'DEBUG'


@pytest.mark.parametrize('content, message', [
    ({'max_mft_record': 5}, 'Unknown configuration keys: max_mft_record'),
    ({'max_log_records': -1}, 'non-negative'),
    ({'max_prefetch_files': True}, 'non-negative'),
    ({'workers': 0}, 'positive'),
    ({'workers': True}, 'positive'),
    ({'display_timezone': 'Mars/Base'}, 'Unknown timezone'),
    ({'log_level': 'LOUD'}, 'Unknown log level'),
    ('[1, 2, 3]', 'JSON object'),
    ('{not json', 'Error loading configuration'),
])
def test_invalid_configuration(tmp_path, content, message):
    with pytest.raises(ConfigError, match=message):
        ChronosConfig.load(write_config(tmp_path, content))


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError, match='not found'):
        ChronosConfig.load(str(tmp_path / 'absent.json'))


def test_overrides_skip_none_and_revalidate():
    config = ChronosConfig()
    assert config.with_overrides(workers=None) is config

    changed = config.with_overrides(workers=8, output_path='out/report.html', display_timezone=None)
    assert changed.workers == 8
    assert changed.output_path == 'out/report.html'
    assert config.workers == 4

    with pytest.raises(ConfigError):
        config.with_overrides(display_timezone='Nowhere/Special')
