import json
from unittest import mock

import run_import
from pipeline_models import (
    CONFIRMED_LIVE,
    ChannelRecord,
    ImportResult,
    ImportStatistics,
    ValidationVerdict,
)


def _fake_pipeline(result):
    pipeline = mock.Mock()
    pipeline.run.return_value = result
    return pipeline


def _patch_pipeline(monkeypatch, result):
    pipeline = _fake_pipeline(result)
    captured = {}

    def _from_config(config, cache=None, **kwargs):
        captured['cache'] = cache
        return pipeline

    monkeypatch.setattr(run_import.ImportPipeline, 'from_config', staticmethod(_from_config))
    return pipeline, captured


def test_cli_writes_outputs_and_cache(tmp_path, monkeypatch):
    channel = ChannelRecord('imported-1', 700, 'News', 'http://x/1.m3u8', 'News')
    result = ImportResult(channels=[channel], stats=ImportStatistics(total=1, validated=1, valid=1))
    pipeline, captured = _patch_pipeline(monkeypatch, result)

    def _run(url, existing_addresses=None, options=None, progress_callback=None):
        captured['cache'].put(ValidationVerdict('http://x/1.m3u8', True, CONFIRMED_LIVE,
                                                captured['cache'].clock()))
        captured['options'] = options
        captured['existing'] = existing_addresses
        return result

    pipeline.run.side_effect = _run
    existing = tmp_path / 'existing.txt'
    existing.write_text('http://x/old.m3u8\n# comment\n\n')

    code = run_import.main([
        '--url', 'http://lists.example.com/tv.m3u',
        '--working-dir', str(tmp_path),
        '--country', 'US', '--country', 'CA',
        '--language', 'en',
        '--start-number', '700',
        '--existing', str(existing),
        '--output-csv', str(tmp_path / 'out.csv'),
        '--output-m3u', str(tmp_path / 'out.m3u'),
        '--stats-json', str(tmp_path / 'stats.json'),
    ])

    assert code == 0
    assert captured['options'].filter_countries == ['US', 'CA']
    assert captured['options'].filter_languages == ['en']
    assert captured['options'].starting_number == 700
    assert captured['existing'] == {'http://x/old.m3u8'}
    assert (tmp_path / 'out.csv').exists()
    assert 'http://x/1.m3u8' in (tmp_path / 'out.m3u').read_text()
    assert json.loads((tmp_path / 'stats.json').read_text())['stats']['valid'] == 1

    cache_file = tmp_path / 'cache' / 'validation_cache.json'
    assert json.loads(cache_file.read_text())[0]['address'] == 'http://x/1.m3u8'


def test_cli_returns_error_code_without_channels(tmp_path, monkeypatch):
    _patch_pipeline(monkeypatch, ImportResult(errors=['No channels found in playlist']))

    code = run_import.main([
        '--url', 'http://lists.example.com/tv.m3u',
        '--working-dir', str(tmp_path),
        '--no-validate',
        '--output-csv', str(tmp_path / 'out.csv'),
    ])

    assert code == 1
    assert not (tmp_path / 'out.csv').exists()


def test_cli_missing_existing_file(tmp_path, monkeypatch):
    _patch_pipeline(monkeypatch, ImportResult())
    code = run_import.main([
        '--url', 'http://lists.example.com/tv.m3u',
        '--working-dir', str(tmp_path),
        '--existing', str(tmp_path / 'missing.txt'),
    ])
    assert code == 1
