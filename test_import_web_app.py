from unittest import mock

import pytest

import import_web_app as web
from directory_api import DirectoryRecord
from import_pipeline import PlaylistFetchError
from pipeline_models import (
    CONFIRMED_LIVE,
    ChannelRecord,
    ImportResult,
    ImportStatistics,
    ValidationVerdict,
)


class FakePipeline:
    def __init__(self, result=None, wait_for_cancel=False):
        self.result = result or ImportResult(
            channels=[ChannelRecord('imported-1', 400, 'News', 'http://x/1.m3u8', 'News')],
            stats=ImportStatistics(total=1),
        )
        self.wait_for_cancel = wait_for_cancel
        self.calls = []

    def run(self, url, existing_addresses=None, options=None, progress_callback=None, cancel_event=None):
        self.calls.append({'url': url, 'existing': existing_addresses, 'options': options})
        if self.wait_for_cancel:
            cancel_event.wait(5)
            return ImportResult(cancelled=cancel_event.is_set(), errors=['Import cancelled'])
        return self.result


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(web, 'CONFIG_PATH', str(tmp_path / 'config.yaml'))
    monkeypatch.setitem(web._shared_state, 'config', None)
    monkeypatch.setitem(web._shared_state, 'cache', None)
    monkeypatch.setitem(web._shared_state, 'pipeline', None)
    monkeypatch.setattr(web, 'jobs', {})
    web.app.config['TESTING'] = True
    return web.app.test_client()


def _wait(job_id):
    job = web.jobs[job_id]
    job.thread.join(5)
    return job


def test_health(client):
    response = client.get('/health')
    assert response.status_code == 200
    assert response.get_json() == {'status': 'ok'}


def test_start_import_requires_url(client):
    response = client.post('/api/import', json={})
    assert response.status_code == 400
    assert response.get_json()['success'] is False


def test_start_import_runs_in_background(client, monkeypatch):
    pipeline = FakePipeline()
    monkeypatch.setattr(web, '_get_pipeline', lambda: pipeline)

    response = client.post('/api/import', json={
        'url': 'http://lists.example.com/tv.m3u',
        'filter_countries': ['US'],
        'max_channels': '5',
        'existing_addresses': ['http://x/old.m3u8'],
    })
    payload = response.get_json()
    assert payload['success'] is True

    job = _wait(payload['job_id'])
    assert job.status == 'completed'
    options = pipeline.calls[0]['options']
    assert options.filter_countries == ['US']
    assert options.max_channels == 5
    assert options.starting_number == 400
    assert pipeline.calls[0]['existing'] == ['http://x/old.m3u8']

    status = client.get(f"/api/import/{payload['job_id']}").get_json()
    assert status['job']['status'] == 'completed'
    assert status['job']['result']['channels'][0]['number'] == 400


def test_failed_import_reports_first_error(client, monkeypatch):
    pipeline = FakePipeline(result=ImportResult(errors=['HTTP 404: Not Found']))
    monkeypatch.setattr(web, '_get_pipeline', lambda: pipeline)

    job_id = client.post('/api/import', json={'url': 'http://x/tv.m3u'}).get_json()['job_id']

    job = _wait(job_id)
    assert job.status == 'failed'
    assert job.error == 'HTTP 404: Not Found'


def test_cancel_import(client, monkeypatch):
    monkeypatch.setattr(web, '_get_pipeline', lambda: FakePipeline(wait_for_cancel=True))
    job_id = client.post('/api/import', json={'url': 'http://x/tv.m3u'}).get_json()['job_id']

    response = client.post(f'/api/import/{job_id}/cancel')
    assert response.get_json()['success'] is True

    job = _wait(job_id)
    assert job.status == 'cancelled'

    response = client.post(f'/api/import/{job_id}/cancel')
    assert response.status_code == 400


def test_unknown_job(client):
    assert client.get('/api/import/nope').status_code == 404
    assert client.post('/api/import/nope/cancel').status_code == 404


@pytest.mark.parametrize('url', ['', 'ftp://example.com/list.m3u', 'file:///etc/passwd'])
def test_fetch_playlist_rejects_bad_urls(client, url):
    response = client.get('/api/fetch-playlist', query_string={'url': url})
    assert response.status_code == 400


def test_fetch_playlist_proxies_content(client, monkeypatch):
    seen = {}

    def _fake_fetch(url, **kwargs):
        seen['url'] = url
        return '#EXTM3U\n#EXTINF:-1,A\nhttp://x/a.m3u8\n'

    monkeypatch.setattr(web, 'fetch_playlist', _fake_fetch)
    response = client.get('/api/fetch-playlist',
                          query_string={'url': 'https://github.com/u/r/blob/main/tv.m3u'})

    assert response.status_code == 200
    assert response.get_data(as_text=True).startswith('#EXTM3U')
    assert seen['url'] == 'https://raw.githubusercontent.com/u/r/main/tv.m3u'


def test_fetch_playlist_rejects_non_playlists(client, monkeypatch):
    monkeypatch.setattr(web, 'fetch_playlist', lambda url, **kwargs: '<html></html>')
    response = client.get('/api/fetch-playlist', query_string={'url': 'http://x/tv.m3u'})
    assert response.status_code == 422


def test_fetch_playlist_upstream_failure(client, monkeypatch):
    def _fail(url, **kwargs):
        raise PlaylistFetchError('HTTP 500: Server Error')

    monkeypatch.setattr(web, 'fetch_playlist', _fail)
    response = client.get('/api/fetch-playlist', query_string={'url': 'http://x/tv.m3u'})
    assert response.status_code == 502
    assert 'HTTP 500' in response.get_json()['error']


def test_clear_validation_cache(client):
    cache = web._get_cache()
    cache.put(ValidationVerdict('http://x/a', True, CONFIRMED_LIVE, cache.clock()))

    response = client.delete('/api/validation-cache')

    assert response.get_json() == {'success': True, 'cleared': 1}
    assert len(cache) == 0


def test_jobs_share_one_directory_fetch(client):
    stale = 'https://service-stitcher.clusters.pluto.tv/stitch/hls/channel/abc/master.m3u8?sid=old'
    fresh = 'https://service-stitcher.clusters.pluto.tv/v2/stitch/hls/channel/abc/master.m3u8?sid=new'
    pipeline = web._get_pipeline()
    assert web._get_pipeline() is pipeline
    assert pipeline.validator.cache is web._get_cache()

    page = mock.Mock(status_code=200, text=f"#EXTM3U\n#EXTINF:-1,Pluto News\n{stale}\n")
    pipeline.session = mock.Mock()
    pipeline.session.get.return_value = page
    directory_api = mock.Mock()
    directory_api.fetch_channels.return_value = [
        DirectoryRecord(id='pluto-abc', slug='pluto-news', name='Pluto News', stream_address=fresh),
    ]
    pipeline.resolver.directory_api = directory_api

    for _ in range(2):
        job_id = client.post('/api/import', json={'url': 'http://x/pluto.m3u'}).get_json()['job_id']
        job = _wait(job_id)
        assert job.status == 'completed'
        assert job.result.channels[0].address == fresh

    directory_api.fetch_channels.assert_called_once()


@pytest.mark.parametrize('field,value,expected', [
    ('filter_countries', 'US', ['US']),
    ('filter_countries', 'US, ca', ['US', 'ca']),
    ('filter_languages', ['en', ' fr '], ['en', 'fr']),
    ('validate_streams', False, False),
    ('starting_number', '700', 700),
])
def test_request_options_are_coerced(client, field, value, expected):
    options = web._options_from_request({field: value})
    assert getattr(options, field) == expected


@pytest.mark.parametrize('payload', [
    {'validate_streams': 'false'},
    {'skip_duplicates': 0},
    {'filter_countries': ['US', 3]},
    {'filter_languages': {'en': True}},
    {'max_channels': 'ten'},
    {'max_channels': -1},
    {'starting_number': True},
])
def test_mistyped_options_are_rejected(client, monkeypatch, payload):
    pipeline = FakePipeline()
    monkeypatch.setattr(web, '_get_pipeline', lambda: pipeline)

    response = client.post('/api/import', json=dict(payload, url='http://x/tv.m3u'))

    assert response.status_code == 400
    assert 'Invalid import options' in response.get_json()['error']
    assert pipeline.calls == []
