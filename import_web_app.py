#!/usr/bin/env python3
"""
import_web_app.py
HTTP API for running playlist imports in the background.
"""

import logging
import os
import sys
import threading
import uuid
from datetime import datetime

from flask import Flask, Response, jsonify, request
from flask_cors import CORS

from import_pipeline import ImportPipeline, PlaylistFetchError, convert_github_url, fetch_playlist
from pipeline_config import Config
from pipeline_models import ImportOptions
from stream_validator import VerdictCache

logging.basicConfig(level=logging.INFO, stream=sys.stdout)

app = Flask(__name__)

CORS(app)

CONFIG_PATH = os.getenv('IMPORTER_CONFIG', 'config.yaml')

jobs = {}
job_lock = threading.Lock()

_shared_state = {'config': None, 'cache': None, 'pipeline': None}
_state_lock = threading.Lock()

_BOOL_FIELDS = ('validate_streams', 'skip_duplicates', 'force_revalidate')
_LIST_FIELDS = ('filter_countries', 'filter_languages')
_INT_FIELDS = ('max_channels', 'starting_number')


def _get_config():
    with _state_lock:
        if _shared_state['config'] is None:
            _shared_state['config'] = Config(CONFIG_PATH)
        return _shared_state['config']


def _get_cache():
    """Process-wide verdict cache shared by every import job."""
    config = _get_config()
    with _state_lock:
        if _shared_state['cache'] is None:
            ttl = config.get('validation', 'cache_ttl_seconds', 3600)
            _shared_state['cache'] = VerdictCache(ttl_seconds=ttl)
        return _shared_state['cache']


def _get_pipeline():
    """Process-wide pipeline; jobs share its verdict cache, directory cache and HTTP sessions."""
    config = _get_config()
    cache = _get_cache()
    with _state_lock:
        if _shared_state['pipeline'] is None:
            _shared_state['pipeline'] = ImportPipeline.from_config(config, cache=cache)
        return _shared_state['pipeline']


class ImportJob:
    """Represents a running or completed import"""

    def __init__(self, job_id, url, options, existing_addresses=None):
        self.job_id = job_id
        self.url = url
        self.options = options
        self.existing_addresses = existing_addresses or []
        self.status = 'queued'  # queued, running, completed, failed, cancelled
        self.phase = None
        self.current = 0
        self.total = 0
        self.message = ''
        self.started_at = datetime.now().isoformat()
        self.completed_at = None
        self.error = None
        self.result = None
        self.cancel_event = threading.Event()
        self.thread = None

    @property
    def cancel_requested(self):
        return self.cancel_event.is_set()

    def to_dict(self):
        """Convert to dictionary for JSON serialization"""
        return {
            'job_id': self.job_id,
            'url': self.url,
            'status': self.status,
            'phase': self.phase,
            'current': self.current,
            'total': self.total,
            'message': self.message,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
            'error': self.error,
            'cancel_requested': self.cancel_requested,
            'result': self.result.to_dict() if self.result is not None else None,
        }


def progress_callback(job, progress):
    """Mirror pipeline progress onto the job"""
    job.phase = progress.phase
    job.current = progress.current
    job.total = progress.total
    job.message = progress.message


def run_import_worker(job, pipeline):
    """Background worker"""
    job.status = 'running'
    try:
        result = pipeline.run(
            job.url,
            existing_addresses=job.existing_addresses,
            options=job.options,
            progress_callback=lambda progress: progress_callback(job, progress),
            cancel_event=job.cancel_event,
        )
        job.result = result
        if result.cancelled:
            job.status = 'cancelled'
        elif not result.channels and not result.empty_after_filtering:
            job.status = 'failed'
            job.error = result.errors[0] if result.errors else 'Import produced no channels'
        else:
            job.status = 'completed'
    except Exception as e:
        logging.exception(f"Import job {job.job_id} crashed")
        job.status = 'failed'
        job.error = str(e)
    finally:
        job.completed_at = datetime.now().isoformat()


def _as_string_list(name, value):
    """Accept a list of strings or a comma-separated string."""
    if isinstance(value, str):
        value = value.split(',')
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"{name} must be a list of strings")
    return [item.strip() for item in value if item.strip()]


def _options_from_request(data):
    """Overlay request fields on the configured import options, rejecting mistyped values."""
    options = ImportOptions.from_config(_get_config())

    for name in _BOOL_FIELDS:
        value = data.get(name)
        if value is None:
            continue
        if not isinstance(value, bool):
            raise ValueError(f"{name} must be true or false")
        setattr(options, name, value)

    for name in _LIST_FIELDS:
        value = data.get(name)
        if value is not None:
            setattr(options, name, _as_string_list(name, value))

    for name in _INT_FIELDS:
        value = data.get(name)
        if value is None:
            continue
        if isinstance(value, bool):
            raise ValueError(f"{name} must be a number")
        setattr(options, name, int(value))

    if options.max_channels is not None and options.max_channels < 0:
        raise ValueError("max_channels cannot be negative")
    return options


@app.route('/health')
def health_check():
    """Lightweight health endpoint."""
    return jsonify({'status': 'ok'}), 200


@app.route('/api/import', methods=['POST'])
def api_start_import():
    """Start a new import job"""
    data = request.get_json(silent=True) or {}
    url = (data.get('url') or '').strip()
    if not url:
        return jsonify({'success': False, 'error': 'Missing required parameter: url'}), 400

    try:
        options = _options_from_request(data)
    except (TypeError, ValueError) as e:
        return jsonify({'success': False, 'error': f'Invalid import options: {e}'}), 400

    existing = data.get('existing_addresses') or []
    if not isinstance(existing, list):
        return jsonify({'success': False, 'error': 'existing_addresses must be a list'}), 400

    try:
        pipeline = _get_pipeline()
    except Exception as e:
        logging.error(f"Could not set up import pipeline: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500

    job = ImportJob(str(uuid.uuid4()), url, options, existing)
    job.thread = threading.Thread(
        target=run_import_worker,
        args=(job, pipeline),
        daemon=True
    )

    with job_lock:
        jobs[job.job_id] = job

    job.thread.start()
    return jsonify({'success': True, 'job_id': job.job_id, 'job': job.to_dict()})


@app.route('/api/import/<job_id>')
def api_get_import(job_id):
    """Get import status"""
    with job_lock:
        job = jobs.get(job_id)

    if not job:
        return jsonify({'success': False, 'error': 'Job not found'}), 404

    return jsonify({'success': True, 'job': job.to_dict()})


@app.route('/api/import/<job_id>/cancel', methods=['POST'])
def api_cancel_import(job_id):
    """Cancel a running import"""
    with job_lock:
        job = jobs.get(job_id)

    if not job:
        return jsonify({'success': False, 'error': 'Job not found'}), 404

    if job.status in ('queued', 'running'):
        job.cancel_event.set()
        return jsonify({'success': True, 'message': 'Cancellation requested'})
    return jsonify({'success': False, 'error': 'Job is not running'}), 400


@app.route('/api/fetch-playlist')
def api_fetch_playlist():
    """Server-side playlist download, for clients that cannot fetch cross-origin"""
    url = (request.args.get('url') or '').strip()
    if not url:
        return jsonify({'success': False, 'error': 'URL parameter is required'}), 400
    if not url.lower().startswith(('http://', 'https://')):
        return jsonify({'success': False, 'error': 'Invalid URL protocol'}), 400

    config = _get_config()
    try:
        content = fetch_playlist(
            convert_github_url(url),
            timeout=config.get('fetch', 'timeout', 30),
            user_agent=config.get('fetch', 'user_agent'),
        )
    except PlaylistFetchError as e:
        return jsonify({'success': False, 'error': str(e)}), 502

    if '#EXTM3U' not in content and '#EXTINF' not in content:
        return jsonify({'success': False, 'error': 'Response is not a valid M3U playlist'}), 422

    return Response(content, mimetype='text/plain')


@app.route('/api/validation-cache', methods=['DELETE'])
def api_clear_validation_cache():
    """Forget all cached validation verdicts"""
    cache = _get_cache()
    cleared = len(cache)
    cache.clear()
    logging.info(f"Cleared {cleared} cached validation results")
    return jsonify({'success': True, 'cleared': cleared})


if __name__ == '__main__':
    logging.info("Starting playlist importer on http://0.0.0.0:5000")
    app.run(host='0.0.0.0', port=5000, debug=False, threaded=True)
