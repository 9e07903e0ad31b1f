"""
export_utils.py
Write import results to CSV, M3U and JSON.
"""

import json
import logging
import os
from pathlib import Path

import pandas as pd


CHANNEL_COLUMNS = [
    'number',
    'name',
    'category',
    'address',
    'logo',
    'id',
    'classification',
    'latency_ms',
    'error_detail',
]


def channels_to_dataframe(channels, verdicts=None):
    """Tabulate channel records, joined with their validation verdicts when given."""
    verdicts = verdicts or {}
    rows = []
    for channel in channels:
        row = channel.to_dict()
        verdict = verdicts.get(channel.address)
        row['classification'] = verdict.classification if verdict else None
        row['latency_ms'] = verdict.latency_ms if verdict else None
        row['error_detail'] = verdict.error_detail if verdict else None
        rows.append(row)
    df = pd.DataFrame(rows, columns=CHANNEL_COLUMNS)
    if not df.empty:
        df['number'] = pd.to_numeric(df['number'], errors='coerce').astype('Int64')
        df.sort_values(by='number', ascending=True, inplace=True)
    return df


def write_channels_csv(channels, output_csv, verdicts=None):
    df = channels_to_dataframe(channels, verdicts)
    Path(output_csv).parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_csv, index=False, na_rep='N/A')
    logging.info(f"Wrote {len(df)} channels to {output_csv}")
    return len(df)


def _escape_attr(value):
    return str(value).replace('"', "'")


def render_m3u(channels):
    """Render channel records as an extended M3U playlist."""
    lines = ['#EXTM3U']
    for channel in channels:
        attrs = [
            f'tvg-id="{_escape_attr(channel.id)}"',
            f'tvg-chno="{channel.number}"',
            f'tvg-name="{_escape_attr(channel.name)}"',
        ]
        if channel.logo:
            attrs.append(f'tvg-logo="{_escape_attr(channel.logo)}"')
        attrs.append(f'group-title="{_escape_attr(channel.category)}"')
        lines.append(f"#EXTINF:-1 {' '.join(attrs)},{channel.name}")
        lines.append(channel.address)
    return '\n'.join(lines) + '\n'


def write_channels_m3u(channels, output_m3u):
    path = Path(output_m3u)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_m3u(channels), encoding='utf-8')
    logging.info(f"Wrote {len(channels)} channels to {output_m3u}")
    return len(channels)


def _atomic_json_write(path: Path, payload):
    """
    Atomically write JSON to disk (temp file + replace).
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + '.tmp')
    with open(tmp_path, 'w', encoding='utf-8') as handle:
        json.dump(payload, handle, indent=2)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def write_stats_json(result, output_json):
    """Persist statistics, errors and flags of an ImportResult."""
    payload = {
        'stats': result.stats.to_dict(),
        'errors': list(result.errors),
        'cancelled': result.cancelled,
        'empty_after_filtering': result.empty_after_filtering,
        'channel_count': len(result.channels),
    }
    _atomic_json_write(Path(output_json), payload)
    return payload
