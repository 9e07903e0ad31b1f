#!/usr/bin/env python3
"""
run_import.py
Import channels from an M3U playlist URL from the command line.
"""

import argparse
import logging
import sys
from pathlib import Path

from export_utils import write_channels_csv, write_channels_m3u, write_stats_json
from import_pipeline import ImportPipeline
from pipeline_config import Config
from pipeline_models import ImportOptions
from stream_validator import VerdictCache


def _build_parser():
    parser = argparse.ArgumentParser(
        description="Import, filter and validate channels from an M3U playlist."
    )
    parser.add_argument(
        '--url',
        required=True,
        help='Playlist URL (GitHub page URLs are rewritten to raw content)'
    )
    parser.add_argument(
        '--config',
        default='config.yaml',
        help='Path to config.yaml (default: config.yaml)'
    )
    parser.add_argument(
        '--working-dir',
        default=None,
        help='Working directory for config, cache and output files'
    )
    parser.add_argument(
        '--country',
        action='append',
        default=None,
        help='Keep only entries tagged with this country (repeatable)'
    )
    parser.add_argument(
        '--language',
        action='append',
        default=None,
        help='Keep only entries tagged with this language (repeatable)'
    )
    parser.add_argument(
        '--max-channels',
        type=int,
        default=None,
        help='Import at most this many channels'
    )
    parser.add_argument(
        '--no-validate',
        action='store_true',
        help='Skip stream validation'
    )
    parser.add_argument(
        '--existing',
        default=None,
        help='File with one already-imported stream address per line'
    )
    parser.add_argument(
        '--start-number',
        type=int,
        default=None,
        help='First channel number to assign'
    )
    parser.add_argument('--output-csv', default=None, help='Write imported channels to this CSV file')
    parser.add_argument('--output-m3u', default=None, help='Write imported channels to this M3U file')
    parser.add_argument('--stats-json', default=None, help='Write import statistics to this JSON file')
    return parser


def _load_existing_addresses(path):
    if not path:
        return set()
    with open(path, 'r', encoding='utf-8') as handle:
        return {line.strip() for line in handle if line.strip() and not line.startswith('#')}


def _build_options(args, config):
    options = ImportOptions.from_config(config)
    if args.country:
        options.filter_countries = args.country
    if args.language:
        options.filter_languages = args.language
    if args.max_channels is not None:
        options.max_channels = args.max_channels
    if args.no_validate:
        options.validate_streams = False
    if args.start_number is not None:
        options.starting_number = args.start_number
    return options


def _log_progress(progress):
    logging.info(f"[{progress.phase}] {progress.message}")


def main(argv=None):
    logging.basicConfig(level=logging.INFO, stream=sys.stdout)
    parser = _build_parser()
    args = parser.parse_args(argv)

    config = Config(args.config, working_dir=args.working_dir)
    options = _build_options(args, config)

    try:
        existing = _load_existing_addresses(args.existing)
    except OSError as exc:
        logging.error(f"Could not read existing addresses file: {exc}")
        return 1

    cache = VerdictCache(ttl_seconds=config.get('validation', 'cache_ttl_seconds', 3600))
    cache_file = config.get('validation', 'cache_file')
    cache_path = Path(config.resolve_path(cache_file)) if cache_file else None
    if cache_path:
        loaded = cache.load(cache_path)
        if loaded:
            logging.info(f"Loaded {loaded} cached validation results")

    pipeline = ImportPipeline.from_config(config, cache=cache)
    result = pipeline.run(
        args.url,
        existing_addresses=existing,
        options=options,
        progress_callback=_log_progress,
    )

    if cache_path and options.validate_streams:
        saved = cache.save(cache_path)
        logging.info(f"Saved {saved} validation results to {cache_path}")

    for error in result.errors:
        logging.error(error)

    if args.stats_json:
        write_stats_json(result, args.stats_json)
    if not result.channels:
        return 1

    if args.output_csv:
        write_channels_csv(result.channels, args.output_csv, result.verdicts)
    if args.output_m3u:
        write_channels_m3u(result.channels, args.output_m3u)

    stats = result.stats
    logging.info(
        f"Imported {len(result.channels)} channels "
        f"(total {stats.total}, refreshed {stats.resolved}, filtered {stats.filtered_total()}, "
        f"valid {stats.valid}, invalid {stats.invalid})"
    )
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
