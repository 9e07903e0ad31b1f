"""
directory_api.py
Client for the Pluto TV channel directory (current channels with live stream URLs)
"""

import logging
import os
import time
import uuid
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlencode

import requests
from dotenv import load_dotenv

from pipeline_config import DEFAULT_USER_AGENT


DEFAULT_BOOT_URL = 'https://boot.pluto.tv/v4/start'
STITCHER_BASE = 'https://service-stitcher-ipv4.clusters.pluto.tv/v2/stitch/hls/channel'


class DirectoryConnectionError(Exception):
    """Raised when the channel directory cannot be reached."""


class DirectoryPayloadError(Exception):
    """Raised when the directory response cannot be understood."""


@dataclass(frozen=True)
class DirectoryRecord:
    id: str
    slug: str
    name: str
    stream_address: str
    number: Optional[int] = None
    category: Optional[str] = None
    logo: Optional[str] = None


def generate_device_id():
    return uuid.uuid4().hex


def generate_session_id():
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:13]}"


def build_stitcher_url(channel_key, device_id=None, session_id=None):
    """Build a stitcher URL for a channel slug or id with a fresh session."""
    params = {
        'appName': 'web',
        'appVersion': '7.0.0',
        'clientTime': '0',
        'deviceDNT': '0',
        'deviceId': device_id or generate_device_id(),
        'deviceType': 'web',
        'deviceMake': 'Chrome',
        'deviceModel': 'Chrome',
        'deviceVersion': '120.0.0',
        'sid': session_id or generate_session_id(),
        'serverSideAds': 'false',
    }
    return f"{STITCHER_BASE}/{channel_key}/master.m3u8?{urlencode(params)}"


def _image_path(channel, *keys):
    for key in keys:
        value = channel.get(key)
        if isinstance(value, dict) and value.get('path'):
            return value['path']
    return None


def _stream_address_for(channel):
    stitched = channel.get('stitched') or {}
    urls = stitched.get('urls') if isinstance(stitched, dict) else None
    for item in urls or []:
        if isinstance(item, dict) and item.get('type') == 'hls' and item.get('url'):
            return item['url']

    channel_key = channel.get('slug') or channel.get('_id') or channel.get('id')
    if channel_key:
        return build_stitcher_url(channel_key)
    return None


def normalize_directory_payload(payload) -> List[DirectoryRecord]:
    """Turn any of the known directory response shapes into records."""
    if isinstance(payload, list):
        channels = payload
    elif isinstance(payload, dict) and isinstance(payload.get('channels'), list):
        channels = payload['channels']
    elif isinstance(payload, dict) and isinstance(payload.get('EPG'), list):
        channels = payload['EPG']
    else:
        raise DirectoryPayloadError("Directory payload has no channel list")

    records = []
    skipped = 0
    for channel in channels:
        if not isinstance(channel, dict) or not channel.get('name'):
            skipped += 1
            continue
        stream_address = _stream_address_for(channel)
        if not stream_address:
            skipped += 1
            continue

        channel_id = str(channel.get('_id') or channel.get('id') or channel.get('slug'))
        number = channel.get('number')
        try:
            number = int(number) if number is not None else None
        except (TypeError, ValueError):
            number = None

        records.append(DirectoryRecord(
            id=f"pluto-{channel_id}",
            slug=str(channel.get('slug') or channel_id),
            name=str(channel['name']),
            stream_address=stream_address,
            number=number,
            category=channel.get('category'),
            logo=_image_path(channel, 'colorLogoPNG', 'thumbnail', 'logo', 'featuredImage'),
        ))

    if skipped:
        logging.debug(f"Skipped {skipped} directory channels without a name or stream URL")
    return records


class PlutoDirectoryAPI:
    """Fetches the current Pluto TV channel list"""

    def __init__(self, boot_url=None, timeout=15, session=None):
        load_dotenv()
        self.boot_url = (boot_url or os.getenv('PLUTO_BOOT_URL') or DEFAULT_BOOT_URL).rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def _boot_params(self):
        device_id = generate_device_id()
        return {
            'appName': 'web',
            'appVersion': '8.0.0',
            'deviceVersion': 'Chrome',
            'deviceId': device_id,
            'deviceType': 'web',
            'deviceMake': 'Chrome',
            'deviceModel': 'Chrome',
            'deviceDNT': '0',
            'userId': '',
            'advertisingId': '',
            'sid': generate_session_id(),
            'serverSideAds': 'false',
            'clientID': device_id,
            'clientModelNumber': 'na',
            'channelSlug': '',
        }

    def fetch_channels(self) -> List[DirectoryRecord]:
        """Fetch and normalize the directory"""
        try:
            response = self.session.get(
                self.boot_url,
                params=self._boot_params(),
                headers={'Accept': 'application/json', 'User-Agent': DEFAULT_USER_AGENT},
                timeout=self.timeout
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as exc:
            raise DirectoryConnectionError(f"GET {self.boot_url} failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise DirectoryPayloadError("Failed to parse directory JSON response.") from exc

        records = normalize_directory_payload(payload)
        logging.info(f"Directory returned {len(records)} channels with stream URLs")
        return records
