from unittest import mock

import pytest
import requests

from directory_api import (
    DEFAULT_BOOT_URL,
    DirectoryConnectionError,
    DirectoryPayloadError,
    PlutoDirectoryAPI,
    build_stitcher_url,
    normalize_directory_payload,
)


@pytest.fixture(autouse=True)
def clear_env(monkeypatch):
    monkeypatch.delenv("PLUTO_BOOT_URL", raising=False)


CHANNELS = [
    {
        "_id": "5abc",
        "slug": "cnn-headlines",
        "name": "CNN Headlines",
        "number": "101",
        "category": "News",
        "colorLogoPNG": {"path": "http://img/cnn.png"},
        "stitched": {"urls": [{"type": "hls", "url": "https://stitcher.pluto.tv/cnn.m3u8"}]},
    },
    {"_id": "6def", "slug": "comedy", "name": "Comedy"},
    {"_id": "nameless", "slug": "ghost"},
    "not a channel",
]


@pytest.mark.parametrize("payload", [CHANNELS, {"channels": CHANNELS}, {"EPG": CHANNELS}])
def test_normalize_accepts_all_payload_shapes(payload):
    records = normalize_directory_payload(payload)

    assert [r.id for r in records] == ["pluto-5abc", "pluto-6def"]
    assert records[0].stream_address == "https://stitcher.pluto.tv/cnn.m3u8"
    assert records[0].number == 101
    assert records[0].logo == "http://img/cnn.png"
    assert "/comedy/master.m3u8?" in records[1].stream_address


def test_normalize_rejects_unknown_payload():
    with pytest.raises(DirectoryPayloadError):
        normalize_directory_payload({"unexpected": True})


def test_stitcher_url_uses_given_session():
    url = build_stitcher_url("cnn", device_id="dev", session_id="sid")
    assert "/channel/cnn/master.m3u8?" in url
    assert "deviceId=dev" in url
    assert "sid=sid" in url


def test_boot_url_from_environment(monkeypatch):
    monkeypatch.setenv("PLUTO_BOOT_URL", "https://boot.example.com/start/")
    api = PlutoDirectoryAPI(session=mock.Mock())

    assert api.boot_url == "https://boot.example.com/start"


def test_fetch_channels_wraps_errors():
    session = mock.Mock()
    session.get.side_effect = requests.exceptions.ConnectionError("down")
    api = PlutoDirectoryAPI(session=session)

    assert api.boot_url == DEFAULT_BOOT_URL
    with pytest.raises(DirectoryConnectionError):
        api.fetch_channels()

    response = mock.Mock()
    response.json.side_effect = ValueError("not json")
    session.get.side_effect = None
    session.get.return_value = response
    with pytest.raises(DirectoryPayloadError):
        api.fetch_channels()


def test_fetch_channels_returns_records():
    session = mock.Mock()
    session.get.return_value.json.return_value = {"channels": CHANNELS[:1]}
    api = PlutoDirectoryAPI(session=session)

    records = api.fetch_channels()

    assert len(records) == 1
    assert session.get.call_args.kwargs["params"]["appName"] == "web"
