"""
conftest.py
===========
Shared fixtures: recorded service responses, a replaying ARM pipeline for the
StorSimple REST calls, and isolation of the persisted CLI state.
"""

import json
import re
import struct
import uuid
from pathlib import Path
from types import SimpleNamespace
from urllib.parse import urlparse

import pytest
from azure.core.exceptions import HttpResponseError

from commands import azure_common
from commands.azure_compute import VHD_FOOTER_FORMAT, VhdDiskType, vhd_checksum

RECORDINGS = Path(__file__).parent / "recordings"


def load_recording(name):
    with open(RECORDINGS / f"{name}.json", encoding="utf-8") as f:
        return json.load(f)


def _snake(key):
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def to_namespace(data):
    """camelCase JSON -> attribute access with the SDK's snake_case names."""
    if isinstance(data, dict):
        return SimpleNamespace(**{_snake(k): to_namespace(v) for k, v in data.items()})
    if isinstance(data, list):
        return [to_namespace(v) for v in data]
    return data


class FakeResponse:
    """Just enough of azure.core.rest.HttpResponse for the code under test."""

    def __init__(self, status_code=200, body=None, headers=None, reason=None):
        self.status_code = status_code
        self.headers = headers or {}
        self.reason = reason or ("OK" if status_code < 400 else "Error")
        self.request = None
        self._text = "" if body is None else (body if isinstance(body, str) else json.dumps(body))

    def text(self, encoding=None):
        return self._text

    def json(self):
        return json.loads(self._text)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise HttpResponseError(response=self)


class ReplaySession:
    """
    Stands in for ResourceManagementClient.send_request. Each request must match
    the next recorded entry (method and path); its recorded response is returned.
    """

    def __init__(self, entries):
        self._entries = list(entries)
        self.requests = []

    def send_request(self, request, **kwargs):
        assert self._entries, f"unexpected request: {request.method} {request.url}"
        entry = self._entries.pop(0)
        assert request.method == entry["request"]["method"]
        assert urlparse(request.url).path == entry["request"]["path"]
        self.requests.append(request)
        recorded = entry["response"]
        return FakeResponse(recorded["status"], recorded.get("body"), recorded.get("headers"))

    @property
    def exhausted(self):
        return not self._entries


@pytest.fixture(autouse=True)
def isolated_state(tmp_path, monkeypatch):
    monkeypatch.setattr(azure_common, "app_dir", lambda: tmp_path / "app")
    monkeypatch.setattr(azure_common, "_SUBSCRIPTION_ID", None)
    monkeypatch.delenv(azure_common.SUBSCRIPTION_ENV_VAR, raising=False)
    monkeypatch.setenv("COLUMNS", "200")
    return tmp_path / "app"


# ── VHD files ─────────────────────────────────────────────────────────────────

def make_footer(current_size, disk_type=VhdDiskType.FIXED, cookie=b"conectix"):
    raw = bytearray(struct.pack(
        VHD_FOOTER_FORMAT,
        cookie,
        2,                      # features: reserved bit
        0x00010000,             # format version 1.0
        0xFFFFFFFFFFFFFFFF,     # data offset of a fixed disk
        0,
        b"win ",
        0x000A0000,
        b"Wi2k",
        current_size,
        current_size,
        1024, 16, 63,
        int(disk_type),
        0,
        uuid.uuid4().bytes,
        0,
    ))
    struct.pack_into(">I", raw, 64, vhd_checksum(bytes(raw)))
    return bytes(raw)


def write_vhd(path, data, footer=None):
    path.write_bytes(data + (footer if footer is not None else make_footer(len(data))))
    return str(path)
