"""Shared fakes for the persistence tests."""

import asyncio
import gzip
import io
import json
import zipfile
from collections import Counter

import pytest

from persist import DerivativeFetchError, ProgressReporter

ROOT = "urn:adsk.viewing:fs.file:dXJuOmFkc2sub2JqZWN0cw"


class FakeSource:
    """In-memory derivative store that counts every stream it opens."""

    def __init__(self, files, chunk_size=4):
        self.files = dict(files)
        self.chunk_size = chunk_size
        self.calls = Counter()

    async def iter_derivative(self, urn, reference):
        self.calls[reference] += 1
        await asyncio.sleep(0)
        if reference not in self.files:
            raise DerivativeFetchError(f"HTTP 404 for {reference}")
        data = self.files[reference]
        for i in range(0, len(data), self.chunk_size):
            await asyncio.sleep(0)
            yield data[i : i + self.chunk_size]


def svf_bytes(*uris, with_manifest=True):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        if with_manifest:
            zf.writestr("manifest.json", json.dumps({"assets": [{"URI": uri} for uri in uris]}))
        zf.writestr("geometry.bin", b"\x00\x01\x02")
    return buf.getvalue()


def gz_manifest(*uris):
    return gzip.compress(json.dumps({"assets": [{"URI": uri} for uri in uris]}).encode("utf-8"))


@pytest.fixture
def root():
    return ROOT


@pytest.fixture
def fake_source():
    return FakeSource


@pytest.fixture
def make_svf():
    return svf_bytes


@pytest.fixture
def make_gz_manifest():
    return gz_manifest


@pytest.fixture
def reporter():
    return ProgressReporter(enabled=False)
