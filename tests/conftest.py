"""
Pytest configuration and fixtures for the PDF Converter tests.
"""

from datetime import timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from pypdf import PdfWriter
from pypdf.generic import ContentStream, RectangleObject

from pdf_converter.config import Settings
from pdf_converter.conversion import RetentionPolicy
from pdf_converter.conversion.adapters import LocalStorage, PypdfPadder
from pdf_converter.webapi import create_app

API_TOKEN = "test-token-12345"
A4 = (595.0, 842.0)


def write_pdf(path: Path, sizes, *, content: bytes | None = None, origin=(0.0, 0.0)) -> Path:
    writer = PdfWriter()
    for width, height in sizes:
        page = writer.add_blank_page(width=width, height=height)
        if content is not None:
            stream = ContentStream(None, writer)
            stream.set_data(content)
            page.replace_contents(stream)
        if origin != (0.0, 0.0):
            left, bottom = origin
            page.mediabox = RectangleObject([left, bottom, left + width, bottom + height])
    with path.open("wb") as f:
        writer.write(f)
    return path


class FakeConverter:
    """Stands in for LibreOffice: writes a blank PDF into the request output directory."""

    def __init__(self, sizes=(A4,), *, error=None, output_name=None):
        self.sizes = sizes
        self.error = error
        self.output_name = output_name
        self.calls = []

    def convert(self, paths):
        self.calls.append(paths)
        if self.error is not None:
            raise self.error
        name = self.output_name or f"{paths.token}.pdf"
        write_pdf(paths.output_dir / name, self.sizes)
        return paths.expected_pdf


@pytest.fixture
def pdf_factory():
    return write_pdf


@pytest.fixture
def work_dir(tmp_path):
    return tmp_path / "work"


@pytest.fixture
def settings(work_dir):
    return Settings(api_token=API_TOKEN, work_dir=work_dir, retention=timedelta(hours=1), sweep_interval_sec=3600)


@pytest.fixture
def storage(work_dir):
    return LocalStorage(RetentionPolicy(root=work_dir, max_age=timedelta(hours=1)))


@pytest.fixture
def padder():
    return PypdfPadder()


@pytest.fixture
def converter():
    return FakeConverter(sizes=[A4, A4, A4])


@pytest.fixture
def make_client(settings):
    def _make(converter, **kwargs):
        return TestClient(create_app(settings, converter=converter, **kwargs))

    return _make


@pytest.fixture
def client(make_client, converter):
    return make_client(converter)


@pytest.fixture
def auth_headers():
    return {"x-auth-token": API_TOKEN}


def workspace_entries(work_dir: Path) -> list[Path]:
    if not work_dir.exists():
        return []
    return list(work_dir.iterdir())


@pytest.fixture
def leftovers(work_dir):
    return lambda: workspace_entries(work_dir)


@pytest.fixture
def fake_converter():
    return FakeConverter
