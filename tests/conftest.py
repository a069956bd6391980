"""Pytest fixtures for media pipeline tests."""

from typing import Any

import pytest

from media_pipeline.config import Settings
from tests.fakes import MockSupabaseClient, RecordingBackend, make_settings


@pytest.fixture
def pipeline_settings(tmp_path: Any) -> Settings:
    """Settings pointing the landing and output areas at a temp dir."""
    return make_settings(tmp_path)


@pytest.fixture
def backend() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture
def supabase_client() -> MockSupabaseClient:
    return MockSupabaseClient()
