"""
Pytest configuration and fixtures.
"""
import os
import sys
import tempfile

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from contentscout.db.database import Database
from contentscout.discovery.models import Candidate, SearchHit


def _make_candidate(video_id="vid00000001", **overrides):
    defaults = dict(
        video_id=video_id,
        title=f"Video {video_id}",
        description="A test video description",
        tags=["coffee", "espresso"],
        category_id="26",
        channel_id="UC123",
        channel_title="TestChannel",
        thumbnail_url=f"https://i.ytimg.com/vi/{video_id}/hqdefault.jpg",
        views=10000,
        likes=500,
        comments=50,
        duration_seconds=600,
        published_at="2026-01-01T00:00:00Z",
    )
    defaults.update(overrides)
    return Candidate(**defaults)


def _make_hit(video_id="vid00000001", **overrides):
    defaults = dict(
        video_id=video_id,
        title=f"Video {video_id}",
        channel_id="UC123",
        channel_title="TestChannel",
        description="",
        published_at="2026-01-01T00:00:00Z",
        thumbnail_url="",
    )
    defaults.update(overrides)
    return SearchHit(**defaults)


@pytest.fixture
def make_candidate():
    """Factory for Candidate objects with sensible defaults."""
    return _make_candidate


@pytest.fixture
def make_hit():
    """Factory for SearchHit objects."""
    return _make_hit


@pytest.fixture
def temp_db():
    """A connected Database on a temporary SQLite file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    db = Database(db_path)
    db.connect()
    yield db
    db.close()
    os.unlink(db_path)
