import os
import pathlib
import sys
import tempfile

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure backend root (containing 'recipe_feed_server') is on sys.path
BACKEND_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Keep the default sqlite file out of the working tree; must be set before config import.
os.environ.setdefault('FEED_SERVER_DATA_DIR', tempfile.mkdtemp(prefix='feed-server-tests-'))

from recipe_feed_server.db.engagement_store import EngagementStore
from recipe_feed_server.db.session import build_engine, init_db


def memory_store() -> EngagementStore:
    """Fresh in-memory database; usable inside hypothesis examples."""
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    return EngagementStore(sessionmaker(bind=engine, autoflush=False))


@pytest.fixture(scope='session')
def fresh_store():
    """Factory for throwaway stores (session scoped so hypothesis tests can use it)."""
    return memory_store


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'feed.db'}")
    init_db(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False)
    engine.dispose()


@pytest.fixture
def store(session_factory) -> EngagementStore:
    return EngagementStore(session_factory)


def save_video(store: EngagementStore, video_id: str, **fields):
    fields.setdefault('title', f'Recipe {video_id}')
    fields.setdefault('video_url', f'https://cdn.example.test/{video_id}.mp4')
    store.save_video(video_id, **fields)


@pytest.fixture
def add_video(store):
    def _add(video_id: str, **fields):
        save_video(store, video_id, **fields)
        return video_id
    return _add
