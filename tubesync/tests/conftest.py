import os
import sys
import pytest


def _ensure_project_root_on_sys_path() -> None:
    here = os.path.dirname(__file__)
    project_root = os.path.abspath(os.path.join(here, "..", ".."))
    if project_root not in sys.path:
        sys.path.insert(0, project_root)


_ensure_project_root_on_sys_path()


@pytest.fixture(autouse=True)
def _clear_provider_env(monkeypatch, tmp_path):
    """Keep provider credentials and state dirs from the developer's shell out of tests."""
    for key in list(os.environ):
        if key.startswith(('SPOTIFY_', 'YOUTUBE_', 'TUBESYNC_')):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv('TUBESYNC_STATE_DIR', str(tmp_path / 'state'))
    yield
