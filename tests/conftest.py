import os
import subprocess
import tempfile
from pathlib import Path

import pytest

GIT_ENV = {
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}


def init_repo(path: Path):
    """Initialize a git repo on ``main`` with one commit."""
    subprocess.run(["git", "init"], cwd=path, capture_output=True, check=True)
    subprocess.run(["git", "checkout", "-b", "main"], cwd=path, capture_output=True, check=True)
    (path / "README.md").write_text("# Test")
    subprocess.run(["git", "add", "."], cwd=path, capture_output=True, check=True)
    subprocess.run(
        ["git", "commit", "-m", "init"],
        cwd=path,
        capture_output=True,
        check=True,
        env={**os.environ, **GIT_ENV},
    )


@pytest.fixture
def git_repo():
    """Create a temporary git repo with an initial commit."""
    with tempfile.TemporaryDirectory() as tmp:
        init_repo(Path(tmp))
        yield tmp
