from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


import git
import pytest


def _commit(repo: git.Repo, files: dict[str, str], message: str) -> None:
    root = Path(repo.working_tree_dir)
    for name, content in files.items():
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    repo.git.add("-A")
    repo.git.commit("-m", message)


@pytest.fixture
def history_repo(tmp_path: Path) -> Path:
    """A repository whose history rewrites a/b.txt and adds files at several depths."""
    repo_dir = tmp_path / "repo"
    repo = git.Repo.init(repo_dir)
    with repo.config_writer() as config:
        config.set_value("user", "name", "Test User")
        config.set_value("user", "email", "test@example.com")
        config.set_value("commit", "gpgsign", "false")
    _commit(repo, {"a/b.txt": "first version\n", "README": "hello\n"}, "initial")
    _commit(
        repo,
        {"a/b.txt": "second version, a bit longer\n", "a/sub/c.txt": "nested file\n"},
        "rewrite b",
    )
    _commit(repo, {"docs/guide.md": "# Guide\n\nSome words.\n"}, "docs")
    return repo_dir


@pytest.fixture
def blob_disk_sizes():
    """Ask git directly for the on-disk size of every blob in a repository."""
    def _sizes(repo_dir: Path) -> dict[str, int]:
        out = git.Repo(repo_dir).git.cat_file(
            "--batch-all-objects",
            "--batch-check=%(objectname) %(objecttype) %(objectsize:disk)",
        )
        sizes = {}
        for line in out.splitlines():
            object_id, object_type, size = line.split()
            if object_type == "blob":
                sizes[object_id] = int(size)
        return sizes

    return _sizes
