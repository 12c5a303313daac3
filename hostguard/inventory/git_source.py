"""Git-backed inventories: clone on demand, report the checked-out revision."""

from __future__ import annotations

import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

from hostguard.errors import InventoryError


@dataclass
class Checkout:
    """A local checkout of an inventory repository.

    Use as a context manager so temporary clones are removed::

        with ensure_local_checkout(url) as checkout:
            load(checkout.local_path / "inventory.yaml")
    """

    local_path: Path
    source_url: str = ""
    revision: str = ""
    is_temp_clone: bool = False

    def __enter__(self) -> "Checkout":
        return self

    def __exit__(self, *exc) -> None:
        self.cleanup()

    def cleanup(self) -> None:
        if self.is_temp_clone and self.local_path.exists():
            shutil.rmtree(self.local_path, ignore_errors=True)


def ensure_local_checkout(url: str, branch: str | None = None) -> Checkout:
    """Shallow-clone an inventory repository into a temporary directory."""
    clone_dir = Path(tempfile.mkdtemp(prefix="hostguard_inv_"))
    kwargs = {"depth": 1}
    if branch:
        kwargs["branch"] = branch
    try:
        repo = Repo.clone_from(url, clone_dir, **kwargs)
    except GitCommandError as e:
        shutil.rmtree(clone_dir, ignore_errors=True)
        raise InventoryError(f"Cannot clone inventory repository {url}: {e.stderr.strip() or e}") from e
    return Checkout(
        local_path=clone_dir,
        source_url=url,
        revision=repo.head.commit.hexsha,
        is_temp_clone=True,
    )


def head_revision(path: str | Path) -> str:
    """Return the HEAD commit of a local inventory directory, or "" if it is not a repo."""
    try:
        repo = Repo(path, search_parent_directories=True)
    except (InvalidGitRepositoryError, NoSuchPathError):
        return ""
    if not repo.head.is_valid():
        return ""
    sha = repo.head.commit.hexsha
    return f"{sha}-dirty" if repo.is_dirty() else sha
