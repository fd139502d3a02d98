# workspace.py
from __future__ import annotations

import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from terraoperator.errors import ErrorKind, ExecutionError
from terraoperator.git_facts import git
from terraoperator.model import ModuleSource
from terraoperator.settings import WORKSPACE_DIR

logger = logging.getLogger(__name__)

CloneFn = Callable[[str, Path, Optional[str]], Path]


@dataclass
class Workspace:
    """
    A disposable directory holding one module checkout for one request.

    Use as a context manager; the directory is removed on exit whatever the
    outcome. Removal failures are logged and never raised.
    """
    path: Path
    source: ModuleSource
    released: bool = field(default=False, init=False)

    @property
    def id(self) -> str:
        return self.path.name

    @property
    def module_dir(self) -> Path:
        """Directory the tool runs in (the checkout, or its module subdirectory)."""
        if self.source.subdir:
            return self.path / self.source.subdir
        return self.path

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        try:
            shutil.rmtree(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove workspace %s: %s", self.path, e)

    def __enter__(self) -> Workspace:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


class WorkspaceProvisioner:
    """
    Creates a fresh, uniquely named directory per request and clones the
    requested module into it.

    Layout:
      root/
        ws-<random>/      one checkout per request, never reused
    """

    def __init__(self, root: str | Path = WORKSPACE_DIR, clone: CloneFn = git.clone):
        self.root = Path(root).resolve()
        self._clone = clone

    def _mkdir(self) -> Path:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            # mkdtemp creates with O_EXCL semantics, so names never collide
            return Path(tempfile.mkdtemp(prefix="ws-", dir=self.root))
        except OSError as e:
            raise ExecutionError(
                ErrorKind.IO_FAILURE,
                f"could not create workspace directory: {e}",
                {"root": str(self.root)},
            )

    def provision(self, module_source: str | ModuleSource) -> Workspace:
        """
        Create a workspace and clone the module into it.

        Raises:
            ExecutionError: IOFailure if the directory cannot be created,
                CloneFailure if the source is invalid or unreachable.
                No directory is left behind on failure.
        """
        if isinstance(module_source, ModuleSource):
            source = module_source
        else:
            try:
                source = ModuleSource.parse(module_source)
            except ValueError as e:
                raise ExecutionError(ErrorKind.CLONE_FAILURE, str(e))

        workspace = Workspace(path=self._mkdir(), source=source)
        logger.info("Provisioned workspace %s for %s", workspace.id, source.url)

        try:
            self._clone(source.url, workspace.path, source.ref)
        except git.GitError as e:
            workspace.release()
            raise ExecutionError(
                ErrorKind.CLONE_FAILURE,
                f"could not clone {source.url}: {e}",
                {"url": source.url, "ref": source.ref},
            )
        except OSError as e:
            workspace.release()
            raise ExecutionError(
                ErrorKind.IO_FAILURE,
                f"could not populate workspace: {e}",
                {"url": source.url},
            )
        except BaseException:
            workspace.release()
            raise

        if source.subdir and not workspace.module_dir.is_dir():
            workspace.release()
            raise ExecutionError(
                ErrorKind.CLONE_FAILURE,
                f"module subdirectory {source.subdir!r} not found in {source.url}",
                {"url": source.url, "subdir": source.subdir},
            )

        return workspace
