"""Checkpoints of a model in training.

A checkpoint directory holds ``<rounds>.ubj`` files, one per saved version,
named after the number of boosting rounds the model contains. Normally only
the latest version is kept.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from typing import TYPE_CHECKING, Any

from ._backends import get_backend

if TYPE_CHECKING:
    from ._backends import NativeBackend

logger = logging.getLogger(__name__)

_VERSION_FILE = re.compile(r"^(\d+)\.ubj$")


class CheckpointManager:
    """Save and restore checkpoints in a directory.

    Args:
        path: Checkpoint directory. Created on the first update.
        backend: Backend used to save and load models.

    Example:
        >>> manager = CheckpointManager("/tmp/ckpt")
        >>> manager.get_round_boundaries(interval=4, total=10)
        [4, 8, 10]
    """

    def __init__(self, path: str | os.PathLike, backend: NativeBackend | None = None):
        self.path = os.fspath(path)
        self.backend = backend if backend is not None else get_backend()

    def _file(self, version: int) -> str:
        return os.path.join(self.path, f"{version}.ubj")

    def versions(self) -> list[int]:
        """Saved versions, ascending."""
        if not os.path.isdir(self.path):
            return []
        found = []
        for name in os.listdir(self.path):
            match = _VERSION_FILE.match(name)
            if match:
                found.append(int(match.group(1)))
        return sorted(found)

    def latest_version(self) -> int:
        versions = self.versions()
        return versions[-1] if versions else 0

    def load_latest_as_model(self) -> Any:
        """Load the latest checkpoint, or None if there is none."""
        versions = self.versions()
        if not versions:
            return None
        path = self._file(versions[-1])
        logger.info("loading checkpoint %s", path)
        return self.backend.load_model(path)

    def clean_up_higher_versions(self, max_round: int) -> None:
        """Delete checkpoints holding ``max_round`` rounds or more.

        Such a checkpoint was written by an earlier run with more rounds
        and must not seed this one.
        """
        for version in self.versions():
            if version >= max_round:
                self._remove(version)

    def get_round_boundaries(self, interval: int, total: int) -> list[int]:
        """Round counts at which training pauses to save a checkpoint.

        The last boundary is always ``total``.
        """
        if interval <= 0:
            return [total]
        start = self.latest_version()
        return list(range(start + interval, total, interval)) + [total]

    def update_checkpoint(self, model: Any) -> None:
        """Save ``model`` as the new latest version and drop the others."""
        os.makedirs(self.path, exist_ok=True)
        version = self.backend.num_rounds(model)
        fd, tmp = tempfile.mkstemp(dir=self.path, prefix=".tmp-", suffix=".ubj")
        os.close(fd)
        try:
            self.backend.save_model(model, tmp)
            os.replace(tmp, self._file(version))
        except Exception:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise
        logger.info("saved checkpoint with %d rounds to %s", version, self.path)

        for old in self.versions():
            if old != version:
                self._remove(old)

    def _remove(self, version: int) -> None:
        try:
            os.remove(self._file(version))
        except OSError as exc:
            logger.warning("failed to remove checkpoint %s: %s", self._file(version), exc)

    def __repr__(self) -> str:
        return f"CheckpointManager(path={self.path!r}, latest={self.latest_version()})"
