"""Registry persistence with cross-process locking.

The registry is shared by independent CLI invocations and the dashboard, so
every mutation is a load/mutate/save cycle under an exclusive flock on
state.lock. Saves write a temporary file and atomically replace state.json,
which lets lock-free readers always see a complete document.
"""

import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, TypeVar

from pydantic import ValidationError

from .errors import CorruptState
from .models import Registry

T = TypeVar("T")


class RegistryStore:
    """Loads, locks and saves the registry document."""

    def __init__(self, state_file: Path, lock_file: Path):
        self.state_file = Path(state_file)
        self.lock_file = Path(lock_file)

    def load(self) -> Registry:
        """Read the registry from disk.

        Returns an empty registry (next_id = 1) when the file is absent.

        Raises:
            CorruptState: If the file exists but cannot be parsed.
        """
        if not self.state_file.exists():
            return Registry()

        try:
            content = self.state_file.read_text(encoding="utf-8")
        except OSError as e:
            raise CorruptState(self.state_file, str(e)) from e

        try:
            return Registry.model_validate(json.loads(content))
        except json.JSONDecodeError as e:
            raise CorruptState(self.state_file, f"invalid JSON: {e}") from e
        except ValidationError as e:
            raise CorruptState(self.state_file, f"invalid registry: {e}") from e

    def save(self, registry: Registry) -> None:
        """Atomically persist the registry (temp file + fsync + replace)."""
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        data = json.dumps(registry.model_dump(mode="json"), indent=2)

        fd, tmp_name = tempfile.mkstemp(
            dir=self.state_file.parent,
            prefix=f".{self.state_file.name}.",
            suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.state_file)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    @contextmanager
    def lock(self, blocking: bool = True) -> Iterator[None]:
        """Hold the exclusive registry lock.

        Blocks until the lock is available unless `blocking` is False, in
        which case a held lock raises BlockingIOError straight away.
        """
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.lock_file), os.O_CREAT | os.O_RDWR, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def with_lock(self, op: Callable[[Registry], T], blocking: bool = True) -> T:
        """Run one read-modify-write cycle under the lock.

        Loads the registry, calls `op` with it, saves it and returns what
        `op` returned. If `op` raises, nothing is written. With
        `blocking=False` a busy lock raises BlockingIOError before `op` runs.
        """
        with self.lock(blocking):
            registry = self.load()
            result = op(registry)
            self.save(registry)
            return result
