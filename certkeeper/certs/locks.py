#!/usr/bin/env python3
#
# certkeeper/certs/locks.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Per-domain exclusive locks (worker-safe)."""

from __future__ import annotations

import fcntl
import logging
import os
import time
from pathlib import Path
from typing import IO, Optional

from ..errors import ConcurrentOperationError

_log = logging.getLogger(__name__)


class DomainLock:
	"""Non-blocking exclusive ``flock`` on ``{lock_dir}/{domain}.lock``.

	flock locks belong to the open file description, so two acquisitions
	for the same domain conflict whether they come from two coroutines of
	this process or from another worker process. The file object is kept on
	the instance; closing it would release the lock.
	"""

	def __init__(self, lock_dir: Path, domain: str) -> None:
		self.path = lock_dir / f"{domain}.lock"
		self.domain = domain
		self._file: Optional[IO[str]] = None

	def acquire(self) -> None:
		"""Take the lock or raise ConcurrentOperationError."""
		self.path.parent.mkdir(parents=True, exist_ok=True)
		f = open(self.path, "a+")
		try:
			fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
		except OSError:
			f.close()
			raise ConcurrentOperationError(
				f"Certificate operation for '{self.domain}' already in progress",
				domain=self.domain,
			) from None

		f.seek(0)
		f.truncate()
		f.write(f"{os.getpid()} {time.time()}\n")
		f.flush()
		self._file = f

	def release(self) -> None:
		f, self._file = self._file, None
		if f is None:
			return
		try:
			fcntl.flock(f.fileno(), fcntl.LOCK_UN)
		except OSError as exc:
			_log.debug("Unlock of %s failed: %s", self.path, exc)
		finally:
			f.close()

	@property
	def locked(self) -> bool:
		return self._file is not None

	def __enter__(self) -> "DomainLock":
		self.acquire()
		return self

	def __exit__(self, *args) -> None:
		self.release()
