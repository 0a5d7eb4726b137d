"""Best-effort extraction of the one-time admin credential from service logs."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .errors import KomariCtlError
from .providers.contracts import LogReader

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class CredentialHarvester:
    """Poll a :class:`LogReader` until the credential marker shows up.

    The wait between reads starts at ``initial_delay`` and doubles up to
    ``max_delay``; polling stops once ``timeout`` seconds have elapsed.
    """

    reader: LogReader
    marker: str = "admin account created."
    since: str | None = "1 minute ago"
    timeout: float = 30.0
    initial_delay: float = 1.0
    max_delay: float = 5.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    def extract(self, text: str) -> str | None:
        """Return the text after the marker on the last matching line."""
        found: str | None = None
        for line in text.splitlines():
            index = line.find(self.marker)
            if index == -1:
                continue
            candidate = line[index + len(self.marker) :].strip()
            if candidate:
                found = candidate
        return found

    def harvest(self) -> str | None:
        """Return the credential, or ``None`` if it did not appear in time."""
        deadline = self.clock() + self.timeout
        delay = self.initial_delay
        attempts = 0
        while True:
            self.sleep(delay)
            attempts += 1
            try:
                credential = self.extract(self.reader.read(since=self.since))
            except KomariCtlError as exc:
                LOGGER.debug("Log read attempt %d failed: %s", attempts, exc)
                credential = None
            if credential:
                return credential
            remaining = deadline - self.clock()
            if remaining <= 0:
                LOGGER.info("No credential found in service logs after %d attempts.", attempts)
                return None
            delay = min(delay * 2, self.max_delay, remaining)


__all__ = ["CredentialHarvester"]
