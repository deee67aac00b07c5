"""
Detection of newly issued certificates.

lego exits 0 both when it renewed a certificate and when renewal was not due
yet, so the only signal left is how recently the certificate file was
written.
"""

import logging
import time
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path
from typing import Protocol

from .certificate_store import CertificateStore

logger = logging.getLogger(__name__)

DEFAULT_FRESHNESS_WINDOW = timedelta(minutes=5)


class ChangeDetector(Protocol):
    """Decides whether a file was changed by the run that just finished."""

    def is_fresh(self, path: Path) -> bool: ...


class MtimeChangeDetector:
    """Treats a file as fresh when it was modified within a trailing window.

    A modification time slightly in the future (clock skew) also counts as
    fresh. Anything older than the window is stale, so a slow run costs one
    skipped cycle rather than a spurious restart.
    """

    def __init__(
        self,
        window: timedelta = DEFAULT_FRESHNESS_WINDOW,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.window = window
        self.clock = clock

    def is_fresh(self, path: Path) -> bool:
        try:
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            return False
        age = self.clock() - mtime
        return age < self.window.total_seconds()


class FreshnessDetector:
    """Checks whether lego just issued or renewed a certificate."""

    def __init__(self, store: CertificateStore, detector: ChangeDetector) -> None:
        self.store = store
        self.detector = detector

    def is_fresh(self, name: str) -> bool:
        cert_path = self.store.cert_path(name)
        if not cert_path.exists():
            logger.warning("Certificate %s not found at %s", name, cert_path)
            return False

        fresh = self.detector.is_fresh(cert_path)
        if fresh:
            logger.info("New certificate was generated for %s", name)
        else:
            logger.info("Certificate for %s was not renewed in this run", name)
        return fresh
