"""Parallel worker namespacing for physical database names."""

import os
import re
from collections.abc import Mapping

_UNSAFE = re.compile(r"[^A-Za-z0-9_]")
_XDIST_WORKER = re.compile(r"^gw(\d+)$")

SERIAL_SUFFIX = "_test"


def detect_token(environ: Mapping[str, str] | None = None) -> str | None:
    """Return the parallel worker token from the environment, if any.

    ``TEST_TOKEN`` wins when set; otherwise a pytest-xdist worker id such as
    ``gw3`` maps to ``3``.
    """
    environ = os.environ if environ is None else environ

    token = environ.get("TEST_TOKEN")
    if token:
        return token

    worker = environ.get("PYTEST_XDIST_WORKER")
    if worker:
        match = _XDIST_WORKER.match(worker)
        return match.group(1) if match else worker
    return None


class WorkerNamespace:
    """Stable database-name suffix for the current test worker."""

    def __init__(self, token: str | None = None, environ: Mapping[str, str] | None = None):
        self._explicit_token = token
        self._environ = environ
        self._suffix: str | None = None

    def token(self) -> str | None:
        if self._explicit_token:
            return self._explicit_token
        return detect_token(self._environ)

    def suffix(self) -> str:
        """``_test_<token>`` under a parallel runner, ``_test`` otherwise.

        Resolved once; database names stay stable for the worker's lifetime
        even if the environment changes afterwards.
        """
        if self._suffix is None:
            token = self.token()
            self._suffix = f"{SERIAL_SUFFIX}_{_UNSAFE.sub('_', token)}" if token else SERIAL_SUFFIX
        return self._suffix

    def database_name(self, base: str) -> str:
        return f"{base}{self.suffix()}"

    def __repr__(self) -> str:
        return f"<WorkerNamespace suffix={self.suffix()!r}>"
