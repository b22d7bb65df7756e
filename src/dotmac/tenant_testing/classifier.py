"""Directory-convention classification of test files."""

import warnings
from collections.abc import Iterable
from enum import Enum
from pathlib import PurePath

from dotmac.tenant_testing.exceptions import ClassificationError
from dotmac.tenant_testing.settings import UnclassifiedPolicy


class TestKind(str, Enum):
    """Base behavior a test inherits."""

    __test__ = False

    TENANTED = "tenanted"
    CENTRAL = "central"


class TenancyClassificationWarning(UserWarning):
    """A test file sits outside every tenancy directory."""

    pass


class TestClassifier:
    """Map a test file path to a ``TestKind`` by its directory components.

    Only directories count, so ``tests/central/test_tenanted_billing.py`` is
    central. Tenanted directories win when a path contains both.
    """

    __test__ = False

    def __init__(
        self,
        tenanted_dirs: Iterable[str] = ("tenanted",),
        central_dirs: Iterable[str] = ("central",),
        unclassified: UnclassifiedPolicy = UnclassifiedPolicy.WARN,
    ):
        self.tenanted_dirs = frozenset(d.lower() for d in tenanted_dirs)
        self.central_dirs = frozenset(d.lower() for d in central_dirs)
        self.unclassified = UnclassifiedPolicy(unclassified)

    def match(self, path: str | PurePath) -> TestKind | None:
        """Classification by convention alone; ``None`` when nothing matches."""
        directories = {part.lower() for part in PurePath(path).parent.parts}
        if directories & self.tenanted_dirs:
            return TestKind.TENANTED
        if directories & self.central_dirs:
            return TestKind.CENTRAL
        return None

    def classify(self, path: str | PurePath) -> TestKind:
        kind = self.match(path)
        if kind is not None:
            return kind

        if self.unclassified == UnclassifiedPolicy.ERROR:
            raise ClassificationError(
                f"{path} is in neither a tenanted ({sorted(self.tenanted_dirs)}) nor a "
                f"central ({sorted(self.central_dirs)}) directory"
            )
        if self.unclassified == UnclassifiedPolicy.WARN:
            warnings.warn(
                f"{path} is outside every tenancy directory; running it central-only",
                TenancyClassificationWarning,
                stacklevel=2,
            )
        return TestKind.CENTRAL
