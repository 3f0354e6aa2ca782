"""Classification of pgloader output.

pgloader can exit with code 0 after logging a failure (for example
``ERROR mysql: Failed to connect``), so its captured output is scanned for
known failure signatures. The pattern lists are heuristics and are
configurable through ``TransferConfig``.
"""

import re
from typing import List, Optional, Pattern

from pydantic import BaseModel

from dbmigrator.config import TransferConfig


class TransferVerdict(BaseModel):
    """Result of scanning pgloader output."""

    ok: bool
    reason: Optional[str] = None
    matched: Optional[str] = None


class TransferClassifier:
    """Matches pgloader output against error and zero-work signatures."""

    def __init__(self, config: TransferConfig) -> None:
        self.error_patterns: List[Pattern[str]] = [
            re.compile(p, re.IGNORECASE) for p in config.error_patterns
        ]
        self.no_work_patterns: List[Pattern[str]] = [
            re.compile(p, re.IGNORECASE) for p in config.no_work_patterns
        ]

    def classify(self, output: str) -> TransferVerdict:
        """Classify combined stdout/stderr.

        Args:
            output: Captured pgloader output

        Returns:
            Verdict; ``ok`` is False when any signature matched
        """
        for pattern in self.error_patterns:
            match = pattern.search(output)
            if match:
                return TransferVerdict(
                    ok=False,
                    reason="pgloader reported an error (see logs above).",
                    matched=match.group(0),
                )

        for pattern in self.no_work_patterns:
            match = pattern.search(output)
            if match:
                return TransferVerdict(
                    ok=False,
                    reason=(
                        "pgloader finished but migrated 0 tables/rows "
                        "(source DB empty or access denied)."
                    ),
                    matched=match.group(0),
                )

        return TransferVerdict(ok=True)
