"""Runtime settings for the merge service.

Environment variables:
    KINMERGE_HIGH_RISK_THRESHOLD: Minimum candidate score the detector turns into
        a proposal (default: 50)
    KINMERGE_DETECTOR_BATCH_SIZE: Candidates processed per detector run (default: 50)
    KINMERGE_UNDO_WINDOW_DAYS: Days an executed merge can be undone (default: 7)
    KINMERGE_PROPOSAL_TTL_DAYS: Days a pending proposal stays acceptable (default: 30)
    KINMERGE_CONFLICT_POLICY_PATH: Optional YAML file overriding the conflict policy
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Final

logger = logging.getLogger(__name__)

ENV_HIGH_RISK_THRESHOLD: Final[str] = "KINMERGE_HIGH_RISK_THRESHOLD"
ENV_DETECTOR_BATCH_SIZE: Final[str] = "KINMERGE_DETECTOR_BATCH_SIZE"
ENV_UNDO_WINDOW_DAYS: Final[str] = "KINMERGE_UNDO_WINDOW_DAYS"
ENV_PROPOSAL_TTL_DAYS: Final[str] = "KINMERGE_PROPOSAL_TTL_DAYS"
ENV_CONFLICT_POLICY_PATH: Final[str] = "KINMERGE_CONFLICT_POLICY_PATH"

DEFAULT_HIGH_RISK_THRESHOLD: Final[int] = 50
DEFAULT_DETECTOR_BATCH_SIZE: Final[int] = 50
DEFAULT_UNDO_WINDOW_DAYS: Final[int] = 7
DEFAULT_PROPOSAL_TTL_DAYS: Final[int] = 30


class MergeConfigError(Exception):
    """Raised when merge configuration is invalid."""


@dataclass(frozen=True)
class MergeSettings:
    """Merge service configuration (immutable).

    Attributes:
        high_risk_threshold: Candidate score (0-100) at or above which the detector
            proposes a merge.
        detector_batch_size: Maximum candidates handled per detector run.
        undo_window_days: Days after execution during which undo is allowed.
        proposal_ttl_days: Days after creation a pending proposal expires.
        conflict_policy_path: Optional YAML conflict policy file.
    """

    high_risk_threshold: int = DEFAULT_HIGH_RISK_THRESHOLD
    detector_batch_size: int = DEFAULT_DETECTOR_BATCH_SIZE
    undo_window_days: int = DEFAULT_UNDO_WINDOW_DAYS
    proposal_ttl_days: int = DEFAULT_PROPOSAL_TTL_DAYS
    conflict_policy_path: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not 0 <= self.high_risk_threshold <= 100:
            raise MergeConfigError(
                f"{ENV_HIGH_RISK_THRESHOLD} must be between 0 and 100, "
                f"got {self.high_risk_threshold}"
            )
        for env_var, value in (
            (ENV_DETECTOR_BATCH_SIZE, self.detector_batch_size),
            (ENV_UNDO_WINDOW_DAYS, self.undo_window_days),
            (ENV_PROPOSAL_TTL_DAYS, self.proposal_ttl_days),
        ):
            if value <= 0:
                raise MergeConfigError(f"{env_var} must be a positive integer, got {value}")

    @classmethod
    def from_env(cls) -> MergeSettings:
        """Load settings from environment variables.

        Raises:
            MergeConfigError: If any value is invalid.
        """
        return cls(
            high_risk_threshold=_get_env_int(ENV_HIGH_RISK_THRESHOLD, DEFAULT_HIGH_RISK_THRESHOLD),
            detector_batch_size=_get_env_int(ENV_DETECTOR_BATCH_SIZE, DEFAULT_DETECTOR_BATCH_SIZE),
            undo_window_days=_get_env_int(ENV_UNDO_WINDOW_DAYS, DEFAULT_UNDO_WINDOW_DAYS),
            proposal_ttl_days=_get_env_int(ENV_PROPOSAL_TTL_DAYS, DEFAULT_PROPOSAL_TTL_DAYS),
            conflict_policy_path=_get_env_str(ENV_CONFLICT_POLICY_PATH) or None,
        )


def _get_env_str(key: str, default: str = "") -> str:
    """Get string from environment variable."""
    return os.environ.get(key, default).strip()


def _get_env_int(key: str, default: int) -> int:
    """Get integer from environment variable.

    Raises:
        MergeConfigError: If the value is set but not an integer.
    """
    raw = _get_env_str(key)
    if not raw:
        return default

    try:
        return int(raw)
    except ValueError as e:
        raise MergeConfigError(f"{key} must be an integer, got '{raw}'") from e
