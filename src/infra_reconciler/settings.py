from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

LOCK_POLICIES = frozenset({"fail", "wait"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_store_root: str = "state_store"
    stack_file: str = "stack.json"
    lock_policy: str = "fail"
    lock_timeout_seconds: float = 60.0
    lock_stale_after_seconds: float = 3_600.0
    lock_poll_interval_seconds: float = 1.0
    step_timeout_seconds: float = 1_800.0
    checkpoint_db: str = "state_store/checkpoints/pipeline.sqlite"
    provisioners: str = ""

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_store_root=os.getenv("RECONCILER_STATE_STORE_ROOT", "state_store"),
            stack_file=os.getenv("RECONCILER_STACK_FILE", "stack.json"),
            lock_policy=os.getenv("RECONCILER_LOCK_POLICY", "fail"),
            lock_timeout_seconds=_get_env_float("RECONCILER_LOCK_TIMEOUT_SECONDS", default=60.0, minimum=0.0),
            lock_stale_after_seconds=_get_env_float(
                "RECONCILER_LOCK_STALE_AFTER_SECONDS", default=3_600.0, minimum=1.0
            ),
            lock_poll_interval_seconds=_get_env_float(
                "RECONCILER_LOCK_POLL_INTERVAL_SECONDS", default=1.0, minimum=0.01
            ),
            step_timeout_seconds=_get_env_float("RECONCILER_STEP_TIMEOUT_SECONDS", default=1_800.0, minimum=1.0),
            checkpoint_db=os.getenv("RECONCILER_CHECKPOINT_DB", "state_store/checkpoints/pipeline.sqlite"),
            provisioners=os.getenv("RECONCILER_PROVISIONERS", ""),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        lock_policy = self.lock_policy.strip().lower()
        if lock_policy not in LOCK_POLICIES:
            raise ValueError("RECONCILER_LOCK_POLICY must be one of: fail, wait")

        if not self.state_store_root.strip():
            raise ValueError("RECONCILER_STATE_STORE_ROOT must be non-empty")
        if not self.stack_file.strip():
            raise ValueError("RECONCILER_STACK_FILE must be non-empty")
        if not self.checkpoint_db.strip():
            raise ValueError("RECONCILER_CHECKPOINT_DB must be non-empty")

        # A lock that goes stale before a single step can finish would be
        # broken by the next runner mid-apply.
        if self.lock_stale_after_seconds < self.step_timeout_seconds:
            raise ValueError(
                "RECONCILER_LOCK_STALE_AFTER_SECONDS must be >= RECONCILER_STEP_TIMEOUT_SECONDS, "
                f"got: {self.lock_stale_after_seconds} < {self.step_timeout_seconds}"
            )

        provisioners = self.provisioners.strip()
        if provisioners and ":" not in provisioners:
            raise ValueError(
                f"RECONCILER_PROVISIONERS must look like 'package.module:factory', got: {provisioners!r}"
            )
        return RuntimeSettings(
            state_store_root=self.state_store_root.strip(),
            stack_file=self.stack_file.strip(),
            lock_policy=lock_policy,
            lock_timeout_seconds=self.lock_timeout_seconds,
            lock_stale_after_seconds=self.lock_stale_after_seconds,
            lock_poll_interval_seconds=self.lock_poll_interval_seconds,
            step_timeout_seconds=self.step_timeout_seconds,
            checkpoint_db=self.checkpoint_db.strip(),
            provisioners=provisioners,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path

    def stack_path(self, repo_root: Path) -> Path:
        path = Path(self.stack_file)
        return path if path.is_absolute() else repo_root / path

    def checkpoint_path(self, repo_root: Path) -> Path:
        path = Path(self.checkpoint_db)
        return path if path.is_absolute() else repo_root / path


def _get_env_float(name: str, default: float, minimum: float, maximum: float = 86_400.0 * 7) -> float:
    """Parse a float from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default one week).

    Returns:
        The parsed value, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not a number or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if parsed != parsed:
        raise ValueError(f"{name} must be a number, got: {raw!r}")
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
