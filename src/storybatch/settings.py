from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .models import DependencyPolicy, IterationCap, parse_iteration_cap


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_dir: str = ".storybatch"
    spec_filename: str = "spec.json"
    max_iterations: str = "50"
    max_concurrency: int = 0
    dependency_policy: str = DependencyPolicy.OPTIMISTIC.value
    session_timeout_s: int = 0
    recursion_limit: int = 1_000

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_dir=os.getenv("STORYBATCH_STATE_DIR", ".storybatch"),
            spec_filename=os.getenv("STORYBATCH_SPEC_FILENAME", "spec.json"),
            max_iterations=os.getenv("STORYBATCH_MAX_ITERATIONS", "50"),
            max_concurrency=_get_env_int("STORYBATCH_MAX_CONCURRENCY", default=0, minimum=0, maximum=1_024),
            dependency_policy=os.getenv("STORYBATCH_DEPENDENCY_POLICY", DependencyPolicy.OPTIMISTIC.value),
            session_timeout_s=_get_env_int("STORYBATCH_SESSION_TIMEOUT_S", default=0, minimum=0),
            recursion_limit=_get_env_int("STORYBATCH_RECURSION_LIMIT", default=1_000, minimum=25),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if not self.state_dir.strip():
            raise ValueError("STORYBATCH_STATE_DIR must be non-empty")
        spec_filename = self.spec_filename.strip()
        if not spec_filename:
            raise ValueError("STORYBATCH_SPEC_FILENAME must be non-empty")

        try:
            parse_iteration_cap(self.max_iterations)
        except ValueError as exc:
            raise ValueError(f"STORYBATCH_MAX_ITERATIONS is invalid: {exc}") from exc

        policy = self.dependency_policy.strip().lower()
        if policy not in {member.value for member in DependencyPolicy}:
            choices = ", ".join(member.value for member in DependencyPolicy)
            raise ValueError(f"STORYBATCH_DEPENDENCY_POLICY must be one of: {choices}")

        if self.max_concurrency < 0:
            raise ValueError(f"STORYBATCH_MAX_CONCURRENCY must be >= 0, got: {self.max_concurrency}")
        if self.session_timeout_s < 0:
            raise ValueError(f"STORYBATCH_SESSION_TIMEOUT_S must be >= 0, got: {self.session_timeout_s}")
        if self.recursion_limit > 100_000:
            raise ValueError(f"STORYBATCH_RECURSION_LIMIT must be <= 100000, got: {self.recursion_limit}")

        return RuntimeSettings(
            state_dir=self.state_dir,
            spec_filename=spec_filename,
            max_iterations=self.max_iterations.strip().lower(),
            max_concurrency=self.max_concurrency,
            dependency_policy=policy,
            session_timeout_s=self.session_timeout_s,
            recursion_limit=self.recursion_limit,
        )

    @property
    def iteration_cap(self) -> IterationCap:
        return parse_iteration_cap(self.max_iterations)

    @property
    def policy(self) -> DependencyPolicy:
        return DependencyPolicy(self.dependency_policy)

    def state_path(self, root: Path | None = None) -> Path:
        path = Path(self.state_dir)
        if path.is_absolute():
            return path
        return (root if root is not None else Path.cwd()) / path

    def spec_path(self, root: Path | None = None) -> Path:
        return self.state_path(root) / self.spec_filename


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
