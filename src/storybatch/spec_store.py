"""Loading, validating and persisting the work specification document."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from .canonical import content_hash
from .errors import DanglingDependency, InvalidSpec, MalformedSpec, ValidationIssue
from .graph import check_acyclic
from .models import WorkSpec
from .utils import atomic_write_text, read_text

logger = logging.getLogger(__name__)

PRIORITY_RANGE = (1, 10)
_EXECUTION_FIELDS = {"passes", "notes"}


def load_spec(path: Path) -> WorkSpec:
    """Read and validate the specification stored at *path*.

    Raises:
        MalformedSpec: If the file is missing, unreadable or not a JSON object.
        InvalidSpec: If the document fails structural or referential validation.
    """
    try:
        text = read_text(path, "work spec")
    except (OSError, ValueError) as exc:
        raise MalformedSpec(str(exc)) from exc
    return parse_spec(text, source=str(path))


def parse_spec(text: str, *, source: str = "<string>") -> WorkSpec:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedSpec(f"work spec at {source} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedSpec(f"work spec at {source} must be a JSON object, got {type(payload).__name__}")

    try:
        spec = WorkSpec.model_validate(payload)
    except ValidationError as exc:
        issues = [
            ValidationIssue(".".join(str(part) for part in error["loc"]) or "spec", error["msg"])
            for error in exc.errors()
        ]
        raise InvalidSpec(issues) from exc

    validate_spec(spec)
    return spec


def validate_spec(spec: WorkSpec) -> None:
    """Apply the validation rules in order, raising on the first failing rule."""
    issues: list[ValidationIssue] = []
    for field_name in ("project_name", "branch_label", "description"):
        if not getattr(spec, field_name).strip():
            issues.append(ValidationIssue(field_name, "must be non-empty"))
    if issues:
        raise InvalidSpec(issues)

    if not spec.items:
        raise InvalidSpec([ValidationIssue("items", "spec must contain at least one work item")])

    seen: set[str] = set()
    low, high = PRIORITY_RANGE
    for index, item in enumerate(spec.items):
        location = f"items[{index}]"
        if not item.id.strip():
            issues.append(ValidationIssue(location, "missing id"))
        else:
            location = item.id
            if item.id in seen:
                issues.append(ValidationIssue(location, f"duplicate id {item.id}"))
            seen.add(item.id)
        if not item.title.strip():
            issues.append(ValidationIssue(location, "missing title"))
        if not item.description.strip():
            issues.append(ValidationIssue(location, "missing description"))
        if not item.acceptance_criteria:
            issues.append(ValidationIssue(location, "must have at least one acceptance criterion"))
        elif any(not criterion.strip() for criterion in item.acceptance_criteria):
            issues.append(ValidationIssue(location, "acceptance criteria must be non-empty"))
        if not low <= item.priority <= high:
            issues.append(ValidationIssue(location, f"priority must be between {low}-{high}, got {item.priority}"))
        if not item.executor_role.strip():
            issues.append(ValidationIssue(location, "must specify an executor role"))
    if issues:
        raise InvalidSpec(issues)

    for item in spec.items:
        for dep in item.dependencies:
            if dep not in seen:
                raise DanglingDependency(item.id, dep)

    check_acyclic(spec.items)


def save_spec(spec: WorkSpec, path: Path) -> Path:
    """Write the full document to *path*, replacing whatever is there."""
    atomic_write_text(path, spec.to_json() + "\n")
    return path


def update_item(path: Path, item_id: str, *, passes: bool | None = None, notes: str | None = None) -> WorkSpec:
    """Load the spec, mutate one item's execution fields and write it back.

    Raises:
        ItemNotFound: If no item with *item_id* exists.
    """
    spec = load_spec(path)
    item = spec.item(item_id)
    if passes is not None:
        item.passes = passes
    if notes is not None:
        item.notes = notes
    save_spec(spec, path)
    logger.debug("Updated item %s in %s (passes=%s)", item_id, path, item.passes)
    return spec


def spec_hash(spec: WorkSpec) -> str:
    """Hash of the spec definition, ignoring the per-item execution outputs."""
    definition = spec.model_dump(mode="json", by_alias=True, exclude={"items": {"__all__": _EXECUTION_FIELDS}})
    return content_hash(definition)


def spec_file_hash(path: Path) -> str:
    """Hash the spec stored at *path* without running validation."""
    try:
        text = read_text(path, "work spec")
        spec = WorkSpec.model_validate_json(text)
    except (OSError, ValueError) as exc:
        raise MalformedSpec(str(exc)) from exc
    return spec_hash(spec)
