"""Template definitions: validation, legacy migration, CRUD and JSON import/export."""
from __future__ import annotations

import copy
import json
import logging
import uuid
from collections import deque
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

from pydantic import ValidationError

from .models import (
    Parameter,
    Stage,
    StageCondition,
    Template,
    ValidationResult,
    VariableDeclaration,
)
from .storage import AppDataStore

logger = logging.getLogger(__name__)


class TemplateImportError(ValueError):
    """An imported template file was rejected; nothing was stored."""


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def create_draft(created_by: str = "unknown") -> Template:
    return Template(
        template_id=new_id("template"),
        created_at=datetime.utcnow(),
        created_by=created_by,
    )


# -------------------- migration --------------------


def _field_to_parameter(field: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "parameterId": field.get("fieldId", field.get("parameterId")),
        "label": field.get("label") or "",
        "defaultValue": field.get("defaultValue"),
        "description": field.get("description") or "",
    }


def migrate_legacy(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """Bring an older template document up to the current shape.

    * ``customFields`` becomes ``parameters`` (``fieldId`` -> ``parameterId``);
      entries that are not objects are carried over for validation to reject
    * ``variables`` is added when missing
    * every stage gets a ``condition``, defaulting to ``succeeded()``

    The input is not modified. Running this on migrated output changes nothing.
    """
    migrated: Dict[str, Any] = copy.deepcopy(dict(raw))

    if "customFields" in migrated and "parameters" not in migrated:
        fields = migrated.pop("customFields") or []
        if isinstance(fields, list):
            migrated["parameters"] = [
                _field_to_parameter(field) if isinstance(field, dict) else field
                for field in fields
            ]
        else:
            # left for validate() to report
            migrated["parameters"] = fields

    if not migrated.get("variables"):
        migrated["variables"] = []

    stages = migrated.get("stages")
    if isinstance(stages, list):
        for stage in stages:
            if isinstance(stage, dict) and not stage.get("condition"):
                stage["condition"] = StageCondition.SUCCEEDED.value

    return migrated


# -------------------- validation --------------------


def _find_cycle(nodes: Iterable[str], edges: Mapping[str, Iterable[str]]) -> List[str]:
    """Kahn's algorithm; returns the nodes left over when the graph has a cycle."""
    nodes = list(dict.fromkeys(nodes))
    indeg: Dict[str, int] = {n: 0 for n in nodes}
    children: Dict[str, Set[str]] = {n: set() for n in nodes}

    for node in nodes:
        for dep in edges.get(node, ()):
            if dep in indeg and node not in children[dep]:
                children[dep].add(node)
                indeg[node] += 1

    queue = deque(sorted(n for n, d in indeg.items() if d == 0))
    processed = 0
    while queue:
        node = queue.popleft()
        processed += 1
        for child in sorted(children[node]):
            indeg[child] -= 1
            if indeg[child] == 0:
                queue.append(child)

    if processed == len(indeg):
        return []
    return sorted(n for n, d in indeg.items() if d > 0)


def _duplicates(ids: Iterable[Any]) -> List[str]:
    seen: Set[Any] = set()
    dupes: List[str] = []
    for value in ids:
        if value in seen and str(value) not in dupes:
            dupes.append(str(value))
        seen.add(value)
    return dupes


def _is_id(value: Any) -> bool:
    return isinstance(value, str) and bool(value)


def _dependency_ids(value: Any, where: str, errors: List[str]) -> List[str]:
    """Dependency list as plain id strings; anything else is reported."""
    if not value:
        return []
    if not isinstance(value, list):
        errors.append(f"{where}: dependencies must be an array")
        return []
    ids = [dep for dep in value if _is_id(dep)]
    if len(ids) != len(value):
        errors.append(f"{where}: dependencies must be non-empty id strings")
    return ids


def validate(template: Union[Template, Mapping[str, Any]]) -> ValidationResult:
    """Check a template (model or raw JSON document) for structural problems.

    Malformed documents are reported through ``errors``; this never raises.
    """
    raw = template.to_json_dict() if isinstance(template, Template) else template
    errors: List[str] = []

    if not isinstance(raw, Mapping):
        return ValidationResult(valid=False, errors=["Template must be a JSON object"])

    if not raw.get("templateId"):
        errors.append("Missing templateId")
    if not raw.get("templateName"):
        errors.append("Missing templateName")

    stages = raw.get("stages")
    if not isinstance(stages, list):
        errors.append("Missing or invalid stages array")
        stages = []

    for label, key, id_key in (
        ("parameter", "parameters", "parameterId"),
        ("variable", "variables", "variableId"),
    ):
        entries = raw.get(key) or []
        if not isinstance(entries, list):
            errors.append(f"Invalid {key} array")
            continue
        if any(not isinstance(e, Mapping) for e in entries):
            errors.append(f"Every {label} must be an object")
        ids = [e.get(id_key) for e in entries if isinstance(e, Mapping)]
        if any(not _is_id(i) for i in ids):
            errors.append(f"Every {label} needs a {id_key}")
        for dupe in _duplicates(i for i in ids if _is_id(i)):
            errors.append(f"Duplicate {label} id: {dupe}")

    stage_ids: List[str] = []
    stage_deps: Dict[str, List[str]] = {}
    all_step_ids: List[str] = []

    for i, stage in enumerate(stages):
        if not isinstance(stage, Mapping):
            errors.append(f"Stage {i}: Not an object")
            continue
        stage_id = stage.get("stageId")
        if not _is_id(stage_id):
            errors.append(f"Stage {i}: Missing stageId")
            stage_id = None
        if not stage.get("stageName"):
            errors.append(f"Stage {i}: Missing stageName")

        steps = stage.get("steps")
        if not isinstance(steps, list):
            errors.append(f"Stage {i}: Missing or invalid steps array")
            steps = []

        deps = _dependency_ids(stage.get("dependencies"), f"Stage {i}", errors)
        if stage_id:
            stage_ids.append(stage_id)
            stage_deps[stage_id] = deps

        if any(not isinstance(s, Mapping) for s in steps):
            errors.append(f"Stage {i}: Every step must be an object")
        step_ids = [s.get("stepId") for s in steps if isinstance(s, Mapping)]
        if any(not _is_id(s) for s in step_ids):
            errors.append(f"Stage {i}: Every step needs a stepId")
        step_ids = [s for s in step_ids if _is_id(s)]
        all_step_ids.extend(step_ids)

        step_deps: Dict[str, List[str]] = {}
        for step in steps:
            if not isinstance(step, Mapping) or not _is_id(step.get("stepId")):
                continue
            step_id = step["stepId"]
            deps = _dependency_ids(
                step.get("dependencies"), f"Stage {i}: Step {step_id}", errors
            )
            step_deps[step_id] = deps
            for dep in deps:
                if dep not in step_ids:
                    errors.append(
                        f"Stage {i}: Step {step_id} depends on {dep}, "
                        "which is not a step of the same stage"
                    )

        stuck = _find_cycle(step_ids, step_deps)
        if stuck:
            errors.append(f"Stage {i}: Step dependency cycle between {', '.join(stuck)}")

    for dupe in _duplicates(stage_ids):
        errors.append(f"Duplicate stage id: {dupe}")
    for dupe in _duplicates(all_step_ids):
        errors.append(f"Duplicate step id: {dupe}")

    known = set(stage_ids)
    for stage_id, deps in stage_deps.items():
        for dep in deps:
            if dep not in known:
                errors.append(f"Stage {stage_id} depends on unknown stage {dep}")

    stuck = _find_cycle(stage_ids, stage_deps)
    if stuck:
        errors.append(f"Stage dependency cycle between {', '.join(stuck)}")

    return ValidationResult(valid=not errors, errors=errors)


# -------------------- builder helpers --------------------


def add_stage(template: Template, stage: Stage) -> Stage:
    if not stage.order:
        stage.order = len(template.stages) + 1
    template.stages.append(stage)
    return stage


def remove_stage(template: Template, stage_id: str) -> None:
    template.stages = [s for s in template.stages if s.stage_id != stage_id]


def add_parameter(template: Template, parameter: Parameter) -> None:
    template.parameters.append(parameter)


def remove_parameter(template: Template, parameter_id: str) -> None:
    template.parameters = [p for p in template.parameters if p.parameter_id != parameter_id]


def add_variable(template: Template, variable: VariableDeclaration) -> None:
    template.variables.append(variable)


def remove_variable(template: Template, variable_id: str) -> None:
    template.variables = [v for v in template.variables if v.variable_id != variable_id]


# -------------------- store --------------------


class TemplateStore:
    """Template CRUD on top of the application data store."""

    def __init__(self, store: AppDataStore) -> None:
        self.store = store

    async def list_templates(self) -> List[Template]:
        return await self.store.list_templates()

    async def get_template(self, template_id: str) -> Optional[Template]:
        return await self.store.get_template(template_id)

    async def would_collide(self, template_id: str) -> bool:
        return await self.store.get_template(template_id) is not None

    async def save_template(self, template: Template) -> ValidationResult:
        result = validate(template)
        if not result.valid:
            logger.warning(
                "Template %s failed validation: %s", template.template_id, result.errors
            )
            return result
        await self.store.save_template(template)
        logger.info("Saved template %s", template.template_id)
        return result

    async def delete_template(self, template_id: str) -> bool:
        # Jobs keep their own copy of the execution tree, so nothing cascades.
        return await self.store.delete_template(template_id)

    async def duplicate_template(
        self, template_id: str, created_by: str = "unknown"
    ) -> Optional[Template]:
        source = await self.store.get_template(template_id)
        if source is None:
            return None

        duplicated = source.model_copy(deep=True)
        duplicated.template_id = new_id("template")
        duplicated.template_name = f"{source.template_name} (Copy)"
        duplicated.created_at = datetime.utcnow()
        duplicated.created_by = created_by

        await self.store.save_template(duplicated)
        return duplicated

    async def import_from_json(self, text: str, *, replace: bool = False) -> Template:
        """Parse, migrate and validate a template file, then store it.

        Raises :class:`TemplateImportError` when the file is unreadable or
        invalid, or when the id is already taken and ``replace`` is False.
        """
        try:
            raw = json.loads(text)
        except ValueError as exc:
            raise TemplateImportError(f"Error parsing JSON file: {exc}") from exc
        if not isinstance(raw, dict):
            raise TemplateImportError("Template file must contain a JSON object")

        try:
            migrated = migrate_legacy(raw)
            result = validate(migrated)
        except Exception as exc:
            logger.exception("Unexpected failure while checking imported template")
            raise TemplateImportError(f"Invalid template format: {exc}") from exc
        if not result.valid:
            raise TemplateImportError("Invalid template format: " + ", ".join(result.errors))

        try:
            template = Template.model_validate(migrated)
        except ValidationError as exc:
            raise TemplateImportError(f"Invalid template format: {exc}") from exc

        if not replace and await self.would_collide(template.template_id):
            raise TemplateImportError(
                f'Template "{template.template_name}" already exists'
            )

        await self.store.save_template(template)
        logger.info("Imported template %s", template.template_id)
        return template

    async def export_to_json(self, template_id: str) -> Optional[str]:
        template = await self.store.get_template(template_id)
        if template is None:
            return None
        return json.dumps(template.to_json_dict(), indent=2)
