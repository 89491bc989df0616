from __future__ import annotations

import json

import pytest

from jobflow.models import Parameter, Stage, StageCondition, Template, VariableDeclaration
from jobflow.templates import (
    TemplateImportError,
    add_parameter,
    add_stage,
    add_variable,
    create_draft,
    migrate_legacy,
    remove_parameter,
    remove_stage,
    remove_variable,
    validate,
)

from .conftest import make_stage, make_step, two_stage_template


LEGACY = {
    "templateId": "legacy-1",
    "templateName": "Legacy",
    "customFields": [
        {"fieldId": "batch", "label": "Batch", "defaultValue": "B-1", "description": "Lot"}
    ],
    "stages": [
        {"stageId": "s1", "stageName": "One", "steps": []},
        {"stageId": "s2", "stageName": "Two", "condition": "always()", "steps": []},
    ],
}


def test_migrate_legacy_maps_custom_fields() -> None:
    migrated = migrate_legacy(LEGACY)

    assert "customFields" not in migrated
    assert migrated["parameters"] == [
        {"parameterId": "batch", "label": "Batch", "defaultValue": "B-1", "description": "Lot"}
    ]
    assert migrated["variables"] == []
    assert migrated["stages"][0]["condition"] == "succeeded()"
    assert migrated["stages"][1]["condition"] == "always()"
    # input untouched
    assert "customFields" in LEGACY


def test_migrate_legacy_is_idempotent() -> None:
    once = migrate_legacy(LEGACY)
    assert migrate_legacy(once) == once


def test_migrated_legacy_loads_as_template() -> None:
    template = Template.model_validate(migrate_legacy(LEGACY))
    assert template.parameters[0].parameter_id == "batch"
    assert template.stages[0].condition is StageCondition.SUCCEEDED


def test_validate_accepts_well_formed_template() -> None:
    result = validate(two_stage_template())
    assert result.valid
    assert result.errors == []


def test_validate_reports_missing_fields() -> None:
    result = validate({"stages": [{"steps": "nope"}]})

    assert not result.valid
    assert "Missing templateId" in result.errors
    assert "Missing templateName" in result.errors
    assert "Stage 0: Missing stageId" in result.errors
    assert "Stage 0: Missing stageName" in result.errors
    assert "Stage 0: Missing or invalid steps array" in result.errors


def test_validate_requires_stages_array() -> None:
    result = validate({"templateId": "x", "templateName": "X"})
    assert result.errors == ["Missing or invalid stages array"]


def test_validate_detects_stage_cycle() -> None:
    template = Template(
        template_id="cyc",
        template_name="Cycle",
        stages=[
            make_stage("s1", [make_step("a")], deps=["s2"]),
            make_stage("s2", [make_step("b")], deps=["s1"]),
        ],
    )
    result = validate(template)
    assert not result.valid
    assert "Stage dependency cycle between s1, s2" in result.errors


def test_validate_detects_step_cycle_and_foreign_dependency() -> None:
    template = Template(
        template_id="cyc",
        template_name="Cycle",
        stages=[
            make_stage("s1", [make_step("a", deps=["b"]), make_step("b", deps=["a"])]),
            make_stage("s2", [make_step("c", deps=["a"])]),
        ],
    )
    errors = validate(template).errors
    assert "Stage 0: Step dependency cycle between a, b" in errors
    assert any("Step c depends on a" in e for e in errors)


def test_validate_detects_duplicates_and_unknown_stage() -> None:
    template = Template(
        template_id="dup",
        template_name="Dup",
        parameters=[Parameter(parameter_id="p"), Parameter(parameter_id="p")],
        variables=[VariableDeclaration(variable_id="v"), VariableDeclaration(variable_id="v")],
        stages=[
            make_stage("s1", [make_step("a")]),
            make_stage("s1", [make_step("a")], deps=["ghost"]),
        ],
    )
    errors = validate(template).errors
    assert "Duplicate parameter id: p" in errors
    assert "Duplicate variable id: v" in errors
    assert "Duplicate stage id: s1" in errors
    assert "Duplicate step id: a" in errors
    assert "Stage s1 depends on unknown stage ghost" in errors


def test_validate_reports_non_string_ids() -> None:
    raw = {
        "templateId": "t",
        "templateName": "T",
        "parameters": [{"parameterId": ["p"]}, "loose"],
        "stages": [
            {"stageId": ["x"], "stageName": "S", "steps": []},
            {
                "stageId": "s",
                "stageName": "S",
                "dependencies": [["x"]],
                "steps": [
                    {"stepId": {"id": "a"}},
                    {"stepId": "b", "dependencies": [["a"]]},
                    {"stepId": "c", "dependencies": "b"},
                ],
            },
        ],
    }
    errors = validate(raw).errors

    assert "Every parameter must be an object" in errors
    assert "Every parameter needs a parameterId" in errors
    assert "Stage 0: Missing stageId" in errors
    assert "Stage 1: dependencies must be non-empty id strings" in errors
    assert "Stage 1: Every step needs a stepId" in errors
    assert "Stage 1: Step b: dependencies must be non-empty id strings" in errors
    assert "Stage 1: Step c: dependencies must be an array" in errors


def test_builder_helpers() -> None:
    template = create_draft("user_admin")
    assert template.template_id.startswith("template_")
    assert template.created_by == "user_admin"

    add_stage(template, Stage(stage_id="s1", stage_name="One"))
    add_stage(template, Stage(stage_id="s2", stage_name="Two"))
    assert [s.order for s in template.stages] == [1, 2]
    assert template.stages[1].condition is StageCondition.SUCCEEDED
    remove_stage(template, "s1")
    assert [s.stage_id for s in template.stages] == ["s2"]

    add_parameter(template, Parameter(parameter_id="p"))
    add_variable(template, VariableDeclaration(variable_id="v"))
    remove_parameter(template, "p")
    remove_variable(template, "v")
    assert template.parameters == [] and template.variables == []


@pytest.mark.asyncio
async def test_save_rejects_invalid_template(services) -> None:
    result = await services.templates.save_template(create_draft())
    assert not result.valid
    assert await services.templates.list_templates() == []


@pytest.mark.asyncio
async def test_duplicate_template(services) -> None:
    await services.templates.save_template(two_stage_template())

    copy = await services.templates.duplicate_template("tpl-two", "user_x")

    assert copy is not None
    assert copy.template_id != "tpl-two"
    assert copy.template_name == "Two stages (Copy)"
    assert copy.created_by == "user_x"
    assert len(await services.templates.list_templates()) == 2
    assert await services.templates.duplicate_template("missing") is None


@pytest.mark.asyncio
async def test_delete_template(services) -> None:
    await services.templates.save_template(two_stage_template())
    assert await services.templates.delete_template("tpl-two") is True
    assert await services.templates.delete_template("tpl-two") is False
    assert await services.templates.get_template("tpl-two") is None


@pytest.mark.asyncio
async def test_import_migrates_and_stores(services) -> None:
    template = await services.templates.import_from_json(json.dumps(LEGACY))

    assert template.parameters[0].parameter_id == "batch"
    assert await services.templates.would_collide("legacy-1")


@pytest.mark.asyncio
async def test_import_collision_needs_replace(services) -> None:
    await services.templates.import_from_json(json.dumps(LEGACY))

    renamed = dict(LEGACY, templateName="Renamed")
    with pytest.raises(TemplateImportError, match="already exists"):
        await services.templates.import_from_json(json.dumps(renamed))
    assert (await services.templates.get_template("legacy-1")).template_name == "Legacy"

    await services.templates.import_from_json(json.dumps(renamed), replace=True)
    assert (await services.templates.get_template("legacy-1")).template_name == "Renamed"


@pytest.mark.asyncio
async def test_import_rejects_bad_input_without_side_effects(services) -> None:
    with pytest.raises(TemplateImportError, match="Error parsing JSON"):
        await services.templates.import_from_json("{oops")
    with pytest.raises(TemplateImportError, match="Invalid template format"):
        await services.templates.import_from_json(json.dumps({"templateName": "x"}))
    assert await services.templates.list_templates() == []


@pytest.mark.asyncio
async def test_export_round_trips_through_import(services) -> None:
    await services.templates.save_template(two_stage_template())

    text = await services.templates.export_to_json("tpl-two")
    assert json.loads(text)["templateId"] == "tpl-two"
    assert await services.templates.export_to_json("missing") is None

    await services.templates.delete_template("tpl-two")
    restored = await services.templates.import_from_json(text)
    assert restored == two_stage_template()


@pytest.mark.asyncio
async def test_import_rejects_malformed_ids_and_fields(services) -> None:
    bad_step_dep = {
        "templateId": "t",
        "templateName": "T",
        "stages": [
            {
                "stageId": "s",
                "stageName": "S",
                "steps": [{"stepId": "a"}, {"stepId": "b", "dependencies": [["a"]]}],
            }
        ],
    }
    with pytest.raises(TemplateImportError, match="Invalid template format"):
        await services.templates.import_from_json(json.dumps(bad_step_dep))

    legacy_strings = {
        "templateId": "t",
        "templateName": "T",
        "customFields": ["batch"],
        "stages": [],
    }
    with pytest.raises(TemplateImportError, match="Every parameter must be an object"):
        await services.templates.import_from_json(json.dumps(legacy_strings))

    assert await services.templates.list_templates() == []


def test_migrate_legacy_keeps_non_object_fields_for_validation() -> None:
    migrated = migrate_legacy({"templateId": "t", "customFields": ["batch", {"fieldId": "lot"}]})
    assert migrated["parameters"][0] == "batch"
    assert migrated["parameters"][1]["parameterId"] == "lot"

    migrated = migrate_legacy({"templateId": "t", "customFields": "batch"})
    assert "Invalid parameters array" in validate(migrated).errors
