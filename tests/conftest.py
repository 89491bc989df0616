from __future__ import annotations

from typing import List, Optional

import pytest

from jobflow.directory import Directory
from jobflow.engine import JobEngine
from jobflow.models import (
    Parameter,
    Stage,
    StageCondition,
    Step,
    Template,
    VariableDeclaration,
)
from jobflow.storage import AppDataStore, MemoryStorage
from jobflow.templates import TemplateStore


def make_step(step_id: str, name: str = "", deps: Optional[List[str]] = None, **kw) -> Step:
    return Step(
        step_id=step_id,
        step_name=name or step_id,
        dependencies=deps or [],
        **kw,
    )


def make_stage(
    stage_id: str,
    steps: List[Step],
    deps: Optional[List[str]] = None,
    condition: StageCondition = StageCondition.SUCCEEDED,
) -> Stage:
    return Stage(
        stage_id=stage_id,
        stage_name=stage_id.title(),
        dependencies=deps or [],
        condition=condition,
        steps=steps,
    )


def two_stage_template(template_id: str = "tpl-two") -> Template:
    """Stage A with one step; stage B depends on A and runs if A succeeded."""
    return Template(
        template_id=template_id,
        template_name="Two stages",
        stages=[
            make_stage("stage-a", [make_step("a1", checklist=["Check ${n}"])]),
            make_stage("stage-b", [make_step("b1")], deps=["stage-a"]),
        ],
        parameters=[Parameter(parameter_id="n", label="Count", default_value=5)],
    )


def variable_template(template_id: str = "tpl-vars") -> Template:
    return Template(
        template_id=template_id,
        template_name="Variables",
        variables=[VariableDeclaration(variable_id="t", label="Temperature", default_value=0)],
        stages=[
            make_stage(
                "measure",
                [
                    make_step("start", "Start at ${t}"),
                    make_step("record", "Record", deps=["start"]),
                    make_step(
                        "report",
                        "Temp: ${t}",
                        deps=["record"],
                        description="Expect ${t} degrees",
                        requirements=["Thermometer reading ${t}"],
                        checklist=["Logged ${t}"],
                    ),
                ],
            )
        ],
    )


class Services:
    def __init__(self) -> None:
        self.storage = MemoryStorage()
        self.store = AppDataStore(self.storage)
        self.directory = Directory(self.store)
        self.templates = TemplateStore(self.store)
        self.engine = JobEngine(self.store, self.directory)


@pytest.fixture()
def services() -> Services:
    return Services()
