from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from prometheus_client import Counter

from .directory import Directory
from .models import (
    ChecklistEntry,
    Job,
    JobCreate,
    JobStatus,
    StageExecution,
    StageStatus,
    StepCompletion,
    StepExecution,
    StepSource,
    StepStatus,
    Template,
)
from .progress import (
    find_stage,
    job_progress,
    recompute_job_status,
    stage_should_run,
)
from .storage import AppDataStore
from .substitution import parse_typed_value, substitute

logger = logging.getLogger(__name__)


jobs_created_counter = Counter(
    "jobflow_jobs_created_total",
    "Total number of jobs instantiated from templates",
    ["template_id"],
)

jobs_completed_counter = Counter(
    "jobflow_jobs_completed_total",
    "Total number of jobs that reached completed",
    ["template_id"],
)

steps_started_counter = Counter(
    "jobflow_steps_started_total",
    "Total number of steps started",
    ["template_id"],
)

steps_completed_counter = Counter(
    "jobflow_steps_completed_total",
    "Total number of steps completed",
    ["template_id"],
)

transitions_rejected_counter = Counter(
    "jobflow_step_transitions_rejected_total",
    "Start/complete requests refused by the step state machine",
    ["operation"],
)


def _substitute_step(
    step: StepExecution, parameters: Dict[str, Any], variables: Dict[str, Any]
) -> None:
    """Rebuild a step's display text from its template source."""
    source = step.source
    step.step_name = substitute(source.step_name, parameters, variables)
    step.description = substitute(source.description, parameters, variables)
    step.requirements = [substitute(r, parameters, variables) for r in source.requirements]
    for entry, text in zip(step.checklist, source.checklist):
        entry.item = substitute(text, parameters, variables)


def build_stage_executions(
    template: Template, parameters: Dict[str, Any], variables: Dict[str, Any]
) -> List[StageExecution]:
    """Clone the template's stage/step tree into fresh execution records."""
    stages: List[StageExecution] = []
    for stage in template.stages:
        steps: List[StepExecution] = []
        for step in stage.steps:
            execution = StepExecution(
                step_id=step.step_id,
                dependencies=list(step.dependencies),
                checklist=[ChecklistEntry(item=text) for text in step.checklist],
                source=StepSource(
                    step_name=step.step_name,
                    description=step.description,
                    requirements=list(step.requirements),
                    checklist=list(step.checklist),
                ),
            )
            _substitute_step(execution, parameters, variables)
            steps.append(execution)

        stages.append(
            StageExecution(
                stage_id=stage.stage_id,
                stage_name=stage.stage_name,
                dependencies=list(stage.dependencies),
                condition=stage.condition,
                # a stage without steps has nothing left to do
                status=StageStatus.PENDING if steps else StageStatus.COMPLETED,
                step_executions=steps,
            )
        )
    return stages


def locate_step(
    job: Job, stage_index: int, step_index: int
) -> Optional[Tuple[StageExecution, StepExecution]]:
    if not 0 <= stage_index < len(job.stage_executions):
        return None
    stage = job.stage_executions[stage_index]
    if not 0 <= step_index < len(stage.step_executions):
        return None
    return stage, stage.step_executions[step_index]


def can_start(job: Job, stage_index: int, step_index: int) -> bool:
    """
    A step may start when:

    * it is still pending
    * its stage's condition holds against the stage's predecessor
    * every step it depends on (same stage) is completed
    * every stage its stage depends on is completed
    """
    located = locate_step(job, stage_index, step_index)
    if located is None:
        return False
    stage, step = located

    if step.status != StepStatus.PENDING:
        return False

    if not stage_should_run(job, stage):
        return False

    steps_by_id = {s.step_id: s for s in stage.step_executions}
    for dep_id in step.dependencies:
        dep = steps_by_id.get(dep_id)
        if dep is None or dep.status != StepStatus.COMPLETED:
            return False

    for dep_id in stage.dependencies:
        dep_stage = find_stage(job, dep_id)
        if dep_stage is None or dep_stage.status != StageStatus.COMPLETED:
            return False

    return True


class JobEngine:
    """
    Instantiates jobs from templates and drives the per-step state machine.

        pending --start (can_start)--> in-progress --complete--> completed

    Refused transitions return False and leave the job untouched. Successful
    ones persist the job through the store.
    """

    def __init__(self, store: AppDataStore, directory: Directory):
        self.store = store
        self.directory = directory

    # ----------------- creation -----------------

    async def instantiate(self, payload: JobCreate) -> Optional[Job]:
        template = await self.store.get_template(payload.template_id)
        if template is None:
            logger.error("Template not found: %s", payload.template_id)
            return None

        parameters = {
            p.parameter_id: payload.parameters.get(p.parameter_id, p.default_value)
            for p in template.parameters
        }
        variables = {v.variable_id: v.default_value for v in template.variables}

        job = Job(
            job_id=f"job_{uuid.uuid4().hex[:12]}",
            template_id=template.template_id,
            job_name=payload.job_name,
            order_no=payload.order_no,
            client=payload.client,
            due_date=payload.due_date,
            assigned_to=payload.assigned_to,
            status=JobStatus.PENDING,
            created_at=datetime.utcnow(),
            created_by=await self.directory.actor_id(),
            parameters=parameters,
            variables=variables,
            stage_executions=build_stage_executions(template, parameters, variables),
        )
        await self.store.save_job(job)
        jobs_created_counter.labels(template_id=template.template_id).inc()
        logger.info("Created job %s from template %s", job.job_id, template.template_id)
        return job

    # ----------------- step transitions -----------------

    def can_start(self, job: Job, stage_index: int, step_index: int) -> bool:
        return can_start(job, stage_index, step_index)

    async def start_step(self, job: Job, stage_index: int, step_index: int) -> bool:
        if not can_start(job, stage_index, step_index):
            transitions_rejected_counter.labels(operation="start").inc()
            logger.debug(
                "Refused to start step %d/%d of job %s", stage_index, step_index, job.job_id
            )
            return False

        snapshot = job.model_copy(deep=True)
        _, step = locate_step(job, stage_index, step_index)
        step.status = StepStatus.IN_PROGRESS
        step.started_at = datetime.utcnow()
        step.started_by = await self.directory.actor_id()

        if job.status == JobStatus.PENDING:
            job.status = JobStatus.IN_PROGRESS

        await self._commit(job, snapshot)
        steps_started_counter.labels(template_id=job.template_id).inc()
        return True

    async def complete_step(
        self,
        job: Job,
        stage_index: int,
        step_index: int,
        completion: Optional[StepCompletion] = None,
    ) -> bool:
        located = locate_step(job, stage_index, step_index)
        if located is None or located[1].status != StepStatus.IN_PROGRESS:
            transitions_rejected_counter.labels(operation="complete").inc()
            return False

        completion = completion or StepCompletion()
        snapshot = job.model_copy(deep=True)
        _, step = located

        # Checklist completeness is a confirmation prompt in the UI, not a rule here.
        if completion.checklist_result is not None:
            step.checklist = [entry.model_copy() for entry in completion.checklist_result]
        if completion.notes:
            step.notes = completion.notes

        for key, raw in completion.variable_updates.items():
            if key in job.variables:
                job.variables[key] = parse_typed_value(raw)
            else:
                logger.debug("Ignoring update for undeclared variable %s", key)

        self._resubstitute_pending(job)

        step.status = StepStatus.COMPLETED
        step.completed_at = datetime.utcnow()
        step.completed_by = await self.directory.actor_id()

        was_completed = snapshot.status == JobStatus.COMPLETED
        recompute_job_status(job)

        await self._commit(job, snapshot)
        steps_completed_counter.labels(template_id=job.template_id).inc()
        if job.status == JobStatus.COMPLETED and not was_completed:
            jobs_completed_counter.labels(template_id=job.template_id).inc()
            logger.info("Job %s completed", job.job_id)
        return True

    async def _commit(self, job: Job, snapshot: Job) -> None:
        """Save ``job`` against the version ``snapshot`` was taken at.

        When the save fails (a :class:`VersionConflict` included), ``job`` is
        put back to ``snapshot`` before the error propagates.
        """
        try:
            await self.store.save_job(job, expected_version=snapshot.version)
        except Exception:
            for name in Job.model_fields:
                setattr(job, name, getattr(snapshot, name))
            raise

    def _resubstitute_pending(self, job: Job) -> None:
        # Started and completed steps keep the text they were shown with.
        for stage in job.stage_executions:
            for step in stage.step_executions:
                if step.status == StepStatus.PENDING:
                    _substitute_step(step, job.parameters, job.variables)

    # ----------------- queries -----------------

    def progress(self, job: Job) -> int:
        return job_progress(job)

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self.store.get_job(job_id)

    async def list_jobs(self) -> List[Job]:
        return await self.store.list_jobs()

    async def jobs_for_user(self, user_id: str) -> List[Job]:
        return await self.store.jobs_for_user(user_id)

    async def jobs_by_status(self, status: JobStatus) -> List[Job]:
        return await self.store.jobs_by_status(status)

    async def update_job(self, job: Job) -> Job:
        return await self.store.save_job(job)

    async def delete_job(self, job_id: str) -> bool:
        return await self.store.delete_job(job_id)
