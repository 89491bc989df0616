from __future__ import annotations

from typing import Optional

from .models import Job, JobStatus, StageExecution, StageStatus, StepStatus
from .substitution import evaluate_stage_condition


def job_progress(job: Job) -> int:
    """Percentage (0-100) of the job's steps that are completed."""
    total = 0
    completed = 0
    for stage in job.stage_executions:
        total += len(stage.step_executions)
        completed += sum(1 for s in stage.step_executions if s.status == StepStatus.COMPLETED)

    if total == 0:
        return 0
    return round(100 * completed / total)


def find_stage(job: Job, stage_id: str) -> Optional[StageExecution]:
    return next((s for s in job.stage_executions if s.stage_id == stage_id), None)


def predecessor_of(job: Job, stage: StageExecution) -> Optional[StageExecution]:
    """The stage a condition is judged against: the first declared dependency."""
    if not stage.dependencies:
        return None
    return find_stage(job, stage.dependencies[0])


def stage_should_run(job: Job, stage: StageExecution) -> bool:
    return evaluate_stage_condition(stage.condition, predecessor_of(job, stage))


def recompute_stage_status(stage: StageExecution) -> StageStatus:
    """Mark a stage completed once every one of its steps is completed."""
    if stage.status != StageStatus.FAILED and all(
        s.status == StepStatus.COMPLETED for s in stage.step_executions
    ):
        stage.status = StageStatus.COMPLETED
    return stage.status


def recompute_job_status(job: Job) -> JobStatus:
    """Complete the job when every stage is done or its condition says skip."""
    for stage in job.stage_executions:
        recompute_stage_status(stage)

    if all(
        stage.status == StageStatus.COMPLETED or not stage_should_run(job, stage)
        for stage in job.stage_executions
    ):
        job.status = JobStatus.COMPLETED
    return job.status
