from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

from .config import Settings, settings
from .directory import Directory
from .engine import JobEngine, locate_step
from .features import FeatureStore
from .models import (
    Job,
    JobCreate,
    JobStatus,
    LoginRequest,
    StepCompletion,
    StepTransition,
    SystemConfig,
    Template,
    User,
    ValidationResult,
)
from .storage import AppDataStore, FileStorage, KeyValueStorage, MemoryStorage, VersionConflict
from .templates import TemplateImportError, TemplateStore, create_draft, validate

logger = logging.getLogger(__name__)

REQUEST_COUNT = Counter("jobflow_request_count", "Total requests", ["method", "endpoint"])
REQUEST_LATENCY = Histogram(
    "jobflow_request_latency_seconds", "Request latency", ["endpoint"]
)


def build_storage(settings: Settings) -> KeyValueStorage:
    if settings.STORAGE_BACKEND == "memory":
        return MemoryStorage()
    return FileStorage(settings.DATA_DIR)


def create_app(settings: Settings = settings) -> FastAPI:
    logging.basicConfig(level=settings.LOG_LEVEL)

    storage = build_storage(settings)
    store = AppDataStore(storage)
    directory = Directory(store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.SEED_DEMO_DATA:
            await store.seed_demo_data()
        app.state.features.load()
        yield

    app = FastAPI(title="Jobflow", version="0.1.0", lifespan=lifespan)
    app.state.store = store
    app.state.directory = directory
    app.state.templates = TemplateStore(store)
    app.state.engine = JobEngine(store, directory)
    app.state.features = FeatureStore(storage)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def record_metrics(request: Request, call_next):
        start = time.time()
        response = await call_next(request)
        # route template, so ids in the path do not create new series
        route = request.scope.get("route")
        endpoint = route.path if route is not None else "unmatched"
        REQUEST_COUNT.labels(request.method, endpoint).inc()
        REQUEST_LATENCY.labels(endpoint).observe(time.time() - start)
        return response

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    _register_routes(app)
    return app


# ----------------- dependencies -----------------


def get_engine(request: Request) -> JobEngine:
    return request.app.state.engine


def get_templates(request: Request) -> TemplateStore:
    return request.app.state.templates


def get_directory(request: Request) -> Directory:
    return request.app.state.directory


def get_features(request: Request) -> FeatureStore:
    return request.app.state.features


def get_store(request: Request) -> AppDataStore:
    return request.app.state.store


async def load_job(job_id: str, engine: JobEngine = Depends(get_engine)) -> Job:
    job = await engine.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


def check_version(job: Job, expected: Optional[int]) -> None:
    if expected is not None and job.version != expected:
        raise HTTPException(
            status_code=409,
            detail=f"Job is at version {job.version}, expected {expected}",
        )


def _register_routes(app: FastAPI) -> None:
    # ----------------- session / users -----------------

    @app.post("/session", response_model=User)
    async def login(
        payload: LoginRequest, directory: Directory = Depends(get_directory)
    ) -> User:
        user = await directory.login(payload.username, payload.role)
        if user is None:
            raise HTTPException(status_code=400, detail="Username and role are required")
        return user

    @app.get("/session", response_model=User)
    async def current_session(directory: Directory = Depends(get_directory)) -> User:
        user = await directory.current_user()
        if user is None:
            raise HTTPException(status_code=404, detail="Nobody is logged in")
        return user

    @app.delete("/session", status_code=204)
    async def logout(directory: Directory = Depends(get_directory)) -> Response:
        await directory.logout()
        return Response(status_code=204)

    @app.get("/users", response_model=List[User])
    async def list_users(directory: Directory = Depends(get_directory)) -> List[User]:
        return await directory.list_users()

    # ----------------- templates -----------------

    @app.get("/templates", response_model=List[Template])
    async def list_templates(
        templates: TemplateStore = Depends(get_templates),
    ) -> List[Template]:
        return await templates.list_templates()

    @app.post("/templates/draft", response_model=Template)
    async def new_draft(directory: Directory = Depends(get_directory)) -> Template:
        return create_draft(await directory.actor_id())

    @app.post("/templates/validate", response_model=ValidationResult)
    async def validate_template(payload: Dict[str, Any] = Body(...)) -> ValidationResult:
        return validate(payload)

    @app.post("/templates/import", response_model=Template)
    async def import_template(
        request: Request,
        replace: bool = False,
        templates: TemplateStore = Depends(get_templates),
    ) -> Template:
        text = (await request.body()).decode("utf-8", errors="replace")
        try:
            return await templates.import_from_json(text, replace=replace)
        except TemplateImportError as exc:
            raise HTTPException(status_code=422, detail=str(exc))

    @app.post("/templates", response_model=Template)
    async def create_template(
        template: Template, templates: TemplateStore = Depends(get_templates)
    ) -> Template:
        if template.template_id and await templates.would_collide(template.template_id):
            raise HTTPException(status_code=409, detail="Template already exists")
        result = await templates.save_template(template)
        if not result.valid:
            raise HTTPException(status_code=422, detail=result.errors)
        return template

    @app.get("/templates/{template_id}", response_model=Template)
    async def get_template(
        template_id: str, templates: TemplateStore = Depends(get_templates)
    ) -> Template:
        template = await templates.get_template(template_id)
        if template is None:
            raise HTTPException(status_code=404, detail="Template not found")
        return template

    @app.put("/templates/{template_id}", response_model=Template)
    async def update_template(
        template_id: str,
        template: Template,
        templates: TemplateStore = Depends(get_templates),
    ) -> Template:
        template.template_id = template_id
        result = await templates.save_template(template)
        if not result.valid:
            raise HTTPException(status_code=422, detail=result.errors)
        return template

    @app.delete("/templates/{template_id}", status_code=204)
    async def delete_template(
        template_id: str, templates: TemplateStore = Depends(get_templates)
    ) -> Response:
        if not await templates.delete_template(template_id):
            raise HTTPException(status_code=404, detail="Template not found")
        return Response(status_code=204)

    @app.post("/templates/{template_id}/duplicate", response_model=Template)
    async def duplicate_template(
        template_id: str,
        templates: TemplateStore = Depends(get_templates),
        directory: Directory = Depends(get_directory),
    ) -> Template:
        duplicated = await templates.duplicate_template(
            template_id, await directory.actor_id()
        )
        if duplicated is None:
            raise HTTPException(status_code=404, detail="Template not found")
        return duplicated

    @app.get("/templates/{template_id}/export")
    async def export_template(
        template_id: str, templates: TemplateStore = Depends(get_templates)
    ) -> Response:
        text = await templates.export_to_json(template_id)
        if text is None:
            raise HTTPException(status_code=404, detail="Template not found")
        return Response(
            content=text,
            media_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{template_id}.json"'},
        )

    # ----------------- jobs -----------------

    @app.post("/jobs", response_model=Job)
    async def create_job(payload: JobCreate, engine: JobEngine = Depends(get_engine)) -> Job:
        job = await engine.instantiate(payload)
        if job is None:
            raise HTTPException(status_code=404, detail="Template not found")
        return job

    @app.get("/jobs", response_model=List[Job])
    async def list_jobs(
        assigned_to: Optional[str] = None,
        status: Optional[JobStatus] = None,
        engine: JobEngine = Depends(get_engine),
    ) -> List[Job]:
        if assigned_to is not None:
            jobs = await engine.jobs_for_user(assigned_to)
        else:
            jobs = await engine.list_jobs()
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        return jobs

    @app.get("/jobs/{job_id}", response_model=Job)
    async def get_job(job: Job = Depends(load_job)) -> Job:
        return job

    @app.delete("/jobs/{job_id}", status_code=204)
    async def delete_job(job_id: str, engine: JobEngine = Depends(get_engine)) -> Response:
        if not await engine.delete_job(job_id):
            raise HTTPException(status_code=404, detail="Job not found")
        return Response(status_code=204)

    @app.get("/jobs/{job_id}/progress")
    async def job_progress(
        job: Job = Depends(load_job), engine: JobEngine = Depends(get_engine)
    ) -> Dict[str, Any]:
        return {"jobId": job.job_id, "status": job.status, "progress": engine.progress(job)}

    @app.get("/jobs/{job_id}/steps/{stage_index}/{step_index}")
    async def step_state(
        stage_index: int,
        step_index: int,
        job: Job = Depends(load_job),
        engine: JobEngine = Depends(get_engine),
    ) -> Dict[str, Any]:
        located = locate_step(job, stage_index, step_index)
        if located is None:
            raise HTTPException(status_code=404, detail="Step not found")
        _, step = located
        return {
            "stepId": step.step_id,
            "status": step.status,
            "canStart": engine.can_start(job, stage_index, step_index),
        }

    @app.post("/jobs/{job_id}/steps/{stage_index}/{step_index}/start", response_model=Job)
    async def start_step(
        stage_index: int,
        step_index: int,
        payload: Optional[StepTransition] = None,
        job: Job = Depends(load_job),
        engine: JobEngine = Depends(get_engine),
    ) -> Job:
        if locate_step(job, stage_index, step_index) is None:
            raise HTTPException(status_code=404, detail="Step not found")
        check_version(job, payload.expected_version if payload else None)
        try:
            started = await engine.start_step(job, stage_index, step_index)
        except VersionConflict as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        if not started:
            raise HTTPException(status_code=409, detail="Step cannot be started yet")
        return job

    @app.post("/jobs/{job_id}/steps/{stage_index}/{step_index}/complete", response_model=Job)
    async def complete_step(
        stage_index: int,
        step_index: int,
        payload: Optional[StepCompletion] = None,
        job: Job = Depends(load_job),
        engine: JobEngine = Depends(get_engine),
    ) -> Job:
        if locate_step(job, stage_index, step_index) is None:
            raise HTTPException(status_code=404, detail="Step not found")
        payload = payload or StepCompletion()
        check_version(job, payload.expected_version)
        try:
            completed = await engine.complete_step(job, stage_index, step_index, payload)
        except VersionConflict as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        if not completed:
            raise HTTPException(status_code=409, detail="Step is not in progress")
        return job

    # ----------------- configuration -----------------

    @app.get("/config", response_model=SystemConfig)
    async def get_config(features: FeatureStore = Depends(get_features)) -> SystemConfig:
        return features.config

    @app.put("/config/features/{name}", response_model=SystemConfig)
    async def set_feature(
        name: str,
        enabled: bool = Body(..., embed=True),
        features: FeatureStore = Depends(get_features),
    ) -> SystemConfig:
        if not features.update_feature(name, enabled):
            raise HTTPException(status_code=404, detail="Unknown feature")
        return features.config

    @app.post("/config/preset/{industry}", response_model=SystemConfig)
    async def apply_preset(
        industry: str, features: FeatureStore = Depends(get_features)
    ) -> SystemConfig:
        return features.apply_preset(industry)

    @app.post("/config/reset", response_model=SystemConfig)
    async def reset_config(features: FeatureStore = Depends(get_features)) -> SystemConfig:
        return features.reset_to_defaults()

    # ----------------- whole data set -----------------

    @app.get("/data/export")
    async def export_data(store: AppDataStore = Depends(get_store)) -> Response:
        return Response(content=await store.export_data(), media_type="application/json")

    @app.post("/data/import", status_code=204)
    async def import_data(
        payload: Dict[str, Any] = Body(...), store: AppDataStore = Depends(get_store)
    ) -> Response:
        if not await store.import_data(json.dumps(payload)):
            raise HTTPException(status_code=422, detail="Invalid data set")
        return Response(status_code=204)


app = create_app()
