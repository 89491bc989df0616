from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from pydantic import ValidationError

from .models import (
    AppData,
    Job,
    JobStatus,
    Role,
    Stage,
    Step,
    Template,
    User,
)

logger = logging.getLogger(__name__)

APP_DATA_KEY = "appData"
CONFIG_KEY = "systemConfig"
SESSION_KEY = "currentUser"


class VersionConflict(ValueError):
    """A job was saved from a stale copy."""

    def __init__(self, job_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Job {job_id} is at version {actual}, caller expected {expected}"
        )
        self.job_id = job_id
        self.expected = expected
        self.actual = actual


class KeyValueStorage(Protocol):
    """Named JSON blobs, the way the browser's local storage holds them."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryStorage:
    def __init__(self) -> None:
        self._blobs: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._blobs.get(key)

    def set(self, key: str, value: str) -> None:
        self._blobs[key] = value

    def remove(self, key: str) -> None:
        self._blobs.pop(key, None)


class FileStorage:
    """One ``<key>.json`` file per key inside ``directory``."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(value)
            os.replace(tmp, self._path(key))
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def remove(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


class AppDataStore:
    """
    Repository over the ``appData`` and ``currentUser`` blobs.

    Every mutation is a read-modify-write of the whole data set, serialized
    through one lock. Reads hand out fresh copies, so callers may mutate what
    they get back without touching stored state until they save it.
    """

    def __init__(self, storage: KeyValueStorage) -> None:
        self.storage = storage
        self._lock = asyncio.Lock()

    # ---------- blob helpers ----------

    def _load(self) -> AppData:
        raw = self.storage.get(APP_DATA_KEY)
        if raw is None:
            return AppData()
        return AppData.model_validate_json(raw)

    def _dump(self, data: AppData) -> None:
        self.storage.set(APP_DATA_KEY, data.model_dump_json(by_alias=True))

    async def has_data(self) -> bool:
        async with self._lock:
            return self.storage.get(APP_DATA_KEY) is not None

    async def seed_demo_data(self) -> bool:
        """Install demo users and the demo template if nothing is stored yet."""
        async with self._lock:
            if self.storage.get(APP_DATA_KEY) is not None:
                return False
            self._dump(demo_app_data())
            logger.info("Seeded demo data set")
            return True

    # ---------- users ----------

    async def list_users(self) -> List[User]:
        async with self._lock:
            return self._load().users

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self._lock:
            return next((u for u in self._load().users if u.user_id == user_id), None)

    async def find_user_by_username(self, username: str) -> Optional[User]:
        async with self._lock:
            return next((u for u in self._load().users if u.username == username), None)

    async def save_user(self, user: User) -> User:
        async with self._lock:
            data = self._load()
            _upsert(data.users, user, "user_id")
            self._dump(data)
            return user

    # ---------- session ----------

    async def get_session(self) -> Optional[User]:
        async with self._lock:
            raw = self.storage.get(SESSION_KEY)
            if raw is None:
                return None
            return User.model_validate_json(raw)

    async def set_session(self, user: Optional[User]) -> None:
        async with self._lock:
            if user is None:
                self.storage.remove(SESSION_KEY)
            else:
                self.storage.set(SESSION_KEY, user.model_dump_json(by_alias=True))

    # ---------- templates ----------

    async def list_templates(self) -> List[Template]:
        async with self._lock:
            return self._load().templates

    async def get_template(self, template_id: str) -> Optional[Template]:
        async with self._lock:
            return next(
                (t for t in self._load().templates if t.template_id == template_id),
                None,
            )

    async def save_template(self, template: Template) -> Template:
        async with self._lock:
            data = self._load()
            _upsert(data.templates, template, "template_id")
            self._dump(data)
            return template

    async def delete_template(self, template_id: str) -> bool:
        async with self._lock:
            data = self._load()
            before = len(data.templates)
            data.templates = [t for t in data.templates if t.template_id != template_id]
            if len(data.templates) == before:
                return False
            self._dump(data)
            return True

    # ---------- jobs ----------

    async def list_jobs(self) -> List[Job]:
        async with self._lock:
            return self._load().jobs

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self._lock:
            return next((j for j in self._load().jobs if j.job_id == job_id), None)

    async def jobs_for_user(self, user_id: str) -> List[Job]:
        async with self._lock:
            return [j for j in self._load().jobs if j.assigned_to == user_id]

    async def jobs_by_status(self, status: JobStatus) -> List[Job]:
        async with self._lock:
            return [j for j in self._load().jobs if j.status == status]

    async def save_job(self, job: Job, *, expected_version: Optional[int] = None) -> Job:
        """Insert or replace a job, bumping its version.

        With ``expected_version`` set, the stored copy must still be at that
        version or :class:`VersionConflict` is raised and nothing is written.
        """
        async with self._lock:
            data = self._load()
            existing = next((j for j in data.jobs if j.job_id == job.job_id), None)
            if (
                expected_version is not None
                and existing is not None
                and existing.version != expected_version
            ):
                raise VersionConflict(job.job_id, expected_version, existing.version)

            job.version = (existing.version if existing is not None else job.version) + 1
            _upsert(data.jobs, job, "job_id")
            self._dump(data)
            return job

    async def delete_job(self, job_id: str) -> bool:
        async with self._lock:
            data = self._load()
            before = len(data.jobs)
            data.jobs = [j for j in data.jobs if j.job_id != job_id]
            if len(data.jobs) == before:
                return False
            self._dump(data)
            return True

    # ---------- whole data set ----------

    async def export_data(self) -> str:
        async with self._lock:
            return json.dumps(self._load().to_json_dict(), indent=2)

    async def import_data(self, text: str) -> bool:
        """Replace the whole data set. Returns False and keeps the old one on bad input.

        Templates go through the same migration and validation as a single
        template import, so an accepted data set never holds a template whose
        dependencies can deadlock.
        """
        from .templates import migrate_legacy, validate

        try:
            raw = json.loads(text)
        except ValueError:
            return False
        if not isinstance(raw, dict) or not all(k in raw for k in ("users", "templates", "jobs")):
            return False
        if not isinstance(raw["templates"], list):
            return False

        templates = []
        for entry in raw["templates"]:
            if not isinstance(entry, dict):
                logger.warning("Rejected data import: template entry is not an object")
                return False
            migrated = migrate_legacy(entry)
            result = validate(migrated)
            if not result.valid:
                logger.warning(
                    "Rejected data import: template %s: %s",
                    migrated.get("templateId"),
                    result.errors,
                )
                return False
            templates.append(migrated)
        raw = {**raw, "templates": templates}

        try:
            data = AppData.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Rejected data import: %s", exc)
            return False

        async with self._lock:
            self._dump(data)
        return True

    async def clear_all_data(self) -> None:
        async with self._lock:
            self._dump(AppData())


def _upsert(items: list, record, key: str) -> None:
    record_id = getattr(record, key)
    for idx, existing in enumerate(items):
        if getattr(existing, key) == record_id:
            items[idx] = record
            return
    items.append(record)


def demo_app_data() -> AppData:
    """Three demo users and a basic three-stage manufacturing template."""
    users = [
        User(
            user_id=f"user_{role.value}",
            username=role.value,
            full_name=f"{role.value.capitalize()} User",
            email=f"{role.value}@company.com",
            role=role,
        )
        for role in (Role.ADMIN, Role.SUPERVISOR, Role.OPERATOR)
    ]

    template = Template(
        template_id="template_001",
        template_name="Standard Manufacturing Job",
        description="Standard manufacturing process with prep, production, and QA stages",
        stages=[
            Stage(
                stage_id="stage_1",
                stage_name="Preparation",
                order=1,
                steps=[
                    Step(
                        step_id="step_1",
                        step_name="Material Inspection",
                        description="Verify raw materials meet specifications",
                        order=1,
                        requirements=["Raw materials", "Inspection tools"],
                        checklist=[
                            "Material dimensions verified",
                            "No surface defects",
                            "Proper storage conditions",
                        ],
                    ),
                    Step(
                        step_id="step_2",
                        step_name="Equipment Setup",
                        description="Prepare and calibrate equipment",
                        order=2,
                        dependencies=["step_1"],
                        requirements=["Equipment manual", "Calibration tools"],
                        checklist=[
                            "Equipment cleaned",
                            "Calibration verified",
                            "Safety check completed",
                        ],
                    ),
                ],
            ),
            Stage(
                stage_id="stage_2",
                stage_name="Production",
                order=2,
                dependencies=["stage_1"],
                steps=[
                    Step(
                        step_id="step_3",
                        step_name="Processing",
                        description="Execute main processing operation",
                        order=1,
                        requirements=["Processed materials", "Operating procedures"],
                        checklist=[
                            "Process parameters set",
                            "Quality check during processing",
                            "Process completed",
                        ],
                    )
                ],
            ),
            Stage(
                stage_id="stage_3",
                stage_name="Quality Control",
                order=3,
                dependencies=["stage_2"],
                steps=[
                    Step(
                        step_id="step_4",
                        step_name="Final Inspection",
                        description="Final quality verification",
                        order=1,
                        requirements=["Inspection checklist", "Measuring tools"],
                        checklist=[
                            "Dimensions within tolerance",
                            "Visual inspection passed",
                            "Documentation complete",
                        ],
                    )
                ],
            ),
        ],
        created_at=datetime.utcnow(),
        created_by="user_admin",
    )

    return AppData(users=users, templates=[template], jobs=[])
