from __future__ import annotations

import json
import logging
import re
from typing import Dict, Optional

from pydantic import ValidationError

from .models import SystemConfig
from .storage import CONFIG_KEY, KeyValueStorage

logger = logging.getLogger(__name__)

DEFAULT_FEATURES: Dict[str, bool] = {
    "templates": True,
    "stages": True,
    "sequentialSteps": True,
    "parallelExecution": False,
    "conditionalSteps": False,
    "jobParameters": False,
    "complexRequirements": False,
    "qaTemplates": False,
    "teamAssignment": False,
    "certificationTracking": False,
    "excelImport": False,
    "approvalGates": False,
    "photoEvidence": True,
    "barcodeScanning": False,
    "notifications": False,
    "reporting": False,
}

# Presets leave the core flags (templates, stages, sequentialSteps) alone.
INDUSTRY_PRESETS: Dict[str, Dict[str, bool]] = {
    "general": {
        "parallelExecution": False,
        "conditionalSteps": False,
        "jobParameters": False,
        "complexRequirements": False,
        "qaTemplates": False,
        "teamAssignment": False,
        "certificationTracking": False,
        "excelImport": False,
        "approvalGates": False,
        "photoEvidence": True,
        "barcodeScanning": False,
        "notifications": False,
        "reporting": False,
    },
    "manufacturing": {
        "parallelExecution": True,
        "conditionalSteps": True,
        "jobParameters": True,
        "complexRequirements": True,
        "qaTemplates": True,
        "teamAssignment": True,
        "certificationTracking": True,
        "excelImport": True,
        "approvalGates": False,
        "photoEvidence": True,
        "barcodeScanning": True,
        "notifications": True,
        "reporting": True,
    },
    "food": {
        "parallelExecution": False,
        "conditionalSteps": False,
        "jobParameters": True,
        "complexRequirements": False,
        "qaTemplates": True,
        "teamAssignment": False,
        "certificationTracking": True,
        "excelImport": False,
        "approvalGates": True,
        "photoEvidence": True,
        "barcodeScanning": True,
        "notifications": True,
        "reporting": True,
    },
}

_FEATURE_LABELS = {
    "jobParameters": "Job Parameters",
    "qaTemplates": "QA Templates",
    "excelImport": "Excel Import",
}


def default_config() -> SystemConfig:
    return SystemConfig(
        client_id="demo_client",
        client_name="Demo Company",
        industry="general",
        features=dict(DEFAULT_FEATURES),
    )


def industry_preset(industry: str) -> Dict[str, bool]:
    return dict(INDUSTRY_PRESETS.get(industry, INDUSTRY_PRESETS["general"]))


def format_feature_name(key: str) -> str:
    """``sequentialSteps`` -> ``Sequential Steps``."""
    if key in _FEATURE_LABELS:
        return _FEATURE_LABELS[key]
    spaced = re.sub(r"([A-Z])", r" \1", key)
    return spaced[:1].upper() + spaced[1:]


class FeatureStore:
    """The ``systemConfig`` blob: client identity plus named feature toggles."""

    def __init__(self, storage: KeyValueStorage) -> None:
        self.storage = storage
        self._config: Optional[SystemConfig] = None

    @property
    def config(self) -> SystemConfig:
        if self._config is None:
            self.load()
        return self._config

    def load(self) -> SystemConfig:
        raw = self.storage.get(CONFIG_KEY)
        if raw is None:
            self._config = default_config()
            self.save()
        else:
            self._config = SystemConfig.model_validate_json(raw)
        return self._config

    def save(self) -> None:
        self.storage.set(CONFIG_KEY, self.config.model_dump_json(by_alias=True))

    def apply_preset(self, industry: str) -> SystemConfig:
        config = self.config
        config.industry = industry
        config.features.update(industry_preset(industry))
        self.save()
        logger.info("Applied %s feature preset", industry)
        return config

    def update_feature(self, name: str, enabled: bool) -> bool:
        if name not in self.config.features:
            return False
        self.config.features[name] = enabled
        self.save()
        return True

    def is_enabled(self, name: str) -> bool:
        return self.config.features.get(name) is True

    def reset_to_defaults(self) -> SystemConfig:
        self._config = default_config()
        self.save()
        return self._config

    def export_config(self) -> str:
        return json.dumps(self.config.to_json_dict(), indent=2)

    def import_config(self, text: str) -> bool:
        try:
            raw = json.loads(text)
        except ValueError:
            return False
        if not isinstance(raw, dict) or not raw.get("clientId") or not raw.get("features"):
            return False
        try:
            self._config = SystemConfig.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Rejected config import: %s", exc)
            return False
        self.save()
        return True
