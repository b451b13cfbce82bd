"""Flat run settings loaded from YAML (JSON files load too; JSON is valid YAML)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from workbook_io import ReconciliationError

logger = logging.getLogger(__name__)

REQUIRED_KEYS: list[str] = [
    "workload_file",
    "reference_file",
    "class_list_file",
    "student_profile_file",
]

OPTIONAL_KEYS: list[str] = [
    "user_profile_file",
    "verified_profile_file",
    "output_dir",
]


@dataclass
class Settings:
    """Names every input and output artifact of one run."""
    workload_file: Path
    reference_file: Path
    class_list_file: Path
    student_profile_file: Path
    user_profile_file: Optional[Path] = None
    verified_profile_file: Optional[Path] = None

    @classmethod
    def from_mapping(cls, raw: dict[str, Any], base_dir: Path = Path(".")) -> "Settings":
        missing = [k for k in REQUIRED_KEYS if not raw.get(k)]
        if missing:
            raise ReconciliationError(
                reason="Settings missing required keys",
                affected_file="settings",
                missing_or_invalid_fields=missing,
                operator_fix_steps=[
                    f"Add the missing key(s): {', '.join(missing)}",
                    "Each key names a workbook path, relative to the settings file.",
                ],
            )
        unknown = sorted(set(raw) - set(REQUIRED_KEYS) - set(OPTIONAL_KEYS))
        if unknown:
            logger.warning("[settings] ignoring unknown keys: %s", ", ".join(unknown))

        inputs_dir = Path(base_dir)
        output_dir = inputs_dir / raw["output_dir"] if raw.get("output_dir") else inputs_dir

        def _resolve(key: str, root: Path) -> Optional[Path]:
            value = raw.get(key)
            if not value:
                return None
            path = Path(str(value)).expanduser()
            return path if path.is_absolute() else root / path

        return cls(
            workload_file=_resolve("workload_file", inputs_dir),
            reference_file=_resolve("reference_file", inputs_dir),
            class_list_file=_resolve("class_list_file", inputs_dir),
            student_profile_file=_resolve("student_profile_file", output_dir),
            user_profile_file=_resolve("user_profile_file", output_dir),
            verified_profile_file=_resolve("verified_profile_file", output_dir),
        )


def load_settings(path) -> Settings:
    path = Path(path)
    if not path.exists():
        raise ReconciliationError(
            reason="Settings file not found",
            affected_file=str(path),
            missing_or_invalid_fields=[],
            operator_fix_steps=[f"Create {path.name} or pass --config with the right path."],
        )
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ReconciliationError(
            reason="Settings file is not parseable",
            affected_file=str(path),
            missing_or_invalid_fields=[],
            operator_fix_steps=["Fix the YAML/JSON syntax.", f"Parse error: {e}"],
        ) from e
    if not isinstance(raw, dict):
        raise ReconciliationError(
            reason="Settings file must contain a flat mapping",
            affected_file=str(path),
            missing_or_invalid_fields=[],
            operator_fix_steps=["Write one 'key: value' pair per artifact."],
        )
    return Settings.from_mapping(raw, base_dir=path.parent)
