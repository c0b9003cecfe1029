"""Per-batch configuration options recognized at intake."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from flask import current_app, has_app_context

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _coerce_flag(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    token = str(value).strip().lower()
    if token in _TRUE_VALUES:
        return True
    if token in _FALSE_VALUES:
        return False
    return default


def _coerce_hint(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        hint = int(value)
    except (TypeError, ValueError):
        return None
    return hint if hint >= 0 else None


@dataclass(frozen=True)
class BatchConfig:
    """
    Options that steer a single batch.

    ``auto_create_references`` covers courts and case types; judges have their
    own switch.
    """

    auto_create_references: bool = True
    auto_create_judges: bool = True
    dry_run: bool = False
    total_rows_hint: int | None = None

    @classmethod
    def coerce(cls, payload: Mapping[str, Any] | "BatchConfig" | None = None) -> "BatchConfig":
        if isinstance(payload, BatchConfig):
            return payload
        payload = payload or {}
        default_auto_create = True
        if has_app_context():
            default_auto_create = bool(current_app.config.get("IMPORTER_AUTO_CREATE_REFERENCES", True))
        return cls(
            auto_create_references=_coerce_flag(
                payload.get("auto_create_references", payload.get("autoCreateReferences")),
                default_auto_create,
            ),
            auto_create_judges=_coerce_flag(
                payload.get("auto_create_judges", payload.get("autoCreateJudges")),
                True,
            ),
            dry_run=_coerce_flag(payload.get("dry_run", payload.get("dryRun")), False),
            total_rows_hint=_coerce_hint(payload.get("total_rows_hint", payload.get("totalRowsHint"))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "auto_create_references": self.auto_create_references,
            "auto_create_judges": self.auto_create_judges,
            "dry_run": self.dry_run,
            "total_rows_hint": self.total_rows_hint,
        }
