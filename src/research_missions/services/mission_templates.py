"""Reusable mission drafts stored as YAML files.

A template file looks like::

    name: Nightly literature sweep
    description: Pull new papers for tracked topics
    schedule:
      cron: "0 2 * * *"
      timezone: Europe/Amsterdam
    priority: 6
    tags: [research, nightly]
    payload:
      command: ["python", "-m", "sweep"]
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from research_missions.domain.errors import InvalidMissionError, TemplateNotFoundError
from research_missions.domain.missions import thaw_payload
from research_missions.persistence.json_files import atomic_write_text
from research_missions.services.mission_schema import MissionDraft, normalize_mission_draft

logger = logging.getLogger(__name__)

TEMPLATE_EXTENSIONS = (".yaml", ".yml")
TEMPLATE_FILE_SUFFIX = ".mission.yaml"
_SCHEDULE_SHORTHAND = ("intervalMinutes", "cron", "timezone")
_TEMPLATE_ONLY_FIELDS = frozenset(["slug", "sourcePath"])


def normalize_slug(value: Any) -> str:
    text = str(value or "").strip().lower()
    for suffix in TEMPLATE_EXTENSIONS:
        if text.endswith(suffix):
            text = text[: -len(suffix)]
    text = re.sub(r"\.(mission|template)$", "", text)
    text = re.sub(r"[^a-z0-9]+", "-", text).strip("-")
    if not text:
        raise InvalidMissionError("Template slug resolved to an empty value", field="slug")
    return text


def apply_draft_overrides(draft: Mapping[str, Any], overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Merge scaffold overrides into a template draft and re-validate it.

    ``intervalMinutes``, ``cron`` and ``timezone`` may be given at the top level
    as shorthand for the matching schedule keys. ``None`` values are ignored.
    """
    merged = {key: value for key, value in draft.items() if key not in _TEMPLATE_ONLY_FIELDS}
    extra = dict(overrides or {})
    schedule_override = dict(extra.pop("schedule", None) or {})
    for key in _SCHEDULE_SHORTHAND:
        if extra.get(key) is not None:
            schedule_override[key] = extra.pop(key)
        else:
            extra.pop(key, None)
    if schedule_override:
        merged["schedule"] = _merge_schedule(merged.get("schedule") or {}, schedule_override)
    for key, value in extra.items():
        if value is not None:
            merged[key] = value
    return draft_to_dict(normalize_mission_draft(merged))


def draft_to_dict(draft: MissionDraft) -> Dict[str, Any]:
    return {
        "name": draft.name,
        "description": draft.description,
        "schedule": draft.schedule.to_dict(),
        "priority": draft.priority,
        "tags": list(draft.tags),
        "payload": thaw_payload(draft.payload),
        "enable": draft.enable,
    }


@dataclass(frozen=True)
class MissionTemplate:
    slug: str
    draft: MissionDraft
    source_path: Path

    def to_draft_dict(self) -> Dict[str, Any]:
        return draft_to_dict(self.draft)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"slug": self.slug}
        data.update(self.to_draft_dict())
        data["sourcePath"] = str(self.source_path)
        return data


class MissionTemplatesRepository:
    def __init__(self, templates_dir: Path) -> None:
        self._dir = Path(templates_dir).expanduser()

    @property
    def templates_dir(self) -> Path:
        return self._dir

    def list_templates(self) -> List[MissionTemplate]:
        if not self._dir.is_dir():
            logger.warning("Mission templates directory not found: %s", self._dir)
            return []
        templates: Dict[str, MissionTemplate] = {}
        for path in sorted(self._dir.iterdir()):
            if not path.is_file() or path.suffix.lower() not in TEMPLATE_EXTENSIONS:
                continue
            try:
                template = self._load_file(path)
            except InvalidMissionError as exc:
                logger.warning("Skipping invalid mission template %s: %s", path.name, exc)
                continue
            if template.slug in templates:
                logger.warning("Duplicate mission template slug '%s' in %s", template.slug, path.name)
                continue
            templates[template.slug] = template
        return list(templates.values())

    def get_template(self, slug: str) -> Optional[MissionTemplate]:
        wanted = normalize_slug(slug)
        path = self._find_path(wanted)
        if path is not None:
            return self._load_file(path)
        for template in self.list_templates():
            if template.slug == wanted:
                return template
        return None

    def create_draft_from_template(self, slug: str, overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        template = self.get_template(slug)
        if template is None:
            raise TemplateNotFoundError(slug)
        return apply_draft_overrides(template.to_draft_dict(), overrides)

    def save_template(self, definition: Mapping[str, Any]) -> MissionTemplate:
        if not isinstance(definition, Mapping):
            raise InvalidMissionError("Template definition must be an object")
        raw = dict(definition)
        slug = normalize_slug(raw.pop("slug", None) or raw.get("name"))
        raw.pop("sourcePath", None)
        draft = normalize_mission_draft(raw)
        path = self._find_path(slug) or (self._dir / f"{slug}{TEMPLATE_FILE_SUFFIX}")
        document = {"slug": slug}
        document.update(_template_document(draft))
        text = yaml.safe_dump(document, sort_keys=False, allow_unicode=True)
        atomic_write_text(path, text)
        logger.info("Saved mission template '%s' to %s", slug, path)
        return MissionTemplate(slug=slug, draft=draft, source_path=path)

    def delete_template(self, slug: str) -> bool:
        path = self._find_path(normalize_slug(slug))
        if path is None:
            return False
        path.unlink()
        logger.info("Deleted mission template %s", path)
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _find_path(self, slug: str) -> Optional[Path]:
        for name in (f"{slug}.mission.yaml", f"{slug}.mission.yml", f"{slug}.yaml", f"{slug}.yml"):
            candidate = self._dir / name
            if candidate.is_file():
                return candidate
        return None

    def _load_file(self, path: Path) -> MissionTemplate:
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise InvalidMissionError(f"Template {path.name} is not valid YAML: {exc}") from exc
        if not isinstance(data, dict):
            raise InvalidMissionError(f"Template {path.name} must contain a mapping")
        slug = normalize_slug(data.get("slug") or path.name)
        body = {key: value for key, value in data.items() if key not in _TEMPLATE_ONLY_FIELDS}
        if isinstance(body.get("tags"), str):
            body["tags"] = [part.strip() for part in body["tags"].split(",")]
        try:
            draft = normalize_mission_draft(body)
        except InvalidMissionError as exc:
            raise InvalidMissionError(f"Template {path.name}: {exc}", field=exc.field) from exc
        return MissionTemplate(slug=slug, draft=draft, source_path=path)


def _merge_schedule(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    if override.get("intervalMinutes") is not None and override.get("cron") is not None:
        raise InvalidMissionError(
            "Schedule overrides must specify either intervalMinutes or cron, not both",
            field="schedule",
        )
    timezone = override.get("timezone") or base.get("timezone")
    if override.get("intervalMinutes") is not None:
        return {"intervalMinutes": override["intervalMinutes"], "timezone": timezone}
    if override.get("cron") is not None:
        return {"cron": override["cron"], "timezone": timezone}
    merged = dict(base)
    merged["timezone"] = timezone
    return merged


def _template_document(draft: MissionDraft) -> Dict[str, Any]:
    schedule = {key: value for key, value in draft.schedule.to_dict().items() if key != "kind"}
    document: Dict[str, Any] = {"name": draft.name}
    if draft.description:
        document["description"] = draft.description
    document["schedule"] = schedule
    document["priority"] = draft.priority
    document["tags"] = list(draft.tags)
    document["payload"] = thaw_payload(draft.payload)
    document["enable"] = draft.enable
    return document
