"""
Assessment normalization: closes every enum and flattens the three layouts a
vision model may answer with into one flat record.

Layouts (detect_format):
  multi_component   {"sceneSummary": {...}, "components": [{...}, ...]}
  legacy_component  {"component": {...}, "assessment": {...}}
  flat              {"description", "condition", "cleanliness", ...}

validate_and_normalize_structure() is idempotent: feeding its output back in
returns an equal dict. It never raises for dict input.
"""
from __future__ import annotations

import copy
import math
import re
from typing import Any, Literal, Optional

from app.models.assessment_schema import CLEANLINESS_LEVELS, CONDITION_RATINGS

RecordFormat = Literal["multi_component", "legacy_component", "flat"]

DEFAULT_DESCRIPTION = "Component observed"
DEFAULT_SUMMARY = "Condition assessment completed"
DEFAULT_DETAIL = "Assessment completed"

# Ordered: first matching group wins. Whole words only, so "renewal" is not "new".
_RATING_RULES: tuple[tuple[str, re.Pattern], ...] = (
    ("excellent", re.compile(r"\b(?:excellent|pristine|perfect|(?:brand|as|like)\s+new)\b")),
    ("good", re.compile(r"\b(?:good|used\s+order|minor|slight(?:ly)?)\b")),
    ("poor", re.compile(r"\b(?:poor|damaged|major|significant(?:ly)?)\b")),
    ("critical", re.compile(r"\b(?:critical|severe(?:ly)?)\b")),
    ("fair", re.compile(r"\b(?:fair|moderate|some)\b")),
)

_CLEANLINESS_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("not_clean", ("not_clean", "dirty", "unclean", "below_standard")),
    ("professional_clean_with_omissions", ("with_omissions", "omission")),
    ("professional_clean", ("professional", "spotless")),
    ("domestic_clean_high_level", ("high_level", "very_clean", "high")),
    ("domestic_clean", ("domestic", "standard", "clean")),
)

_DEFECT_SEVERITIES = ("CRITICAL", "MAJOR", "MODERATE", "MINOR", "TRACE")
_SEVERITY_ALIASES = {
    "SEVERE": "CRITICAL",
    "SIGNIFICANT": "MAJOR",
    "HIGH": "MAJOR",
    "MEDIUM": "MODERATE",
    "LOW": "MINOR",
    "NEGLIGIBLE": "TRACE",
}
_REPAIR_URGENCIES = ("IMMEDIATE", "HIGH", "MEDIUM", "LOW")
_URGENCY_ALIASES = {"URGENT": "IMMEDIATE", "CRITICAL": "IMMEDIATE", "MODERATE": "MEDIUM"}
_ESTIMATED_COSTS = ("HIGH", "MEDIUM", "LOW")
_COST_ALIASES = {"MODERATE": "MEDIUM", "EXPENSIVE": "HIGH", "CHEAP": "LOW"}
_DEFECT_CATEGORIES = ("structural", "surface", "functional", "aesthetic")

_POINT_CATEGORIES = ("structural", "functional", "aesthetic", "safety")
_POINT_SEVERITIES = ("minor", "moderate", "major", "critical")

_DETAIL_CATEGORY_MAP = {
    "structuralIntegrity": "structural",
    "functionalPerformance": "functional",
    "aestheticCondition": "aesthetic",
    "safetyAssessment": "safety",
}


def _unwrap(value: Any) -> Any:
    if isinstance(value, dict):
        return value.get("rating", value.get("level"))
    return value


# ── Enum closure ──────────────────────────────────────────────────────────────

def normalize_rating(value: Any) -> str:
    value = _unwrap(value)
    if not isinstance(value, str):
        return "fair"
    text = value.strip().lower()
    if text in CONDITION_RATINGS:
        return text
    text = re.sub(r"[_\-]+", " ", text)
    for rating, pattern in _RATING_RULES:
        if pattern.search(text):
            return rating
    return "fair"


def normalize_cleanliness(value: Any) -> str:
    value = _unwrap(value)
    if not isinstance(value, str):
        return "domestic_clean"
    text = re.sub(r"[\s\-]+", "_", value.strip().lower())
    text = re.sub(r"[^a-z0-9_]", "", text).strip("_")
    if text in CLEANLINESS_LEVELS:
        return text
    for level, needles in _CLEANLINESS_RULES:
        if any(needle in text for needle in needles):
            return level
    return "domestic_clean"


def _close_upper(value: Any, members: tuple[str, ...], aliases: dict, default: str) -> str:
    if not isinstance(value, str):
        return default
    text = value.strip().upper().replace(" ", "_")
    if text in members:
        return text
    return aliases.get(text, default)


def normalize_severity(value: Any) -> str:
    return _close_upper(value, _DEFECT_SEVERITIES, _SEVERITY_ALIASES, "MINOR")


def normalize_repair_urgency(value: Any) -> str:
    return _close_upper(value, _REPAIR_URGENCIES, _URGENCY_ALIASES, "LOW")


def normalize_estimated_cost(value: Any) -> str:
    return _close_upper(value, _ESTIMATED_COSTS, _COST_ALIASES, "LOW")


def normalize_defect_category(value: Any) -> str:
    if isinstance(value, str) and value.strip().lower() in _DEFECT_CATEGORIES:
        return value.strip().lower()
    return "surface"


# ── Condition points ──────────────────────────────────────────────────────────

def categorize_point(text: str) -> str:
    lowered = text.lower()
    if any(word in lowered for word in ("crack", "loose", "structural")):
        return "structural"
    if any(word in lowered for word in ("function", "operation", "performance")):
        return "functional"
    if any(word in lowered for word in ("safety", "hazard", "risk")):
        return "safety"
    return "aesthetic"


def assess_point_severity(text: str) -> str:
    lowered = text.lower()
    if any(word in lowered for word in ("critical", "severe", "immediate")):
        return "critical"
    if any(word in lowered for word in ("major", "significant", "extensive")):
        return "major"
    if any(word in lowered for word in ("moderate", "noticeable", "considerable")):
        return "moderate"
    return "minor"


def _structured_point(label: str, category: Optional[str] = None) -> dict:
    return {
        "label": label,
        "category": category or categorize_point(label),
        "severity": assess_point_severity(label),
    }


def _normalize_point(point: Any) -> Any:
    if isinstance(point, str):
        return point.strip() or None
    if isinstance(point, dict):
        label = point.get("label") or point.get("description") or point.get("text")
        if not isinstance(label, str) or not label.strip():
            return None
        label = label.strip()
        out: dict[str, Any] = {"label": label}
        if "category" in point:
            category = point["category"]
            out["category"] = category if category in _POINT_CATEGORIES else categorize_point(label)
        if "severity" in point:
            severity = point["severity"]
            out["severity"] = severity if severity in _POINT_SEVERITIES else assess_point_severity(label)
        if point.get("validationStatus") in ("confirmed", "unconfirmed"):
            out["validationStatus"] = point["validationStatus"]
        count = point.get("supportingImageCount")
        if isinstance(count, int) and not isinstance(count, bool) and count >= 0:
            out["supportingImageCount"] = count
        return out
    if point is None or point == "":
        return None
    return str(point)


def _normalize_points(raw: Any) -> list:
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        return []
    return [p for p in (_normalize_point(item) for item in raw) if p]


def _condition_details(condition: dict) -> dict:
    details = condition.get("details") if isinstance(condition.get("details"), dict) else {}
    return {
        key: details[key] if isinstance(details.get(key), str) and details[key].strip() else DEFAULT_DETAIL
        for key in _DETAIL_CATEGORY_MAP
    }


def _component_points(condition: dict) -> list:
    """Collect points from every place a model tends to put them."""
    points: list = []
    for key in ("locationSpecificFindings", "defects"):
        if isinstance(condition.get(key), list):
            points.extend(item for item in condition[key] if item)
    if isinstance(condition.get("details"), dict):
        for key, detail in condition["details"].items():
            if isinstance(detail, str) and detail and detail != "Assessment required":
                points.append(_structured_point(detail, _DETAIL_CATEGORY_MAP.get(key, "functional")))
    if isinstance(condition.get("points"), list):
        points.extend(item for item in condition["points"] if item)
    return _normalize_points(points) or [DEFAULT_DETAIL]


def _normalize_condition(raw: Any) -> dict:
    if isinstance(raw, str) and raw.strip():
        return {"summary": raw.strip(), "points": [], "rating": normalize_rating(raw)}
    if not isinstance(raw, dict):
        return {"summary": DEFAULT_SUMMARY, "points": [], "rating": "fair"}

    condition = dict(raw)
    summary = condition.get("summary")
    condition["summary"] = summary.strip() if isinstance(summary, str) and summary.strip() else DEFAULT_SUMMARY
    condition["points"] = _normalize_points(condition.get("points"))
    condition["rating"] = normalize_rating(condition.get("rating"))
    if "details" in condition:
        if isinstance(condition["details"], dict):
            condition["details"] = _condition_details(condition)
        else:
            del condition["details"]
    return condition


# ── Defects ───────────────────────────────────────────────────────────────────

def _clamp_confidence(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.5
    if math.isnan(value):
        return 0.5
    return float(min(1.0, max(0.0, value)))


def _normalize_location(raw: Any) -> dict:
    if isinstance(raw, str) and raw.strip():
        return {"area": raw.strip(), "extent": "localized"}
    if not isinstance(raw, dict):
        return {"area": "unspecified", "extent": "localized"}
    location = {
        "area": str(raw.get("area") or "unspecified"),
        "extent": str(raw.get("extent") or "localized"),
    }
    coords = raw.get("coordinates")
    if isinstance(coords, dict) and coords and all(
        isinstance(v, (int, float)) and not isinstance(v, bool) for v in coords.values()
    ):
        location["coordinates"] = {str(k): float(v) for k, v in coords.items()}
    return location


def _pick(raw: dict, *keys: str) -> Any:
    for key in keys:
        if raw.get(key) not in (None, ""):
            return raw[key]
    return None


def normalize_defects(raw: Any) -> list[dict]:
    if isinstance(raw, (dict, str)):
        raw = [raw]
    if not isinstance(raw, list):
        return []

    defects: list[dict] = []
    for item in raw:
        n = len(defects) + 1
        if isinstance(item, str):
            if not item.strip():
                continue
            item = {"description": item.strip()}
        if not isinstance(item, dict):
            continue

        evidence = _pick(item, "supportingEvidence", "supporting_evidence")
        if isinstance(evidence, bool) or not isinstance(evidence, (int, float)) or evidence < 0:
            evidence = 0

        defects.append({
            "id": str(item.get("id") or f"defect_{n}"),
            "category": normalize_defect_category(item.get("category")),
            "type": str(item.get("type") or "general"),
            "severity": normalize_severity(item.get("severity")),
            "confidence": _clamp_confidence(item.get("confidence")),
            "location": _normalize_location(item.get("location")),
            "description": str(item.get("description") or "Defect observed"),
            "supportingEvidence": int(evidence),
            "repairUrgency": normalize_repair_urgency(_pick(item, "repairUrgency", "repair_urgency")),
            "estimatedCost": normalize_estimated_cost(_pick(item, "estimatedCost", "estimated_cost")),
        })
    return defects


# ── Layout detection + flattening ─────────────────────────────────────────────

def detect_format(candidate: dict) -> RecordFormat:
    if "sceneSummary" in candidate and isinstance(candidate.get("components"), list):
        return "multi_component"
    if isinstance(candidate.get("assessment"), dict):
        return "legacy_component"
    # A scalar "component" next to flat fields is just a label; keep the flat record.
    if isinstance(candidate.get("component"), dict) and "condition" not in candidate:
        return "legacy_component"
    return "flat"


def _assessment_parts(component: dict) -> tuple[dict, Any]:
    assessment = component.get("assessment") if isinstance(component.get("assessment"), dict) else {}
    condition = assessment.get("condition") if isinstance(assessment.get("condition"), dict) else {}
    return condition, assessment.get("cleanliness")


def _estimated_age(component: dict) -> str:
    for key in ("metadata", "spatialContext"):
        section = component.get(key)
        if isinstance(section, dict) and section.get("estimatedAge"):
            return str(section["estimatedAge"])
    return str(component.get("estimatedAge") or "Unknown")


def _flatten_multi_component(candidate: dict) -> dict:
    scene = candidate.get("sceneSummary")
    if not isinstance(scene, dict):
        scene = {"overallImpression": str(scene)} if scene else {}
    components = [c for c in candidate["components"] if isinstance(c, dict)]
    primary = components[0] if components else {}
    primary_condition, primary_cleanliness = _assessment_parts(primary)
    many = len(components) > 1

    if many:
        description = f"{len(components)} items identified: " + "; ".join(
            str(c.get("description") or c.get("inferredType") or "Component") for c in components
        )
        summary = f"Assessment of {len(components)} {scene.get('componentQuery') or 'components'} completed"
    else:
        description = primary.get("description") or scene.get("overallImpression") or "Component analyzed"
        summary = primary_condition.get("summary") or DEFAULT_DETAIL

    points: list = []
    normalized_components: list[dict] = []
    for index, comp in enumerate(components):
        condition, cleanliness = _assessment_parts(comp)
        comp_points = _component_points(condition)
        prefix = comp.get("inferredType") or f"Item {index + 1}"
        for point in comp_points:
            label = point if isinstance(point, str) else point["label"]
            if many:
                label = f"{prefix}: {label}"
            if isinstance(point, str):
                points.append(_structured_point(label))
            else:
                points.append({**point, "label": label})

        normalized_components.append({
            "componentId": str(comp.get("componentId") or f"item_{index + 1}"),
            "inferredType": str(comp.get("inferredType") or "Component"),
            "description": str(comp.get("description") or "Component analyzed"),
            "condition": {
                "summary": condition.get("summary") or DEFAULT_DETAIL,
                "points": comp_points,
                "rating": normalize_rating(condition.get("rating")),
                "details": _condition_details(condition),
            },
            "cleanliness": normalize_cleanliness(cleanliness),
            "estimatedAge": _estimated_age(comp),
        })

    metadata = dict(candidate["analysisMetadata"]) if isinstance(candidate.get("analysisMetadata"), dict) else {}
    metadata.update({
        "imageCount": scene.get("imageCount") or metadata.get("imageCount") or 1,
        "itemCount": scene.get("identifiedItemCount") or len(components),
        "sceneSummary": scene.get("overallImpression") or "Multi-component analysis completed",
        "multipleItems": many,
        "estimatedAge": _estimated_age(primary),
    })

    flat: dict[str, Any] = {
        "description": str(description),
        "condition": {
            "summary": str(summary),
            "points": points or [{"label": DEFAULT_DETAIL, "category": "functional", "severity": "minor"}],
            "rating": normalize_rating(primary_condition.get("rating")),
            "details": _condition_details(primary_condition),
        },
        "cleanliness": normalize_cleanliness(primary_cleanliness),
        "components": normalized_components,
        "analysisMetadata": metadata,
    }
    if "defects" in candidate:
        flat["defects"] = candidate["defects"]
    return flat


def _legacy_description(component: Any) -> str:
    if isinstance(component, str) and component.strip():
        return component.strip()
    if not isinstance(component, dict):
        return DEFAULT_DESCRIPTION
    desc = component.get("description")
    if isinstance(desc, dict):
        return ", ".join([
            str(desc.get("material") or "Material not specified"),
            str(desc.get("form") or "Form not specified"),
            str(desc.get("color") or "Color not specified"),
        ])
    if isinstance(desc, str) and desc.strip():
        return desc.strip()
    return str(component.get("name") or DEFAULT_DESCRIPTION)


def _flatten_legacy(candidate: dict) -> dict:
    assessment = candidate.get("assessment") if isinstance(candidate.get("assessment"), dict) else {}
    condition = assessment.get("condition") if isinstance(assessment.get("condition"), dict) else {}

    metadata = dict(candidate["analysisMetadata"]) if isinstance(candidate.get("analysisMetadata"), dict) else {}
    metadata.setdefault("imageCount", 1)
    metadata.setdefault("estimatedAge", "Unknown")
    metadata["itemCount"] = 1
    metadata["multipleItems"] = False

    flat: dict[str, Any] = {
        "description": _legacy_description(candidate.get("component")),
        "condition": {
            "summary": condition.get("summary") or "Component assessed",
            "points": _component_points(condition),
            "rating": normalize_rating(condition.get("rating")),
            "details": _condition_details(condition),
        },
        "cleanliness": normalize_cleanliness(assessment.get("cleanliness")),
        "analysisMetadata": metadata,
    }
    defects = candidate.get("defects", assessment.get("defects"))
    if defects is not None:
        flat["defects"] = defects
    return flat


def _normalize_component(raw: dict, index: int) -> dict:
    component = dict(raw)
    component["componentId"] = str(component.get("componentId") or f"item_{index + 1}")
    component["inferredType"] = str(component.get("inferredType") or "Component")
    description = component.get("description")
    component["description"] = (
        description.strip() if isinstance(description, str) and description.strip() else "Component analyzed"
    )
    component["condition"] = _normalize_condition(component.get("condition"))
    component["cleanliness"] = normalize_cleanliness(component.get("cleanliness"))
    component["estimatedAge"] = str(component.get("estimatedAge") or "Unknown")
    return component


def _normalize_flat(candidate: dict) -> dict:
    record = dict(candidate)

    description = record.get("description")
    if isinstance(description, dict):
        description = _legacy_description({"description": description})
    record["description"] = (
        description.strip() if isinstance(description, str) and description.strip() else DEFAULT_DESCRIPTION
    )
    record["condition"] = _normalize_condition(record.get("condition"))
    record["cleanliness"] = normalize_cleanliness(record.get("cleanliness"))

    if "defects" in record:
        if record["defects"] is None:
            del record["defects"]
        else:
            record["defects"] = normalize_defects(record["defects"])

    if "components" in record:
        if isinstance(record["components"], list):
            record["components"] = [
                _normalize_component(c, i) for i, c in enumerate(record["components"]) if isinstance(c, dict)
            ]
        else:
            del record["components"]

    if "analysisMetadata" in record and not isinstance(record["analysisMetadata"], dict):
        del record["analysisMetadata"]

    return record


def validate_and_normalize_structure(candidate: Any) -> dict:
    """Flatten and close a decoded model answer. Raises TypeError for non-dict input."""
    if not isinstance(candidate, dict):
        raise TypeError(f"Expected a JSON object, got {type(candidate).__name__}")

    candidate = copy.deepcopy(candidate)
    layout = detect_format(candidate)
    if layout == "multi_component":
        candidate = _flatten_multi_component(candidate)
    elif layout == "legacy_component":
        candidate = _flatten_legacy(candidate)
    return _normalize_flat(candidate)
