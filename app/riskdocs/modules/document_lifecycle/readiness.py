"""
Readiness validation (issue gating).

`ReadinessValidator.validate(kind, content)` inspects module completion, required
fields and kind-specific rules and returns every blocking reason at once, so a
caller can route the user straight to the offending section. It reads only the
content it is handed (the same shape `snapshots.build_payload` produces) and
never touches the database.
"""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from app.riskdocs.constants import (
    ENGINEERING_RISK,
    EXPLOSIVE_ATMOSPHERE,
    FIRE_RISK_ASSESSMENT,
    FIRE_STRATEGY,
    TERMINAL_ITEM_STATUSES,
)

# Blocker types
MODULE_INCOMPLETE = "module_incomplete"
MISSING_FIELD = "missing_field"
CONDITIONAL_MISSING = "conditional_missing"
NO_RECOMMENDATIONS = "no_recommendations"
UNKNOWN_KIND = "unknown_kind"


@dataclass(frozen=True)
class Blocker:
    type: str
    message: str
    module_key: str | None = None
    field_key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "message": self.message, "module_key": self.module_key, "field_key": self.field_key}


@dataclass(frozen=True)
class ReadinessResult:
    ready: bool
    blockers: list[Blocker] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"ready": self.ready, "blockers": [b.to_dict() for b in self.blockers]}


@dataclass(frozen=True)
class ModuleRule:
    key: str
    label: str
    required_fields: tuple[str, ...] = ()
    # None means always required; otherwise required only when the revision context matches.
    condition: Callable[[dict[str, Any]], bool] | None = None

    def applies(self, context: dict[str, Any]) -> bool:
        return self.condition is None or bool(self.condition(context))


def _flag(name: str) -> Callable[[dict[str, Any]], bool]:
    return lambda ctx: ctx.get(name) is True


def _any_flag(*names: str) -> Callable[[dict[str, Any]], bool]:
    return lambda ctx: any(ctx.get(n) is True for n in names)


MODULE_CATALOG: dict[str, tuple[ModuleRule, ...]] = {
    FIRE_RISK_ASSESSMENT: (
        ModuleRule(
            "survey_info",
            "Survey Information",
            ("inspection_date", "surveyor_name", "company_name", "site_name", "scope_type"),
        ),
        ModuleRule("property_details", "Property Details"),
        ModuleRule("construction", "Construction"),
        ModuleRule("occupancy", "Occupancy"),
        ModuleRule("hazards", "Fire Hazards"),
        ModuleRule("fire_protection", "Fire Protection"),
        ModuleRule("management", "Management"),
        ModuleRule("risk_evaluation", "Risk Evaluation", ("overall_risk_rating",)),
        ModuleRule("recommendations", "Recommendations"),
    ),
    FIRE_STRATEGY: (
        ModuleRule("strategy_scope_basis", "Strategy Scope & Basis", ("design_stage", "standards_basis")),
        ModuleRule("building_description", "Building Description"),
        ModuleRule("occupancy_fire_load", "Occupancy & Fire Load"),
        ModuleRule("means_of_escape", "Means of Escape"),
        ModuleRule("compartmentation", "Compartmentation"),
        ModuleRule("detection_alarm", "Detection & Alarm"),
        ModuleRule("management_assumptions", "Management Assumptions", condition=_flag("engineered_solutions_used")),
        ModuleRule(
            "limitations_reliance",
            "Limitations & Reliance",
            ("limitations_text",),
            condition=_flag("engineered_solutions_used"),
        ),
        ModuleRule("suppression", "Suppression Systems", condition=_any_flag("has_suppression", "requires_suppression")),
        ModuleRule("smoke_control", "Smoke Control", condition=_flag("has_smoke_control")),
    ),
    EXPLOSIVE_ATMOSPHERE: (
        ModuleRule("assessment_scope", "Assessment Scope"),
        ModuleRule("substances", "Dangerous Substances"),
        ModuleRule("processes", "Processes"),
        ModuleRule("hazardous_area_classification", "Hazardous Area Classification"),
        ModuleRule("ignition_sources", "Ignition Sources"),
        ModuleRule("control_measures", "Control Measures"),
        ModuleRule("equipment_compliance", "Equipment Compliance"),
        ModuleRule("management_controls", "Management Controls"),
        ModuleRule("risk_evaluation", "Risk Evaluation"),
        ModuleRule("actions", "Actions"),
    ),
    ENGINEERING_RISK: (
        ModuleRule("RE_01_DOC_CONTROL", "Document Control", ("assessor_name", "site_name")),
        ModuleRule("RE_02_CONSTRUCTION", "Construction"),
        ModuleRule("RE_03_OCCUPANCY", "Occupancy"),
        ModuleRule("RE_06_FIRE_PROTECTION", "Fire Protection"),
        ModuleRule("RE_07_NATURAL_HAZARDS", "Natural Hazards"),
        ModuleRule("RE_08_UTILITIES", "Utilities"),
        ModuleRule("RE_09_MANAGEMENT", "Management"),
        ModuleRule("RE_10_PROCESS_RISK", "Process Risk"),
        ModuleRule("RE_12_LOSS_VALUES", "Loss Values"),
        ModuleRule("RE_13_RECOMMENDATIONS", "Recommendations"),
    ),
}


def module_catalog(document_kind: str) -> tuple[ModuleRule, ...]:
    return MODULE_CATALOG.get(document_kind, ())


def required_modules(document_kind: str, context: dict[str, Any] | None = None) -> list[ModuleRule]:
    ctx = context or {}
    return [rule for rule in module_catalog(document_kind) if rule.applies(ctx)]


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def _answers(modules: dict[str, Any]) -> dict[str, Any]:
    """Flat view over every module's data; later module keys win on collisions."""
    merged: dict[str, Any] = {}
    for key in sorted(modules):
        data = (modules[key] or {}).get("data") or {}
        merged.update(data)
    return merged


def _open_items(content: dict[str, Any]) -> list[dict[str, Any]]:
    return [i for i in content.get("items") or [] if i.get("status") not in TERMINAL_ITEM_STATUSES]


class ReadinessValidator:
    """Default rule catalog; swap in another object with the same `validate` signature to change the rules."""

    def validate(self, document_kind: str, content: dict[str, Any]) -> ReadinessResult:
        if document_kind not in MODULE_CATALOG:
            b = Blocker(UNKNOWN_KIND, f"Unknown document kind: {document_kind!r}")
            return ReadinessResult(ready=False, blockers=[b])

        context = content.get("context") or {}
        modules = content.get("modules") or {}
        blockers: list[Blocker] = []

        for rule in required_modules(document_kind, context):
            mod = modules.get(rule.key) or {}
            if not mod.get("completed"):
                blockers.append(Blocker(MODULE_INCOMPLETE, f"{rule.label} must be completed", module_key=rule.key))
            data = mod.get("data") or {}
            for field_key in rule.required_fields:
                if _is_blank(data.get(field_key)):
                    blockers.append(
                        Blocker(
                            MISSING_FIELD,
                            f"{rule.label}: '{field_key}' is required",
                            module_key=rule.key,
                            field_key=field_key,
                        )
                    )

        check = _KIND_RULES.get(document_kind)
        if check is not None:
            blockers.extend(check(context, _answers(modules), _open_items(content)))

        return ReadinessResult(ready=not blockers, blockers=blockers)


def _fra_rules(ctx: dict[str, Any], answers: dict[str, Any], open_items: list[dict[str, Any]]) -> list[Blocker]:
    out: list[Blocker] = []
    scope_type = ctx.get("scope_type") or answers.get("scope_type")
    if scope_type in ("limited", "desktop") and _is_blank(answers.get("scope_limitations")):
        out.append(
            Blocker(
                CONDITIONAL_MISSING,
                "Scope limitations must be specified for limited/desktop assessments",
                module_key="survey_info",
                field_key="scope_limitations",
            )
        )
    if not open_items and answers.get("no_significant_findings") is not True:
        out.append(
            Blocker(
                NO_RECOMMENDATIONS,
                "Must have at least one recommendation OR confirm no significant findings",
                module_key="recommendations",
            )
        )
    return out


def _fsd_rules(ctx: dict[str, Any], answers: dict[str, Any], open_items: list[dict[str, Any]]) -> list[Blocker]:
    out: list[Blocker] = []
    if ctx.get("engineered_solutions_used") is True:
        if _is_blank(answers.get("limitations_text")):
            out.append(
                Blocker(
                    CONDITIONAL_MISSING,
                    "Limitations must be documented when using engineered solutions",
                    module_key="limitations_reliance",
                    field_key="limitations_text",
                )
            )
        if _is_blank(answers.get("management_assumptions_text")):
            out.append(
                Blocker(
                    CONDITIONAL_MISSING,
                    "Management assumptions must be documented when using engineered solutions",
                    module_key="management_assumptions",
                    field_key="management_assumptions_text",
                )
            )
    return out


def _dsear_rules(ctx: dict[str, Any], answers: dict[str, Any], open_items: list[dict[str, Any]]) -> list[Blocker]:
    out: list[Blocker] = []
    if _is_blank(answers.get("substance_list")) and answers.get("no_dangerous_substances") is not True:
        out.append(
            Blocker(
                MISSING_FIELD,
                "At least one dangerous substance must be identified OR confirm no dangerous substances",
                module_key="substances",
                field_key="substance_list",
            )
        )
    if _is_blank(answers.get("zone_entries")) and answers.get("no_zoned_areas") is not True:
        out.append(
            Blocker(
                MISSING_FIELD,
                "Zone classification must be documented OR confirm no zoned areas",
                module_key="hazardous_area_classification",
                field_key="zone_entries",
            )
        )
    if not open_items and answers.get("controls_adequate_confirmed") is not True:
        out.append(
            Blocker(
                NO_RECOMMENDATIONS,
                "Must have at least one action OR confirm controls are adequate",
                module_key="actions",
            )
        )
    return out


def _re_rules(ctx: dict[str, Any], answers: dict[str, Any], open_items: list[dict[str, Any]]) -> list[Blocker]:
    if _is_blank(answers.get("sum_insured")) and _is_blank(answers.get("business_interruption_value")):
        return [
            Blocker(
                MISSING_FIELD,
                "Loss values (sum insured or business interruption) must be recorded",
                module_key="RE_12_LOSS_VALUES",
                field_key="sum_insured",
            )
        ]
    return []


_KIND_RULES = {
    FIRE_RISK_ASSESSMENT: _fra_rules,
    FIRE_STRATEGY: _fsd_rules,
    EXPLOSIVE_ATMOSPHERE: _dsear_rules,
    ENGINEERING_RISK: _re_rules,
}


def group_blockers_by_module(blockers: list[Blocker]) -> dict[str, list[Blocker]]:
    grouped: dict[str, list[Blocker]] = {}
    for b in blockers:
        grouped.setdefault(b.module_key or "general", []).append(b)
    return grouped


def readiness_summary(result: ReadinessResult) -> str:
    if result.ready:
        return "All requirements met - ready to issue"
    n = len(result.blockers)
    return f"{n} issue{'s' if n != 1 else ''} must be resolved before issuing"
