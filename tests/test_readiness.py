import pytest

from app.riskdocs.constants import (
    ENGINEERING_RISK,
    EXPLOSIVE_ATMOSPHERE,
    FIRE_RISK_ASSESSMENT,
    FIRE_STRATEGY,
)
from app.riskdocs.modules.document_lifecycle.readiness import (
    CONDITIONAL_MISSING,
    MISSING_FIELD,
    MODULE_INCOMPLETE,
    NO_RECOMMENDATIONS,
    UNKNOWN_KIND,
    ReadinessValidator,
    group_blockers_by_module,
    module_catalog,
    readiness_summary,
    required_modules,
)


def _complete(kind, context=None, extra=None, items=None):
    modules = {rule.key: {"completed": True, "data": {f: "x" for f in rule.required_fields}} for rule in module_catalog(kind)}
    for key, data in (extra or {}).items():
        modules.setdefault(key, {"completed": True, "data": {}})["data"].update(data)
    return {"context": context or {}, "modules": modules, "items": items or []}


def _types(result):
    return [b.type for b in result.blockers]


@pytest.fixture()
def validator():
    return ReadinessValidator()


def test_unknown_kind_is_a_single_blocker(validator):
    result = validator.validate("boiler_inspection", {})
    assert not result.ready
    assert _types(result) == [UNKNOWN_KIND]


def test_empty_fra_reports_everything_at_once(validator):
    result = validator.validate(FIRE_RISK_ASSESSMENT, {"modules": {}, "items": []})
    assert not result.ready
    incomplete = [b.module_key for b in result.blockers if b.type == MODULE_INCOMPLETE]
    assert incomplete == [r.key for r in module_catalog(FIRE_RISK_ASSESSMENT)]
    missing = [b.field_key for b in result.blockers if b.type == MISSING_FIELD]
    assert missing == ["inspection_date", "surveyor_name", "company_name", "site_name", "scope_type", "overall_risk_rating"]
    assert _types(result)[-1] == NO_RECOMMENDATIONS


def test_fra_ready_with_open_recommendation(validator):
    content = _complete(FIRE_RISK_ASSESSMENT, items=[{"status": "open", "description": "Fix door"}])
    assert validator.validate(FIRE_RISK_ASSESSMENT, content).ready


def test_fra_closed_items_do_not_count_as_recommendations(validator):
    content = _complete(FIRE_RISK_ASSESSMENT, items=[{"status": "closed"}, {"status": "not_applicable"}])
    assert _types(validator.validate(FIRE_RISK_ASSESSMENT, content)) == [NO_RECOMMENDATIONS]

    content = _complete(
        FIRE_RISK_ASSESSMENT,
        extra={"recommendations": {"no_significant_findings": True}},
        items=[{"status": "closed"}],
    )
    assert validator.validate(FIRE_RISK_ASSESSMENT, content).ready


@pytest.mark.parametrize("scope_type", ["limited", "desktop"])
def test_fra_limited_scope_needs_limitations(validator, scope_type):
    content = _complete(
        FIRE_RISK_ASSESSMENT,
        extra={"survey_info": {"scope_type": scope_type}, "recommendations": {"no_significant_findings": True}},
    )
    result = validator.validate(FIRE_RISK_ASSESSMENT, content)
    assert [(b.type, b.field_key) for b in result.blockers] == [(CONDITIONAL_MISSING, "scope_limitations")]

    content["modules"]["survey_info"]["data"]["scope_limitations"] = "Roof void not accessed"
    assert validator.validate(FIRE_RISK_ASSESSMENT, content).ready


def test_blank_values_count_as_missing(validator):
    content = _complete(FIRE_RISK_ASSESSMENT, items=[{"status": "open"}])
    content["modules"]["survey_info"]["data"]["surveyor_name"] = "   "
    content["modules"]["risk_evaluation"]["data"]["overall_risk_rating"] = []
    result = validator.validate(FIRE_RISK_ASSESSMENT, content)
    assert sorted(b.field_key for b in result.blockers) == ["overall_risk_rating", "surveyor_name"]


def test_fire_strategy_conditional_modules_follow_context():
    plain = [r.key for r in required_modules(FIRE_STRATEGY, {})]
    assert "management_assumptions" not in plain
    assert "suppression" not in plain

    engineered = [r.key for r in required_modules(FIRE_STRATEGY, {"engineered_solutions_used": True, "requires_suppression": True})]
    assert "management_assumptions" in engineered
    assert "limitations_reliance" in engineered
    assert "suppression" in engineered
    assert "smoke_control" not in engineered


def test_fire_strategy_engineered_solution_rules(validator):
    ctx = {"engineered_solutions_used": True}
    content = _complete(FIRE_STRATEGY, context=ctx)
    content["modules"]["limitations_reliance"]["data"]["limitations_text"] = ""
    result = validator.validate(FIRE_STRATEGY, content)
    keys = {(b.type, b.field_key) for b in result.blockers}
    assert (MISSING_FIELD, "limitations_text") in keys
    assert (CONDITIONAL_MISSING, "limitations_text") in keys
    assert (CONDITIONAL_MISSING, "management_assumptions_text") in keys

    content["modules"]["limitations_reliance"]["data"]["limitations_text"] = "Relies on sprinklers"
    content["modules"]["management_assumptions"]["data"]["management_assumptions_text"] = "Staff trained"
    assert validator.validate(FIRE_STRATEGY, content).ready


def test_fire_strategy_without_engineered_solutions_is_ready(validator):
    assert validator.validate(FIRE_STRATEGY, _complete(FIRE_STRATEGY)).ready


def test_explosive_atmosphere_confirmations(validator):
    content = _complete(EXPLOSIVE_ATMOSPHERE)
    result = validator.validate(EXPLOSIVE_ATMOSPHERE, content)
    assert [(b.type, b.field_key) for b in result.blockers] == [
        (MISSING_FIELD, "substance_list"),
        (MISSING_FIELD, "zone_entries"),
        (NO_RECOMMENDATIONS, None),
    ]

    content = _complete(
        EXPLOSIVE_ATMOSPHERE,
        extra={
            "substances": {"no_dangerous_substances": True},
            "hazardous_area_classification": {"zone_entries": [{"zone": "2", "area": "Spray booth"}]},
            "actions": {"controls_adequate_confirmed": True},
        },
    )
    assert validator.validate(EXPLOSIVE_ATMOSPHERE, content).ready


def test_engineering_risk_needs_a_loss_value(validator):
    content = _complete(ENGINEERING_RISK)
    result = validator.validate(ENGINEERING_RISK, content)
    assert [(b.module_key, b.field_key) for b in result.blockers] == [("RE_12_LOSS_VALUES", "sum_insured")]

    content["modules"]["RE_12_LOSS_VALUES"]["data"]["business_interruption_value"] = 2500000
    assert validator.validate(ENGINEERING_RISK, content).ready


def test_grouping_and_summary_helpers(validator):
    result = validator.validate(FIRE_RISK_ASSESSMENT, {"modules": {}, "items": []})
    grouped = group_blockers_by_module(result.blockers)
    assert len(grouped["survey_info"]) == 6
    assert readiness_summary(result) == f"{len(result.blockers)} issues must be resolved before issuing"

    ready = validator.validate(FIRE_RISK_ASSESSMENT, _complete(FIRE_RISK_ASSESSMENT, items=[{"status": "open"}]))
    assert readiness_summary(ready) == "All requirements met - ready to issue"
    assert ready.to_dict() == {"ready": True, "blockers": []}
