from datetime import date

import pytest

from app.riskdocs.constants import ITEM_CLOSED, ITEM_DEFERRED, ITEM_OPEN
from app.riskdocs.errors import InvalidRequest, NotFound
from app.riskdocs.models import AuditEvent
from app.riskdocs.modules.document_lifecycle.carry_forward import close_item
from app.riskdocs.modules.document_lifecycle.lifecycle import create_revision
from app.riskdocs.modules.document_lifecycle.models import RemediationItem
from app.riskdocs.modules.document_lifecycle.remediation import (
    DefaultClassifier,
    delete_item,
    get_item,
    item_to_dict,
    set_item_status,
    update_item,
)


@pytest.mark.parametrize(
    "draft, tier, priority",
    [
        ({"final_exit_locked": True}, "T4", "P1"),
        ({"no_fire_detection": True, "context": {"occupancy_risk": "sleeping"}}, "T4", "P1"),
        ({"no_emergency_lighting": True, "context": {"storeys": 3}}, "T4", "P1"),
        ({"single_stair_compromised": True, "context": {"storeys": 5}}, "T4", "P1"),
        ({"assessor_marked_critical": True, "justification": "Hoarding in flat"}, "T4", "P1"),
        ({"no_fire_detection": True}, "T3", "P2"),
        ({"single_stair_compromised": True, "context": {"storeys": 2}}, "T3", "P2"),
        ({"no_emergency_lighting": True, "context": {"storeys": 1}}, "T1", "P4"),
        ({"category": "Management"}, "T2", "P3"),
        ({}, "T1", "P4"),
    ],
)
def test_default_classifier_tiers(draft, tier, priority):
    result = DefaultClassifier().classify(draft)
    assert (result.tier, result.priority_code) == (tier, priority)
    assert result.explanation


def test_critical_uprate_needs_justification():
    result = DefaultClassifier().classify({"assessor_marked_critical": True, "justification": "  "})
    assert result.tier == "T1"


def test_create_item_classifies_and_roots_its_lineage(s, driver):
    family = driver.new_fra(occupancy_risk="sleeping")
    item = driver.add_item(family.current_revision_id, "No detection in bedrooms", no_fire_detection=True)
    assert item.tier == "T4"
    assert item.priority_code == "P1"
    assert item.origin_item_id == item.id
    assert item.lineage_id == item.id
    assert item.origin_revision_number == 1
    assert item.reference_number is None
    assert item.status == ITEM_OPEN


def test_create_item_validation(s, driver):
    family = driver.new_fra()
    rev_id = family.current_revision_id
    with pytest.raises(InvalidRequest):
        driver.add_item(rev_id, "   ")
    s.rollback()
    with pytest.raises(InvalidRequest):
        driver.add_item(rev_id, "Bad date", target_date="next week")
    s.rollback()
    with pytest.raises(InvalidRequest):
        driver.add_item(rev_id, "Born closed", status=ITEM_CLOSED)
    s.rollback()


def test_update_item_fields_and_audit(s, driver, admin):
    family = driver.new_fra()
    item = driver.add_item(family.current_revision_id, "Replace door")
    update_item(s, item.id, {"description": "Replace FD30 door", "target_date": "2026-06-30"}, actor=admin)
    s.commit()
    assert item.description == "Replace FD30 door"
    assert item.target_date == date(2026, 6, 30)
    assert item_to_dict(item)["target_date"] == "2026-06-30"

    with pytest.raises(InvalidRequest):
        update_item(s, item.id, {"status": "closed"}, actor=admin)
    with pytest.raises(InvalidRequest):
        update_item(s, item.id, {"owner_user_id": "someone"}, actor=admin)

    ev = s.query(AuditEvent).filter(AuditEvent.action == "remediation_item.update").one()
    assert ev.entity_id == str(item.id)


def test_status_changes_route_closure_through_close_action(s, driver, admin):
    family = driver.new_fra()
    item = driver.add_item(family.current_revision_id, "Annual drill overdue")
    assert set_item_status(s, item.id, ITEM_DEFERRED, actor=admin).status == ITEM_DEFERRED
    with pytest.raises(InvalidRequest):
        set_item_status(s, item.id, ITEM_CLOSED, actor=admin)
    with pytest.raises(InvalidRequest):
        set_item_status(s, item.id, "resolved", actor=admin)

    close_item(s, item.id, actor=admin)
    with pytest.raises(InvalidRequest):
        set_item_status(s, item.id, ITEM_OPEN, actor=admin)


def test_delete_item(s, driver, admin):
    family = driver.new_fra()
    item = driver.add_item(family.current_revision_id, "Duplicate entry")
    item_id = item.id
    delete_item(s, item_id, actor=admin, reason="Duplicate")
    s.commit()
    with pytest.raises(NotFound):
        get_item(s, item_id)


def test_reference_numbers_continue_across_revisions(s, driver, admin):
    family = driver.new_fra()
    rev1 = family.current_revision_id
    driver.complete_fra(rev1)
    first = driver.add_item(rev1, "Call point obscured")
    second = driver.add_item(rev1, "Extinguisher missing")
    driver.issue(rev1)
    assert (first.reference_number, second.reference_number) == ("R-01", "R-02")

    new_rev = create_revision(s, family.id, actor=admin)
    close_item(s, s.query(RemediationItem).filter(RemediationItem.revision_id == new_rev.id).first().id, actor=admin)
    s.commit()
    third = driver.add_item(new_rev.id, "Signage faded")
    driver.complete_fra(new_rev.id)
    driver.issue(new_rev.id)

    refs = sorted(
        i.reference_number for i in s.query(RemediationItem).filter(RemediationItem.revision_id == new_rev.id)
    )
    assert refs == ["R-01", "R-02", "R-03"]
    assert third.reference_number == "R-03"
