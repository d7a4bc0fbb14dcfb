"""Tests for workflow event types."""

import json

from src.domain.entities.workflow_events import WorkflowEvent, WorkflowEventType


def test_event_type_values():
    expected = {
        "status",
        "phase-start",
        "phase-complete",
        "agent-text",
        "agent-tool",
        "workflow-complete",
    }
    assert {e.value for e in WorkflowEventType} == expected


def test_only_workflow_complete_is_terminal():
    for event_type in WorkflowEventType:
        event = WorkflowEvent(type=event_type, session_id="s1")
        assert event.is_terminal == (event_type == WorkflowEventType.WORKFLOW_COMPLETE)


def test_to_ndjson_is_one_line_without_nulls():
    event = WorkflowEvent(type=WorkflowEventType.PHASE_START, session_id="s1", phase="plan.research")
    line = event.to_ndjson()
    assert line.endswith("\n")
    assert line.count("\n") == 1
    data = json.loads(line)
    assert data["type"] == "phase-start"
    assert data["phase"] == "plan.research"
    assert "text" not in data
    assert "payload" not in data
