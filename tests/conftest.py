"""Shared fixtures for the run_agg test suite."""

import pytest

from run_agg.models import Attempt


def make_attempts(values, source="llm"):
    return [Attempt(attempt_no=i + 1, candidate_value=v, source=source) for i, v in enumerate(values)]


@pytest.fixture
def attempts_factory():
    return make_attempts


@pytest.fixture
def run_log():
    """A small run log in the pipeline-runner shape: two extraction batches, a score, a decision."""
    return {
        "run_id": 42,
        "pipeline_id": 7,
        "pdf_id": 3,
        "status": "finished",
        "log": [
            {
                "seq_no": 1,
                "step_id": "s1",
                "prompt_id": 11,
                "prompt_type": "ExtractionPrompt",
                "json_key": "schadennummer",
                "result": {"results": [
                    {"value": "12-345-678", "source": {"page": 1, "quote": "Schadennummer 12-345-678", "bbox": [1, 2, 3, 4]}},
                    {"value": "12345678"},
                ]},
            },
            {
                "seq_no": 2,
                "step_id": "s1",
                "prompt_id": 11,
                "prompt_type": "ExtractionPrompt",
                "json_key": "schadennummer",
                "result": {"results": [{"value": "nicht angegeben"}]},
            },
            {
                "seq_no": 3,
                "step_id": "s2",
                "prompt_id": 12,
                "prompt_type": "ScoringPrompt",
                "prompt_text": "Ist die Rechnung vollständig?",
                "weight": 2,
                "result": {"scores": [
                    {"result": True, "explanation": "alles da"},
                    {"result": True},
                    {"result": False, "vote": "no"},
                ]},
            },
            {
                "seq_no": 4,
                "step_id": "s3",
                "prompt_id": 13,
                "prompt_type": "DecisionPrompt",
                "decision_key": "is_vehicle_damage",
                "result": {"votes": [{"boolean": True}, {"value": "nein"}, {"route": "yes"}]},
            },
        ],
    }
