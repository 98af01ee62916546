import json

import pytest

from run_agg import runner
from run_agg.models import Step
from run_agg.runner import build_run_detail, build_final_maps, consolidate_step, steps_from_log


def test_log_is_grouped_into_steps(run_log) -> None:
    steps = steps_from_log(run_log["log"])
    assert [s.step_type for s in steps] == ["Extraction", "Score", "Decision"]
    assert [s.order_index for s in steps] == [0, 1, 2]
    extraction = steps[0]
    assert extraction.final_key == "schadennummer"
    assert [a.attempt_no for a in extraction.attempts] == [1, 2, 3]
    assert steps[1].definition.weight == 2


def test_build_run_detail_from_log(run_log) -> None:
    detail = build_run_detail(run_log)
    run = detail.run
    assert run.id == 42
    assert run.pipeline_id == 7

    extraction, score, decision = detail.steps
    assert extraction.final_value == "12345678"
    assert extraction.final_confidence > 0.8
    assert extraction.evidence.page == 1
    assert [a.is_final for a in extraction.attempts] == [True, True, False]

    assert score.final_value is True
    assert score.final_confidence == 0.625
    assert decision.final_value is True
    assert all(s.status == "finalized" for s in detail.steps)

    assert run.final_extraction == {"schadennummer": "12345678"}
    assert run.final_scores == {"ist_die_rechnung_vollstandig_12": 2.0}
    assert run.final_decisions == {"is_vehicle_damage": True}
    assert run.overall_score == 1.0


def test_build_run_detail_is_idempotent(run_log) -> None:
    first = build_run_detail(run_log)
    second = build_run_detail(run_log)
    assert first.model_dump() == second.model_dump()

    again = build_run_detail(json.loads(first.model_dump_json()))
    assert [s.final_value for s in again.steps] == [s.final_value for s in first.steps]
    assert [s.final_confidence for s in again.steps] == [s.final_confidence for s in first.steps]
    assert again.run.final_scores == first.run.final_scores


def test_bare_log_list() -> None:
    detail = build_run_detail([
        {"prompt_type": "ScoringPrompt", "json_key": "ok", "result": {"scores": [{"result": False}]}},
    ])
    assert detail.run.final_scores == {"ok": 1.0}
    assert detail.run.overall_score == 0.0


def test_unparseable_entries_do_not_abort(run_log) -> None:
    run_log["log"].insert(1, {"prompt_type": "Bogus"})
    run_log["log"].append("garbage")
    detail = build_run_detail(run_log)
    assert len(detail.steps) == 3


def test_step_failure_is_isolated(run_log, monkeypatch) -> None:
    def boom(*args, **kwargs):
        raise RuntimeError("extractor exploded")

    monkeypatch.setattr(runner, "consolidate_extraction", boom)
    detail = build_run_detail(run_log)
    extraction, score, decision = detail.steps
    assert extraction.status == "failed"
    assert extraction.error == "extractor exploded"
    assert extraction.final_confidence == 0.0
    assert score.status == decision.status == "finalized"
    assert "schadennummer" not in detail.run.final_extraction
    assert detail.run.final_decisions == {"is_vehicle_damage": True}


def test_detail_payload_is_reconsolidated() -> None:
    payload = {
        "run": {"id": "r1", "overall_score": 0.3, "final_extraction": {"legacy": "x"}},
        "steps": [
            {
                "id": 2, "order_index": 1, "step_type": "Decision", "final_key": "weiter",
                "attempts": [
                    {"attempt_no": 1, "candidate_value": "ja"},
                    {"attempt_no": 2, "candidate_value": "nein"},
                ],
            },
            {
                "id": 1, "order_index": 0, "step_type": "Extraction",
                "definition": {"json_key": "Kunden Name"},
                "final_value": "stale", "final_confidence": 1.0,
                "attempts": [{"attempt_no": 1, "candidate_value": "Erika Muster"}],
            },
            {"id": 3, "order_index": 2, "step_type": "Final", "final_value": {"summary": "ok"}},
        ],
    }
    detail = build_run_detail(payload)
    assert [s.id for s in detail.steps] == [1, 2, 3]
    assert detail.steps[0].final_key == "kunden_name"
    assert detail.steps[0].final_value == "Erika Muster"
    assert detail.steps[1].final_value is True
    assert detail.steps[1].final_confidence == 0.5
    assert detail.steps[2].final_value == {"summary": "ok"}
    assert detail.run.final_extraction == {"legacy": "x", "kunden_name": "Erika Muster"}
    # No Score steps: the header's score is kept
    assert detail.run.overall_score == 0.3


def test_malformed_detail_step_is_marked_failed() -> None:
    detail = build_run_detail({"run": {}, "steps": [{"id": 9, "step_type": "Wizard"}]})
    assert detail.steps[0].status == "failed"
    assert detail.steps[0].error.startswith("malformed step")


def test_unrecognised_payload_raises() -> None:
    with pytest.raises(ValueError):
        build_run_detail({"nothing": "here"})


def test_consolidate_step_without_attempts() -> None:
    step = consolidate_step(Step(id=1, step_type="Score", final_key="k"))
    assert step.final_value is False
    assert step.final_confidence == 0.0
    step = consolidate_step(Step(id=2, step_type="Extraction", final_key="name"))
    assert step.final_value == "—"


def test_final_scores_hold_weights() -> None:
    steps = [
        Step(id=1, step_type="Score", status="finalized", final_key="a", final_value=True),
        Step(id=2, step_type="Score", status="finalized", final_key="b", final_value=False),
        Step(id=3, step_type="Score", status="failed", final_key="c", final_value=True),
    ]
    assert build_final_maps(steps)["final_scores"] == {"a": 1.0, "b": 1.0}


def test_final_scores_read_recorded_weights() -> None:
    payload = {
        "run": {"id": "r2", "final_scores": {"a": 3, "b": 1}},
        "steps": [
            {
                "id": 1, "order_index": 0, "step_type": "Score", "final_key": "a",
                "attempts": [{"attempt_no": 1, "candidate_value": True}, {"attempt_no": 2, "candidate_value": True}],
            },
            {
                "id": 2, "order_index": 1, "step_type": "Score", "final_key": "b",
                "attempts": [{"attempt_no": 1, "candidate_value": False}],
            },
        ],
    }
    detail = build_run_detail(payload)
    assert detail.run.overall_score == 0.75
    assert detail.run.final_scores == {"a": 3.0, "b": 1.0}
    assert [s.definition.weight for s in detail.steps] == [3.0, 1.0]

    again = build_run_detail(json.loads(detail.model_dump_json()))
    assert again.run.overall_score == 0.75
    assert again.run.final_scores == {"a": 3.0, "b": 1.0}


def test_declared_weight_beats_recorded_weight() -> None:
    payload = {
        "run": {"final_scores": {"a": 5}},
        "steps": [
            {
                "id": 1, "order_index": 0, "step_type": "Score", "final_key": "a",
                "definition": {"weight": 2},
                "attempts": [{"attempt_no": 1, "candidate_value": "ja"}],
            },
            {
                "id": 2, "order_index": 1, "step_type": "Score", "final_key": "b",
                "attempts": [{"attempt_no": 1, "candidate_value": "nein"}],
            },
        ],
    }
    detail = build_run_detail(payload)
    assert detail.run.final_scores == {"a": 2.0, "b": 1.0}
    assert detail.run.overall_score == round(2 / 3, 4)


def test_non_finite_evidence_does_not_fail_the_step() -> None:
    text = """[{"prompt_type": "ExtractionPrompt", "json_key": "name", "result": {"results": [
        "Hans Meier", "Hans Meier", {"value": "Hans Meier", "source": {"page": Infinity}}
    ]}}]"""
    detail = build_run_detail(json.loads(text))
    step = detail.steps[0]
    assert step.status == "finalized"
    assert step.final_value == "Hans Meier"
    assert sum(a.is_final for a in step.attempts) == 3
    assert detail.run.final_extraction == {"name": "Hans Meier"}


def test_extraction_confidence_grows_through_run_detail() -> None:
    previous = 0.0
    for k in range(11):
        values = ["1234567890", "9999999999"] + ["1234567890"] * k
        detail = build_run_detail([
            {"prompt_type": "ExtractionPrompt", "json_key": "schadennummer", "result": {"results": values}},
        ])
        step = detail.steps[0]
        assert step.final_value == "1234567890"
        assert step.final_confidence >= previous
        previous = step.final_confidence
