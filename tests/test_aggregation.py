import pytest

from run_agg import aggregation
from run_agg.aggregation import (
    VoteBucket,
    bucket_attempts,
    combine_confidence,
    consolidate_extraction,
    extract_evidence,
    pretty_value,
    quality,
    rank_buckets,
    vote_boolean,
)


def test_quality_signals_are_additive() -> None:
    assert quality("nicht angegeben") == 0.0
    assert quality("abc") == pytest.approx(1.0)
    assert quality("1234567890") == pytest.approx(1.4)
    assert quality("Hans Müller") == pytest.approx(1.3)
    full = {
        "value": "12345678",
        "source": {"page": 2, "bbox": [0, 0, 10, 5], "quote": "Schadennummer: 12345678"},
    }
    assert quality(full, "schadennummer") == pytest.approx(2.0)


def test_quality_ignores_empty_evidence() -> None:
    raw = {"value": "abc", "page": 0, "bbox": [0, 0, 0, 0], "quote": "unrelated"}
    assert quality(raw, "name") == pytest.approx(1.0)


def test_quality_partial_id_is_junk() -> None:
    assert quality("12345", "schadennummer") == 0.0


def test_extract_evidence_reads_wrapper_and_source() -> None:
    ev = extract_evidence({"value": "x", "page": "3", "source": {"quote": "q", "bbox": [1, 2, 3, 4]}})
    assert ev.page == 3
    assert ev.quote == "q"
    assert ev.bbox == [1.0, 2.0, 3.0, 4.0]
    assert extract_evidence("x").page is None


def test_extract_evidence_drops_non_finite_page_and_bbox() -> None:
    ev = extract_evidence({"value": "x", "page": float("inf"), "bbox": [1, float("nan"), 2, 3]})
    assert ev.page is None
    assert ev.bbox is None
    ev = extract_evidence({"value": "x", "source": {"page": float("-inf"), "bbox": [0, 0, float("inf"), 1]}})
    assert ev.page is None and ev.bbox is None


def test_extraction_survives_non_finite_evidence(attempts_factory) -> None:
    attempts = attempts_factory(["Hans Meier", "Hans Meier", {"value": "Hans Meier", "source": {"page": float("inf")}}])
    out = consolidate_extraction(attempts, "name")
    assert out["value"] == "Hans Meier"
    assert out["vote_count"] == 3


def test_unscorable_attempt_still_votes(attempts_factory, monkeypatch, caplog) -> None:
    real_quality = aggregation.quality

    def flaky_quality(value, step_key=None, cfg=None):
        if value == "B":
            raise RuntimeError("bad candidate")
        return real_quality(value, step_key)

    monkeypatch.setattr(aggregation, "quality", flaky_quality)
    with caplog.at_level("WARNING", logger="run_agg.aggregation"):
        buckets = bucket_attempts(attempts_factory(["A", "B", "b"]))
    assert [(b.key, b.votes) for b in buckets] == [("a", 1), ("b", 2)]
    assert buckets[1].best_quality == pytest.approx(1.0)
    assert "bad candidate" in caplog.text


def test_unnormalizable_attempt_is_skipped(attempts_factory, monkeypatch, caplog) -> None:
    real_normalize = aggregation.normalize_value

    def flaky_normalize(value, step_key=None, cfg=None):
        if value == "B":
            raise ValueError("cannot fold")
        return real_normalize(value, step_key)

    monkeypatch.setattr(aggregation, "normalize_value", flaky_normalize)
    with caplog.at_level("WARNING", logger="run_agg.aggregation"):
        out = consolidate_extraction(attempts_factory(["B", "A", "B"]), "name")
    assert out["value"] == "A"
    assert out["total_votes"] == 1
    assert "cannot fold" in caplog.text


def test_buckets_partition_non_junk_attempts(attempts_factory) -> None:
    attempts = attempts_factory(["12 345 678", "12345678", "n/a", "Hans", "hans", None])
    buckets = bucket_attempts(attempts)
    members = sorted(i for b in buckets for i in b.members)
    assert members == [0, 1, 3, 4]
    assert [b.votes for b in buckets] == [2, 2]


def test_rank_prefers_votes_then_quality() -> None:
    low = VoteBucket(key="a", digit_key=False, votes=2, best_quality=1.0)
    high = VoteBucket(key="b", digit_key=False, votes=2, best_quality=1.3)
    more = VoteBucket(key="c", digit_key=False, votes=3, best_quality=0.5)
    assert [b.key for b in rank_buckets([low, high, more])] == ["c", "b", "a"]


def test_rank_equal_quality_is_first_seen() -> None:
    first = VoteBucket(key="x", digit_key=False, votes=1, best_quality=1.0)
    second = VoteBucket(key="y", digit_key=False, votes=1, best_quality=1.0)
    for _ in range(3):
        assert rank_buckets([first, second])[0] is first


def test_pretty_value_most_frequent_form_first_seen_on_tie() -> None:
    bucket = VoteBucket(key="hans", digit_key=False, pretty=["Hans", "HANS", "HANS", "hans"])
    assert pretty_value(bucket) == "HANS"
    bucket = VoteBucket(key="hans", digit_key=False, pretty=["Hans", "HANS"])
    assert pretty_value(bucket) == "Hans"
    assert pretty_value(VoteBucket(key="123456", digit_key=True, pretty=["12-34-56"])) == "123456"


def test_extraction_majority_wins(attempts_factory) -> None:
    attempts = attempts_factory(["1234567890", "1234567890", "9999999999"])
    out = consolidate_extraction(attempts, "schadennummer")
    assert out["value"] == "1234567890"
    assert out["vote_count"] == 2
    assert out["runner_up_count"] == 1
    assert out["confidence"] > 0.5
    assert out["confidence"] == pytest.approx(0.578, abs=1e-3)
    assert [a.is_final for a in out["attempts"]] == [True, True, False]


def test_extraction_all_junk_gives_placeholder(attempts_factory) -> None:
    out = consolidate_extraction(attempts_factory(["nicht angegeben"] * 3), "schadennummer")
    assert out["value"] == "—"
    assert out["confidence"] == 0.0
    assert not any(a.is_final for a in out["attempts"])


def test_extraction_no_attempts() -> None:
    out = consolidate_extraction([], "name")
    assert out["value"] == "—"
    assert out["confidence"] == 0.0


def test_extraction_quality_breaks_vote_tie(attempts_factory) -> None:
    attempts = attempts_factory(["abc", "Hans Müller"])
    out = consolidate_extraction(attempts, "name")
    assert out["value"] == "Hans Müller"


def test_extraction_does_not_mutate_input(attempts_factory) -> None:
    attempts = attempts_factory(["x1", "x1"])
    consolidate_extraction(attempts)
    assert not any(a.is_final for a in attempts)


def test_extraction_keeps_winning_evidence(attempts_factory) -> None:
    attempts = attempts_factory([
        {"value": "Hans Müller", "source": {"page": 2, "quote": "Name: Hans Müller"}},
        "hans müller",
    ])
    out = consolidate_extraction(attempts, "name")
    assert out["value"] == "Hans Müller"
    assert out["evidence"].page == 2


def test_combine_confidence_zero_votes() -> None:
    assert combine_confidence(0, 0, 0, 2.3) == 0.0


@pytest.mark.parametrize("v,v2,n,q", [
    (1, 0, 1, 0.0), (1, 0, 1, 5.0), (5, 5, 10, 2.3), (50, 0, 50, 2.3), (1, 1, 30, 0.0), (3, 2, 5, 1.0),
])
def test_combine_confidence_bounds(v, v2, n, q) -> None:
    assert 0.0 <= combine_confidence(v, v2, n, q) <= 1.0


def test_combine_confidence_monotonic_in_agreeing_votes() -> None:
    previous = 0.0
    for v in range(1, 12):
        c = combine_confidence(v, 1, v + 1, 1.4)
        assert c >= previous
        previous = c


def test_combine_confidence_rounded() -> None:
    c = combine_confidence(2, 1, 3, 1.4)
    assert c == round(c, 4)


def test_extraction_confidence_grows_with_agreeing_attempts(attempts_factory) -> None:
    previous = 0.0
    for k in range(11):
        attempts = attempts_factory(["1234567890", "9999999999"] + ["1234567890"] * k)
        out = consolidate_extraction(attempts, "schadennummer")
        assert out["value"] == "1234567890"
        assert out["confidence"] >= previous
        previous = out["confidence"]


def test_boolean_confidence_grows_with_agreeing_attempts(attempts_factory) -> None:
    previous = 0.0
    for k in range(11):
        out = vote_boolean(attempts_factory([True, False] + [True] * k))
        assert out["value"] is True
        assert out["confidence"] >= previous
        previous = out["confidence"]

def test_vote_boolean_majority(attempts_factory) -> None:
    out = vote_boolean(attempts_factory([True, True, False]))
    assert out["value"] is True
    assert out["confidence"] == 0.625
    assert [a.is_final for a in out["attempts"]] == [True, True, False]


def test_vote_boolean_tie_favors_true(attempts_factory) -> None:
    out = vote_boolean(attempts_factory([True, False]))
    assert out["value"] is True
    assert out["confidence"] == 0.5


def test_vote_boolean_excludes_unparseable(attempts_factory) -> None:
    out = vote_boolean(attempts_factory(["nein", "unsure", "maybe", {"boolean": False}]))
    assert out["value"] is False
    assert out["votes_false"] == 2
    assert out["excluded"] == 2
    assert out["confidence"] == round(2.5 / 3, 4)
    assert [a.is_final for a in out["attempts"]] == [True, False, False, True]


def test_vote_boolean_no_votes_is_unknown(attempts_factory) -> None:
    out = vote_boolean(attempts_factory(["unsure"]))
    assert out["value"] is False
    assert out["confidence"] == 0.0
    assert vote_boolean([])["confidence"] == 0.0
