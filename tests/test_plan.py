import json

import pytest
from pydantic import ValidationError

from benchmark.cases import BasicGetsCase, PullReplicationCase, RemoteReplicationCase, default_cases
from benchmark.plan import BenchmarkPlan, load_plan


def _write_plan(tmp_path, cases):
    path = tmp_path / "plan.json"
    path.write_text(json.dumps({"cases": cases}))
    return path


def test_load_plan_builds_each_case_type(tmp_path):
    path = _write_plan(tmp_path, [
        {"type": "pull-replication", "name": "pull-1k-3gen", "number_docs": 1000, "generations": 3,
         "added_latency_ms": 100, "rewrite": "fetch"},
        {"type": "remote-replication", "name": "skimdb", "remote_url": "https://skimdb.npmjs.com/registry"},
        {"type": "basic-gets", "iterations": 500},
    ])

    pull, remote, gets = load_plan(path)

    assert isinstance(pull, PullReplicationCase)
    assert pull.parameters() == {
        "iterations": 1,
        "generations": 3,
        "number_docs": 1000,
        "batch_size": 100,
        "added_latency_ms": 100,
        "max_sockets": 15,
        "rewrite": "fetch",
    }
    assert isinstance(remote, RemoteReplicationCase)
    assert remote.stop_after == 200
    assert isinstance(gets, BasicGetsCase)
    assert gets.name == "basic-gets"
    assert gets.iterations == 500


def test_latency_can_be_disabled():
    plan = BenchmarkPlan.model_validate({"cases": [
        {"type": "pull-replication", "name": "direct", "added_latency_ms": None},
    ]})
    assert plan.build_cases()[0].added_latency_ms is None


@pytest.mark.parametrize("bad_case", [
    {"type": "pull-replication", "name": "zero", "generations": 0},
    {"type": "pull-replication", "name": "neg", "number_docs": -1},
    {"type": "pull-replication", "name": "mode", "rewrite": "sideways"},
    {"type": "pull-replication"},
    {"type": "remote-replication", "name": "no-url"},
    {"type": "no-such-case"},
])
def test_invalid_plans_are_rejected(tmp_path, bad_case):
    with pytest.raises(ValidationError):
        load_plan(_write_plan(tmp_path, [bad_case]))


def test_generations_must_be_positive_for_direct_construction():
    with pytest.raises(ValueError, match="generations must be > 0"):
        PullReplicationCase("bad", generations=0)


def test_default_suite():
    cases = default_cases()
    names = [case.name for case in cases]

    assert len(names) == len(set(names))
    pulls = {case.name: case for case in cases if isinstance(case, PullReplicationCase)}
    assert pulls["pull-replicationperf-one-generation"].generations == 1
    assert pulls["pull-replicationperf-two-generations"].generations == 2
    for case in pulls.values():
        assert case.number_docs == 10
        assert case.added_latency_ms == 10
        assert case.max_sockets == 15
        assert case.iterations == 1


@pytest.mark.parametrize("cases", [
    [{"type": "basic-gets"}, {"type": "basic-gets", "iterations": 10}],
    [{"type": "basic-inserts", "name": "same"},
     {"type": "pull-replication", "name": "same"}],
])
def test_duplicate_case_names_are_rejected(tmp_path, cases):
    with pytest.raises(ValidationError, match="unique"):
        load_plan(_write_plan(tmp_path, cases))


def test_same_type_with_distinct_names_is_allowed():
    plan = BenchmarkPlan.model_validate({"cases": [
        {"type": "basic-gets"},
        {"type": "basic-gets", "name": "basic-gets-small", "iterations": 10},
    ]})
    assert [case.name for case in plan.build_cases()] == ["basic-gets", "basic-gets-small"]
