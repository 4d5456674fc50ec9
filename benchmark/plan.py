"""
JSON benchmark plans.

A plan file lists cases to run instead of the default suite:

    {
        "cases": [
            {"type": "pull-replication", "name": "pull-1k-3gen",
             "number_docs": 1000, "generations": 3, "added_latency_ms": 100},
            {"type": "remote-replication", "name": "skimdb",
             "remote_url": "https://skimdb.npmjs.com/registry", "stop_after": 200},
            {"type": "basic-gets", "iterations": 500}
        ]
    }
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, model_validator

from benchmark.cases import (
    AllDocsSkipLimitCase,
    AllDocsStartkeyEndkeyCase,
    BasicGetsCase,
    BasicInsertsCase,
    BenchmarkCase,
    BulkInsertsCase,
    PullReplicationCase,
    RemoteReplicationCase,
    duplicate_case_names,
)

LOCAL_CASES = {
    "basic-inserts": BasicInsertsCase,
    "bulk-inserts": BulkInsertsCase,
    "basic-gets": BasicGetsCase,
    "all-docs-skip-limit": AllDocsSkipLimitCase,
    "all-docs-startkey-endkey": AllDocsStartkeyEndkeyCase,
}


class LocalCaseSpec(BaseModel):
    type: Literal[
        "basic-inserts",
        "bulk-inserts",
        "basic-gets",
        "all-docs-skip-limit",
        "all-docs-startkey-endkey",
    ]
    name: str | None = None
    iterations: int | None = Field(default=None, ge=0)

    def build(self) -> BenchmarkCase:
        kwargs = {}
        if self.name is not None:
            kwargs["name"] = self.name
        if self.iterations is not None:
            kwargs["iterations"] = self.iterations
        return LOCAL_CASES[self.type](**kwargs)


class PullReplicationSpec(BaseModel):
    type: Literal["pull-replication"]
    name: str
    iterations: int = Field(default=1, ge=0)
    generations: int = Field(default=1, ge=1)
    number_docs: int = Field(default=10, ge=0)
    batch_size: int = Field(default=100, ge=1)
    added_latency_ms: float | None = Field(default=10, ge=0)
    max_sockets: int = Field(default=15, ge=1)
    rewrite: Literal["bulk", "fetch"] = "bulk"

    def build(self) -> BenchmarkCase:
        return PullReplicationCase(**self.model_dump(exclude={"type"}))


class RemoteReplicationSpec(BaseModel):
    type: Literal["remote-replication"]
    name: str
    remote_url: str
    iterations: int = Field(default=1, ge=0)
    batch_size: int = Field(default=100, ge=1)
    stop_after: int = Field(default=200, ge=1)
    max_sockets: int = Field(default=15, ge=1)

    def build(self) -> BenchmarkCase:
        return RemoteReplicationCase(**self.model_dump(exclude={"type"}))


CaseSpec = Annotated[
    Union[LocalCaseSpec, PullReplicationSpec, RemoteReplicationSpec],
    Field(discriminator="type"),
]


class BenchmarkPlan(BaseModel):
    cases: list[CaseSpec]

    @model_validator(mode="after")
    def check_unique_names(self) -> BenchmarkPlan:
        # local cases without a name are named after their type
        duplicates = duplicate_case_names(spec.name or spec.type for spec in self.cases)
        if duplicates:
            raise ValueError(f"case names must be unique; duplicated: {', '.join(duplicates)}")
        return self

    def build_cases(self) -> list[BenchmarkCase]:
        return [spec.build() for spec in self.cases]


def load_plan(path: Path) -> list[BenchmarkCase]:
    """Read and validate a plan file. Raises pydantic.ValidationError on bad input."""
    with open(path) as f:
        data = json.load(f)
    return BenchmarkPlan.model_validate(data).build_cases()
