import os
os.environ["TESTING"] = "1"
import pytest
from fastapi.testclient import TestClient

import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[2]))

from labprotocol.main import app
from labprotocol.registry import load_default_registry
from labprotocol.routes.protocol_analysis import get_analysis_service
from labprotocol.services.protocol_analysis import ProtocolAnalysisService


def make_block(block_type, block_id=None, *, next=None, inputs=None, **fields):
    """Return an editor block payload with the given fields."""

    payload = {"type": block_type, "fields": fields}
    if block_id is not None:
        payload["id"] = block_id
    if next is not None:
        payload["next"] = next
    if inputs is not None:
        payload["inputs"] = inputs
    return payload


def chain(*blocks):
    """Link blocks through ``next`` and return the head of the stack."""

    for current, following in zip(blocks, blocks[1:]):
        current["next"] = following
    return blocks[0]


@pytest.fixture
def block():
    return make_block


@pytest.fixture
def sequence():
    return chain


@pytest.fixture
def scenario_a():
    """A(prep, 5m) -> B(mix, 10m) -> C(measure, 3m) with D(prep, 4m) ordered before B."""

    return {
        "id": "scenario-a",
        "version": 1,
        "name": "Scenario A",
        "blocks": [
            chain(
                make_block("preparation_step", "A", DURATION=5, DESCRIPTION="prepare plate"),
                make_block("mixing_step", "B", DURATION=10, AFTER="D", DESCRIPTION="mix"),
                make_block("measurement_step", "C", DURATION=3, RESULT_VAR="reading", DESCRIPTION="read"),
            ),
            make_block("preparation_step", "D", DURATION=4, DESCRIPTION="prepare buffer"),
        ],
    }


@pytest.fixture
def clean_document():
    """Small documented procedure that passes every built-in rule."""

    return {
        "id": "clean",
        "version": 1,
        "name": "Clean assay",
        "blocks": [
            chain(
                make_block("sample_variable", "lysate-decl", NAME="lysate", DESCRIPTION="cell lysate"),
                make_block("mixing_step", "mix", SAMPLE="lysate", DURATION=5, DESCRIPTION="resuspend"),
                make_block("quality_check", "qc", DESCRIPTION="inspect turbidity"),
                make_block(
                    "measurement_step",
                    "read",
                    SAMPLE="lysate",
                    RESULT_VAR="od600",
                    DURATION=2,
                    DESCRIPTION="read OD600",
                ),
            )
        ],
    }


@pytest.fixture
def registry():
    return load_default_registry()


@pytest.fixture
def service(registry):
    return ProtocolAnalysisService(registry=registry)


@pytest.fixture
def client(service):
    app.dependency_overrides[get_analysis_service] = lambda: service
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
