from __future__ import annotations

import pytest
from pydantic import ValidationError

from omnitrack.core.errors import ScenarioValidationError
from omnitrack.schemas.agents import AGENT_RESULT_ADAPTER, ImpactEstimate, InfoResult
from omnitrack.schemas.scenario import PreferenceWeights, ScenarioRequest
from tests.helpers.stubs import make_request


def test_weights_must_sum_to_one() -> None:
    with pytest.raises(ValidationError):
        PreferenceWeights(cost=0.5, time=0.5, risk=0.5, sustainability=0.0)

    weights = PreferenceWeights(cost=0.4, time=0.3, risk=0.2, sustainability=0.1)
    assert weights.as_dict()["cost"] == 0.4


def test_missing_weights_default_to_equal() -> None:
    request = make_request()

    assert request.preference_weights is None
    assert request.weights == PreferenceWeights(cost=0.25, time=0.25, risk=0.25, sustainability=0.25)


@pytest.mark.parametrize(
    "overrides",
    [
        {"disruption_type": "meteor_strike"},
        {"severity": "catastrophic"},
        {"duration_days": 0},
        {"affected_node_ids": []},
        {"affected_node_ids": ["  "]},
    ],
)
def test_malformed_requests_are_rejected(overrides: dict) -> None:
    payload = make_request().model_dump(mode="json")
    payload.update(overrides)

    with pytest.raises(ScenarioValidationError) as exc_info:
        ScenarioRequest.parse(payload)

    assert exc_info.value.errors


def test_fingerprint_is_stable_for_equal_requests() -> None:
    assert make_request().fingerprint() == make_request().fingerprint()
    assert make_request().fingerprint() != make_request(location="Hamburg").fingerprint()


def test_impact_interval_bounds_are_checked() -> None:
    with pytest.raises(ValidationError):
        ImpactEstimate(expected=10, lower=12, upper=15)


def test_agent_results_are_discriminated_by_kind() -> None:
    result = AGENT_RESULT_ADAPTER.validate_python(
        {"kind": "info", "agent_id": "info-agent", "confidence": 0.5, "payload": {"nodes_observed": 1}}
    )

    assert isinstance(result, InfoResult)
    with pytest.raises(ValidationError):
        AGENT_RESULT_ADAPTER.validate_python({"kind": "oracle", "agent_id": "x", "confidence": 0.5, "payload": {}})
