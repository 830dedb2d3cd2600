"""Unit tests for the canonical configuration schema."""

from __future__ import annotations

import pytest

from build_orchestrator.config import (
    DEFAULT_CONFIG,
    FEATURE_NAMES,
    ConfigValidationError,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    validate_config,
)
from build_orchestrator.config.schema import is_sensitive_key, migration_guidance
from build_orchestrator.constants import HOOK_PHASE_NAMES, MAX_RETRIES_PER_TASK


def _issues(config: object) -> dict[str, str]:
    return {issue.path: issue.message for issue in validate_config(config).issues}


def test_defaults_are_valid_and_deep_copied() -> None:
    config = default_config()
    assert validate_config(config).is_valid

    config["features"]["audit_trail"]["phases"].append("bogus")  # type: ignore[arg-type]
    assert DEFAULT_CONFIG["features"]["audit_trail"]["phases"] == list(HOOK_PHASE_NAMES)


def test_defaults_declare_one_section_per_feature() -> None:
    config = default_config()
    assert tuple(sorted(config["features"])) == FEATURE_NAMES
    for name in FEATURE_NAMES:
        feature = config["features"][name]  # type: ignore[literal-required]
        assert {"enabled", "priority", "phases"} <= set(feature)
    assert config["features"]["agent_memory"]["enabled"] is False
    assert config["retry"]["max_retries_per_task"] == MAX_RETRIES_PER_TASK


def test_retry_bound_is_fixed() -> None:
    config = merge_config(default_config(), {"retry": {"max_retries_per_task": 3}})
    assert _issues(config) == {"retry.max_retries_per_task": "retry bound is fixed at 1"}

    config = merge_config(default_config(), {"retry": {"phase_failure_limit": 1}})
    assert _issues(config) == {"retry.phase_failure_limit": "must be >= 2"}


@pytest.mark.parametrize(
    ("overlay", "path"),
    [
        ({"execution": {"max_concurrency": 0}}, "execution.max_concurrency"),
        ({"execution": {"stall_timeout_seconds": 0}}, "execution.stall_timeout_seconds"),
        ({"budgets": {"max_cost_usd": -1}}, "budgets.max_cost_usd"),
        ({"checkpoints": {"keep_last": 0}}, "checkpoints.keep_last"),
        ({"gates": {"default_policy": "vote"}}, "gates.default_policy"),
        (
            {"gates": {"policy_by_capability": {"magic": "aggregate"}}},
            "gates.policy_by_capability.magic",
        ),
        (
            {"gates": {"config_by_capability": {"magic": {}}}},
            "gates.config_by_capability.magic",
        ),
        (
            {"gates": {"config_by_capability": {"backend": {"acceptance_criteria": []}}}},
            "gates.config_by_capability.backend.acceptance_criteria",
        ),
        (
            {"gates": {"config_by_capability": {"backend": {"acceptance_criteria": [""]}}}},
            "gates.config_by_capability.backend.acceptance_criteria[0]",
        ),
        (
            {"gates": {"config_by_capability": {"backend": {"judge_api_key": "abc"}}}},
            "gates.config_by_capability.backend.judge_api_key",
        ),
        ({"observability": {"log_level": "TRACE"}}, "observability.log_level"),
        (
            {"features": {"handoff_notes": {"phases": ["after-lunch"]}}},
            "features.handoff_notes.phases[0]",
        ),
        ({"features": {"agent_memory": {"enabled": "yes"}}}, "features.agent_memory.enabled"),
        ({"meta": {"schema_version": 2}}, "meta.schema_version"),
        ({"surprise": {}}, "surprise"),
    ],
)
def test_invalid_values_report_field_paths(overlay: dict[str, object], path: str) -> None:
    config = merge_config(default_config(), overlay)
    assert path in _issues(config)


def test_embedded_secrets_are_rejected_with_guidance() -> None:
    config = merge_config(default_config(), {"observability": {"api_token": "abc"}})
    message = _issues(config)["observability.api_token"]
    assert "embedded secret values are forbidden" in message


def test_assert_valid_config_raises_with_all_issues() -> None:
    config = merge_config(
        default_config(),
        {"execution": {"max_concurrency": 0}, "budgets": {"max_cost_usd": "lots"}},
    )
    with pytest.raises(ConfigValidationError) as error:
        assert_valid_config(config)

    paths = {issue.path for issue in error.value.issues}
    assert paths == {"execution.max_concurrency", "budgets.max_cost_usd"}
    assert "invalid config" in str(error.value)


def test_merge_config_is_deep_and_non_mutating() -> None:
    base = default_config()
    merged = merge_config(base, {"execution": {"max_concurrency": 8}})

    assert merged["execution"]["max_concurrency"] == 8
    assert merged["execution"]["stall_timeout_seconds"] == 300.0
    assert base["execution"]["max_concurrency"] == 4


def test_redact_config_masks_sensitive_keys() -> None:
    redacted = redact_config({"provider": {"api_key": "x", "api_key_env": "KEY", "name": "n"}})
    assert redacted == {"provider": {"api_key": "<redacted>", "api_key_env": "KEY", "name": "n"}}
    assert is_sensitive_key("clientSecret")
    assert not is_sensitive_key("max_notes")


def test_migration_guidance_mentions_direction() -> None:
    assert "older" in migration_guidance(0)
    assert "newer" in migration_guidance(99)
